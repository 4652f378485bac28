"""Tests for version parsing, compatibility and the handshake gates."""

import pytest

from shellbridge.errors import VersionMismatch
from shellbridge.handshake import ClientHandshake, HandshakeOutcome, HandshakeState, ServerHandshake
from shellbridge.protocol import ClientType, Input, Resize, VersionCheck, VersionError
from shellbridge.version import SemVer, is_compatible


class TestSemVer:
    def test_parse(self):
        assert SemVer.parse("1.2.3") == SemVer(1, 2, 3)

    def test_extra_fields_are_ignored(self):
        assert SemVer.parse("1.2.3.4") == SemVer(1, 2, 3)
        assert SemVer.parse("2.0.1.beta") == SemVer(2, 0, 1)

    @pytest.mark.parametrize("text", ["", None, "1.2", "1..3", "a.b.c", "1.-2.3", "v1.2.3", "1.2.x.4"])
    def test_malformed_becomes_zero(self, text):
        assert SemVer.parse(text) == SemVer(0, 0, 0)

    def test_str(self):
        assert str(SemVer(1, 10, 0)) == "1.10.0"

    def test_from_dict_rejects_bad_fields(self):
        assert SemVer.from_dict({"major": 1, "minor": 2, "patch": 3}) == SemVer(1, 2, 3)
        assert SemVer.from_dict({"major": True, "minor": 2, "patch": 3}) is None
        assert SemVer.from_dict({"major": -1, "minor": 2, "patch": 3}) is None
        assert SemVer.from_dict([1, 2, 3]) is None


class TestCompatibility:
    server = SemVer(1, 2, 0)

    def test_newer_patch_accepted(self):
        assert is_compatible(SemVer(1, 2, 5), self.server)

    def test_newer_minor_accepted(self):
        assert is_compatible(SemVer(1, 3, 0), self.server)

    def test_older_minor_rejected(self):
        assert not is_compatible(SemVer(1, 1, 0), self.server)

    def test_other_major_rejected(self):
        assert not is_compatible(SemVer(2, 0, 0), self.server)
        assert not is_compatible(SemVer(0, 9, 0), self.server)

    def test_patch_is_ignored(self):
        assert is_compatible(SemVer(1, 2, 0), SemVer(1, 2, 9))


class TestServerHandshake:
    def test_probe_carries_server_version(self):
        gate = ServerHandshake(SemVer(1, 2, 0))
        assert gate.probe() == VersionCheck(SemVer(1, 2, 0))

    def test_compatible_client_is_verified(self):
        gate = ServerHandshake(SemVer(1, 2, 0))
        result = gate.receive(VersionCheck(SemVer(1, 2, 5), ClientType.ELECTRON))
        assert result.accepted
        assert result.client_type is ClientType.ELECTRON
        assert gate.verified

    def test_incompatible_client_is_rejected_and_closed(self):
        gate = ServerHandshake(SemVer(1, 2, 0))
        result = gate.receive(VersionCheck(SemVer(1, 1, 0)))
        assert result.rejected
        assert "1.1.0" in result.reason and "1.2.0" in result.reason
        assert gate.state is HandshakeState.CLOSED
        assert not gate.verified

    def test_traffic_before_handshake_is_ignored(self):
        gate = ServerHandshake(SemVer(1, 0, 0))
        assert gate.receive(Input("rm -rf /\n")).outcome is HandshakeOutcome.IGNORED
        assert gate.receive(Resize(80, 24)).outcome is HandshakeOutcome.IGNORED
        assert gate.state is HandshakeState.AWAITING

    def test_repeat_version_check_after_verification_is_ignored(self):
        gate = ServerHandshake(SemVer(1, 0, 0))
        gate.receive(VersionCheck(SemVer(1, 0, 0)))
        result = gate.receive(VersionCheck(SemVer(9, 0, 0)))
        assert result.outcome is HandshakeOutcome.IGNORED
        assert gate.verified


class TestClientHandshake:
    def test_replies_to_compatible_probe(self):
        gate = ClientHandshake(SemVer(1, 2, 5), ClientType.WEB)
        reply = gate.receive(VersionCheck(SemVer(1, 2, 0)))
        assert reply == VersionCheck(SemVer(1, 2, 5), ClientType.WEB)
        assert not gate.verified
        gate.mark_replied()
        assert gate.verified
        assert gate.server_version == SemVer(1, 2, 0)

    def test_incompatible_probe_raises(self):
        gate = ClientHandshake(SemVer(1, 1, 0))
        with pytest.raises(VersionMismatch) as exc:
            gate.receive(VersionCheck(SemVer(1, 2, 0)))
        assert "1.1.0" in exc.value.reason
        assert gate.state is HandshakeState.CLOSED

    def test_server_error_raises(self):
        gate = ClientHandshake(SemVer(1, 0, 0))
        with pytest.raises(VersionMismatch, match="too old"):
            gate.receive(VersionError("too old"))

    def test_non_handshake_frames_return_none(self):
        gate = ClientHandshake(SemVer(1, 0, 0))
        assert gate.receive(Input("x")) is None

    def test_reset_reopens_gate(self):
        gate = ClientHandshake(SemVer(1, 0, 0))
        gate.receive(VersionCheck(SemVer(1, 0, 0)))
        gate.mark_replied()
        gate.reset()
        assert gate.state is HandshakeState.AWAITING
        assert gate.server_version is None
