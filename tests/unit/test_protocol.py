"""Tests for the wire protocol codec."""

import json

import pytest

from shellbridge.protocol import (
    ClientType,
    DecodeError,
    DirectoryStructureRequest,
    FileSystemReply,
    FileSystemRequest,
    Input,
    Output,
    Resize,
    VersionCheck,
    VersionError,
    decode,
    encode,
)
from shellbridge.version import SemVer


class TestEncode:
    def test_input(self):
        assert json.loads(encode(Input("ls\n"))) == {"input": "ls\n"}

    def test_resize_is_cols_then_rows(self):
        assert json.loads(encode(Resize(120, 40))) == {"resize": [120, 40]}

    def test_version_check_with_client_type(self):
        body = json.loads(encode(VersionCheck(SemVer(1, 2, 5), ClientType.ELECTRON)))
        assert body == {
            "type": "version_check",
            "version": {"major": 1, "minor": 2, "patch": 5},
            "clientType": "electron",
        }

    def test_server_probe_has_no_client_type(self):
        body = json.loads(encode(VersionCheck(SemVer(1, 0, 0))))
        assert "clientType" not in body

    def test_version_error(self):
        body = json.loads(encode(VersionError("too old")))
        assert body == {"type": "version_check", "error": "too old"}

    def test_non_ascii_output_kept_verbatim(self):
        assert encode(Output("héllo ✓")) == '{"output":"héllo ✓"}'

    def test_file_system_requests(self):
        assert json.loads(encode(FileSystemRequest("getCurrentDirectory"))) == {
            "fileSystem": {"getCurrentDirectory": True}
        }
        assert json.loads(encode(FileSystemRequest("listDirectory", "src"))) == {
            "fileSystem": {"listDirectory": "src"}
        }
        assert json.loads(encode(FileSystemRequest("writeFile", "a.txt", "hi"))) == {
            "fileSystem": {"writeFile": {"path": "a.txt", "content": "hi"}}
        }

    def test_rejects_non_messages(self):
        with pytest.raises(TypeError):
            encode({"input": "x"})


class TestDecode:
    def test_input(self):
        assert decode('{"input": "ls\\n"}') == Input("ls\n")

    def test_output(self):
        assert decode('{"output": "hi"}') == Output("hi")

    def test_resize(self):
        assert decode('{"resize": [100, 30]}') == Resize(100, 30)

    def test_legacy_resizer_alias(self):
        assert decode('{"resizer": [100, 30]}') == Resize(100, 30)

    def test_bytes_frame(self):
        assert decode(b'{"input": "a"}') == Input("a")

    def test_version_check(self):
        msg = decode(
            '{"type":"version_check","version":{"major":1,"minor":2,"patch":0},"clientType":"web"}'
        )
        assert msg == VersionCheck(SemVer(1, 2, 0), ClientType.WEB)

    def test_version_error(self):
        assert decode('{"type":"version_check","error":"nope"}') == VersionError("nope")

    def test_bare_error(self):
        assert decode('{"error":"nope"}') == VersionError("nope")

    def test_directory_request(self):
        assert decode('{"type":"get_directory_structure"}') == DirectoryStructureRequest()
        assert decode('{"type":"get_directory_structure","path":"src"}') == DirectoryStructureRequest("src")

    def test_file_system_reply(self):
        assert decode('{"fileSystem": {"error": "x"}}') == FileSystemReply({"error": "x"})

    def test_file_system_request_operations(self):
        assert decode('{"fileSystem": {"getCurrentDirectory": true}}') == FileSystemRequest("getCurrentDirectory")
        assert decode('{"fileSystem": {"listDirectory": "src"}}') == FileSystemRequest("listDirectory", "src")
        assert decode('{"fileSystem": {"readFile": "a.txt"}}') == FileSystemRequest("readFile", "a.txt")
        assert decode('{"fileSystem": {"exists": "a.txt"}}') == FileSystemRequest("exists", "a.txt")
        assert decode(
            '{"fileSystem": {"writeFile": {"path": "a.txt", "content": "hi"}}}'
        ) == FileSystemRequest("writeFile", "a.txt", "hi")

    def test_file_system_result_keys_are_replies(self):
        assert decode('{"fileSystem": {"exists": false}}') == FileSystemReply({"exists": False})
        assert decode('{"fileSystem": {"fileContent": "x"}}') == FileSystemReply({"fileContent": "x"})
        assert decode('{"fileSystem": {"writeSuccess": true}}') == FileSystemReply({"writeSuccess": True})

    def test_encoded_frames_decode_back(self):
        for msg in (
            Input("echo hi\r"),
            Output("\x1b[31mred\x1b[0m"),
            Resize(0, 0),
            VersionCheck(SemVer(2, 3, 4), ClientType.WEB),
            VersionError("bad"),
            DirectoryStructureRequest("a/b"),
            FileSystemRequest("readFile", "notes.md"),
            FileSystemRequest("getCurrentDirectory"),
        ):
            assert decode(encode(msg)) == msg


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "not json",
        "{",
        "[]",
        '"input"',
        "42",
        "null",
        "{}",
        '{"unknown": 1}',
        '{"input": 5}',
        '{"input": null}',
        '{"output": ["a"]}',
        '{"resize": [80]}',
        '{"resize": [80, 24, 1]}',
        '{"resize": "80x24"}',
        '{"resize": [80, -1]}',
        '{"resize": [80.5, 24]}',
        '{"resize": [true, 24]}',
        '{"input": "a", "output": "b"}',
        '{"type": "version_check"}',
        '{"type": "version_check", "version": {"major": "1", "minor": 0, "patch": 0}}',
        '{"type": "version_check", "version": {"major": 1, "minor": 0}}',
        '{"type": "version_check", "version": {"major": 1, "minor": 0, "patch": 0}, "clientType": "tv"}',
        '{"type": "version_check", "input": "x", "version": {"major": 1, "minor": 0, "patch": 0}}',
        '{"type": "teleport"}',
        '{"type": "get_directory_structure", "path": 3}',
        '{"type": "get_directory_structure", "error": "x"}',
        '{"fileSystem": "x"}',
        '{"fileSystem": {"readFile": 3}}',
        '{"fileSystem": {"exists": null}}',
        '{"fileSystem": {"writeFile": "a.txt"}}',
        '{"fileSystem": {"writeFile": {"path": "a.txt"}}}',
        '{"fileSystem": {"readFile": "a", "exists": "b"}}',
        b"\xff\xfe",
    ],
)
def test_malformed_frames_never_raise(raw):
    assert isinstance(decode(raw), DecodeError)


def test_decode_error_truncates_raw():
    result = decode("x" * 1000)
    assert isinstance(result, DecodeError)
    assert len(result.raw) < 300
