"""Tests for shell selection."""

from shellbridge.shell import ShellSpec, select_shell


def test_windows_gets_cmd():
    spec = select_shell("win32", env={"SHELL": "/bin/bash"})
    assert spec.path == "cmd.exe"
    assert spec.term_name == "cmd"


def test_cygwin_is_treated_as_windows():
    assert select_shell("cygwin", env={}).path == "cmd.exe"


def test_posix_uses_shell_env():
    spec = select_shell("linux", env={"SHELL": "/usr/bin/fish"})
    assert spec.path == "/usr/bin/fish"
    assert spec.args == ["-l"]
    assert spec.term_name == "xterm-color"


def test_posix_default_without_shell_env():
    assert select_shell("linux", env={}).path == "/bin/sh"
    assert select_shell("darwin", env={}).path == "/bin/zsh"


def test_empty_shell_env_falls_back():
    assert select_shell("linux", env={"SHELL": ""}).path == "/bin/sh"


def test_unknown_platform_never_fails():
    spec = select_shell("plan9", env={})
    assert spec.path == "/bin/sh"
    assert spec.term_name == "xterm-color"


def test_non_login_shell_has_no_args():
    spec = select_shell("linux", login=False, env={"SHELL": "/bin/bash"})
    assert spec.args == []
    assert spec.argv == ["/bin/bash"]


def test_argv_includes_args():
    assert ShellSpec("/bin/bash", ["-l"]).argv == ["/bin/bash", "-l"]
