import sys

import pytest

from uefi_xtask.util import Command, TaskError, command_to_string, run_cmd


def test_command_to_string():
    cmd = Command("MyCommand")
    cmd.args(["abc", "123"])
    for name, value in [
        ("VAR1", "val1"),
        ("VAR2", "val2"),
        ("PATH", "pathval"),
        ("RUSTC", "rustcval"),
        ("RUSTDOC", "rustdocval"),
    ]:
        cmd.set_env(name, value)
    assert command_to_string(cmd) == "VAR1=val1 VAR2=val2 MyCommand abc 123"


def test_command_to_string_removed_var():
    cmd = Command("prog").remove_env("FOO").arg("x")
    assert command_to_string(cmd) == "FOO= prog x"


def test_builder_chaining():
    cmd = Command("prog").arg("a").args(["b", "c"]).set_env("K", "v")
    assert cmd.arguments == ["a", "b", "c"]
    assert cmd.env == {"K": "v"}


def test_run_cmd_success_prints(capsys):
    cmd = Command(sys.executable).args(["-c", "pass"])
    assert run_cmd(cmd) is None
    out = capsys.readouterr().out
    assert out.startswith(command_to_string(cmd))


def test_run_cmd_failure():
    cmd = Command(sys.executable).args(["-c", "import sys; sys.exit(3)"])
    with pytest.raises(TaskError, match="exit status: 3"):
        run_cmd(cmd)


def test_run_cmd_passes_env():
    script = "import os, sys; sys.exit(0 if os.environ.get('XT_VAR') == 'val' else 1)"
    cmd = Command(sys.executable).args(["-c", script]).set_env("XT_VAR", "val")
    assert run_cmd(cmd) is None
    failing = Command(sys.executable).args(["-c", script]).set_env("XT_VAR", "other")
    with pytest.raises(TaskError):
        run_cmd(failing)


def test_run_cmd_removes_env(monkeypatch):
    monkeypatch.setenv("XT_GONE", "1")
    script = "import os, sys; sys.exit(1 if 'XT_GONE' in os.environ else 0)"
    cmd = Command(sys.executable).args(["-c", script]).remove_env("XT_GONE")
    assert run_cmd(cmd) is None
    kept = Command(sys.executable).args(["-c", script])
    with pytest.raises(TaskError):
        run_cmd(kept)


def test_run_cmd_missing_program():
    with pytest.raises(TaskError, match="failed to run"):
        run_cmd(Command("definitely-not-a-real-program-xyz"))