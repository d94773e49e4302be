import subprocess
from pathlib import Path
from unittest import mock

import pytest

from uefi_xtask import cli
from uefi_xtask.arch import UefiArch
from uefi_xtask.opt import BuildOpt, ClippyOpt, DocOpt, QemuOpt
from uefi_xtask.util import TaskError


def _patched_run(returncode):
    return mock.patch(
        "uefi_xtask.util.subprocess.run",
        return_value=subprocess.CompletedProcess([], returncode),
    )


@pytest.fixture
def fake_run():
    with _patched_run(0) as run:
        yield run


@pytest.fixture
def failing_run():
    with _patched_run(1) as run:
        yield run


def _commands(run):
    return [call.args[0] for call in run.call_args_list]


def test_build_command(fake_run):
    result = cli.build(BuildOpt(target=UefiArch.IA32, release=True))
    assert result is None
    (argv,) = _commands(fake_run)
    assert argv[:3] == ["cargo", "build", "--release"]
    assert "i686-unknown-uefi" in argv
    assert argv[argv.index("--features") + 1] == "alloc,exts,logger"
    assert "xtask" not in argv


def test_clippy_runs_twice(fake_run):
    result = cli.clippy(ClippyOpt(warnings_as_errors=True))
    assert result is None
    first, second = _commands(fake_run)
    assert first[1] == "clippy"
    assert first[-3:] == ["--", "-D", "warnings"]
    assert "--target" in first
    assert second[1] == "clippy"
    assert "--target" not in second
    assert second[second.index("--package") + 1] == "xtask"


def test_doc_open_and_warnings(fake_run):
    result = cli.doc(DocOpt(open=True, warnings_as_errors=True))
    assert result is None
    (argv,) = _commands(fake_run)
    assert argv[-1] == "--open"
    env = fake_run.call_args.kwargs["env"]
    assert env["RUSTDOCFLAGS"] == "-Dwarnings"
    packages = [argv[i + 1] for i, a in enumerate(argv) if a == "--package"]
    assert packages == ["uefi", "uefi-macros", "uefi-services"]


def test_run_miri(fake_run):
    result = cli.run_miri()
    assert result is None
    (argv,) = _commands(fake_run)
    assert argv[1:3] == ["miri", "test"]
    assert fake_run.call_args.kwargs["env"]["MIRIFLAGS"] == "-Zmiri-tag-raw-pointers"


def test_run_host_tests(fake_run):
    result = cli.run_host_tests()
    assert result is None
    first, second = _commands(fake_run)
    assert first == ["cargo", "test", "--package", "xtask"]
    assert second == [
        "cargo",
        "test",
        "--package",
        "uefi",
        "--package",
        "uefi-macros",
        "--features",
        "exts",
    ]


def test_run_vm_tests_build_failure_stops_before_qemu(failing_run):
    with pytest.raises(TaskError, match="command failed"):
        cli.run_vm_tests(QemuOpt(ci=True))
    (argv,) = _commands(failing_run)
    assert argv[argv.index("--features") + 1] == "uefi-test-runner/qemu,uefi-test-runner/ci"
    assert argv[argv.index("--package") + 1] == "uefi-test-runner"


def test_latest_release_checks_building_doc(fake_run, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    Path("BUILDING.md").write_text("Run `cargo build --target x86_64-unknown-uefi`.\n")
    result = cli.test_latest_release()
    assert result is None
    cp_argv, build_argv = _commands(fake_run)
    assert cp_argv[:4] == ["cp", "--recursive", "--verbose", "template"]
    assert build_argv == ["cargo", "build", "--target", "x86_64-unknown-uefi"]
    cwd = fake_run.call_args_list[1].kwargs["cwd"]
    assert cwd == Path(cp_argv[4]) / "template"


def test_latest_release_missing_command(fake_run, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    Path("BUILDING.md").write_text("nothing here\n")
    with pytest.raises(TaskError, match="does not contain"):
        cli.test_latest_release()
    assert len(fake_run.call_args_list) == 1


def test_main_success(fake_run):
    assert cli.main(["doc", "--open"]) == 0
    (argv,) = _commands(fake_run)
    assert argv[1] == "doc"
    assert argv[-1] == "--open"


def test_main_failure_returns_one(failing_run, capsys):
    assert cli.main(["miri"]) == 1
    assert "command failed" in capsys.readouterr().err


def test_main_rejects_unknown_arch():
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["build", "--target", "riscv"])
    assert excinfo.value.code == 2