"""Entry point dispatching the developer tasks."""

from __future__ import annotations

import sys
import tempfile
from pathlib import Path

from uefi_xtask import platform, qemu
from uefi_xtask.cargo import Cargo, CargoAction, Feature, Package, fix_nested_cargo_env
from uefi_xtask.opt import (
    BuildOpt,
    ClippyOpt,
    DocOpt,
    MiriOpt,
    QemuOpt,
    TestLatestReleaseOpt,
    TestOpt,
    parse_args,
)
from uefi_xtask.util import Command, TaskError, command_to_string, run_cmd

BUILDING_DOC = Path("BUILDING.md")


def build(opt: BuildOpt) -> None:
    """Build all the UEFI packages."""
    cargo = Cargo(
        action=CargoAction.BUILD,
        features=Feature.more_code(),
        packages=Package.all_except_xtask(),
        release=opt.release,
        target=opt.target,
    )
    run_cmd(cargo.command())


def clippy(opt: ClippyOpt) -> None:
    """Run clippy on the UEFI packages, then on xtask."""
    cargo = Cargo(
        action=CargoAction.CLIPPY,
        features=Feature.more_code(),
        packages=Package.all_except_xtask(),
        target=opt.target,
        warnings_as_errors=opt.warnings_as_errors,
    )
    run_cmd(cargo.command())

    cargo = Cargo(
        action=CargoAction.CLIPPY,
        packages=[Package.XTASK],
        warnings_as_errors=opt.warnings_as_errors,
    )
    run_cmd(cargo.command())


def doc(opt: DocOpt) -> None:
    """Build the docs of the published packages."""
    cargo = Cargo(
        action=CargoAction.DOC,
        features=Feature.more_code(),
        packages=Package.published(),
        warnings_as_errors=opt.warnings_as_errors,
        open_docs=opt.open,
    )
    run_cmd(cargo.command())


def run_miri() -> None:
    """Run unit tests and doctests under Miri."""
    cargo = Cargo(
        action=CargoAction.MIRI,
        features=[Feature.EXTS],
        packages=[Package.UEFI],
    )
    run_cmd(cargo.command())


def run_vm_tests(opt: QemuOpt) -> None:
    """Build the test runner and run it in QEMU."""
    features = [Feature.QEMU]
    # The multi-processor test does not work without kvm, so the ci
    # feature is always enabled when not on Linux.
    if opt.ci or not platform.is_linux():
        features.append(Feature.CI)

    cargo = Cargo(
        action=CargoAction.BUILD,
        features=features,
        packages=[Package.UEFI_TEST_RUNNER],
        release=opt.release,
        target=opt.target,
    )
    run_cmd(cargo.command())

    qemu.run_qemu(opt.target, opt)


def run_host_tests() -> None:
    """Run the tests that can run on the host without a VM."""
    cargo = Cargo(action=CargoAction.TEST, packages=[Package.XTASK])
    run_cmd(cargo.command())

    # uefi-services is left out: its lang items conflict with std.
    cargo = Cargo(
        action=CargoAction.TEST,
        features=[Feature.EXTS],
        packages=[Package.UEFI, Package.UEFI_MACROS],
    )
    run_cmd(cargo.command())


def test_latest_release() -> None:
    """Build the template app in isolation against the released packages.

    The build command must also appear in the building guide.
    """
    with tempfile.TemporaryDirectory() as tmp_name:
        tmp_dir = Path(tmp_name)
        cp_cmd = Command("cp").args(["--recursive", "--verbose", "template", tmp_dir])
        run_cmd(cp_cmd)

        build_cmd = Command("cargo")
        fix_nested_cargo_env(build_cmd)
        build_cmd.args(["build", "--target", "x86_64-unknown-uefi"])
        build_cmd.cwd = tmp_dir / "template"

        try:
            building_md = BUILDING_DOC.read_text(encoding="utf-8")
        except OSError as err:
            raise TaskError(f"cannot read {BUILDING_DOC}: {err}") from err
        expected = command_to_string(build_cmd)
        if expected not in building_md:
            raise TaskError(f"{BUILDING_DOC} does not contain the command: {expected}")
        run_cmd(build_cmd)


test_latest_release.__test__ = False  # type: ignore[attr-defined]


def main(argv: list[str] | None = None) -> int:
    """Run the task named on the command line; return the exit status."""
    opt = parse_args(argv)
    try:
        match opt:
            case BuildOpt():
                build(opt)
            case ClippyOpt():
                clippy(opt)
            case DocOpt():
                doc(opt)
            case MiriOpt():
                run_miri()
            case QemuOpt():
                run_vm_tests(opt)
            case TestOpt():
                run_host_tests()
            case TestLatestReleaseOpt():
                test_latest_release()
    except TaskError as err:
        print(f"Error: {err}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())