"""Command-line options for the developer tasks."""

from __future__ import annotations

import argparse
from dataclasses import dataclass, field
from pathlib import Path

from uefi_xtask.arch import UefiArch


@dataclass
class BuildOpt:
    """Build all the uefi packages."""

    target: UefiArch = field(default_factory=UefiArch.default)
    release: bool = False


@dataclass
class ClippyOpt:
    """Run clippy on all the packages."""

    target: UefiArch = field(default_factory=UefiArch.default)
    warnings_as_errors: bool = False


@dataclass
class DocOpt:
    """Build the docs for the uefi packages."""

    open: bool = False
    warnings_as_errors: bool = False


@dataclass
class MiriOpt:
    """Run unit tests and doctests under Miri."""


@dataclass
class QemuOpt:
    """Build uefi-test-runner and run it in QEMU."""

    target: UefiArch = field(default_factory=UefiArch.default)
    release: bool = False
    disable_kvm: bool = False
    ci: bool = False
    headless: bool = False
    ovmf_code: Path | None = None
    ovmf_vars: Path | None = None


@dataclass
class TestOpt:
    """Run unit tests and doctests on the host."""

    __test__ = False


@dataclass
class TestLatestReleaseOpt:
    """Build the template against the released packages."""

    __test__ = False


def _arch(text: str) -> UefiArch:
    try:
        return UefiArch.parse(text)
    except ValueError as err:
        raise argparse.ArgumentTypeError(str(err)) from err


def _add_target(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--target",
        type=_arch,
        default=UefiArch.default(),
        help="UEFI target to build for.",
    )


def _add_release(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--release", action="store_true", help="Build in release mode.")


def _add_warnings(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--warnings-as-errors", action="store_true", help="Treat warnings as errors."
    )


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser with one subcommand per task."""
    parser = argparse.ArgumentParser(
        prog="xtask", description="Developer utility for running various tasks."
    )
    sub = parser.add_subparsers(dest="action", required=True)

    p = sub.add_parser("build", help=BuildOpt.__doc__)
    _add_target(p)
    _add_release(p)
    p.set_defaults(make=lambda ns: BuildOpt(target=ns.target, release=ns.release))

    p = sub.add_parser("clippy", help=ClippyOpt.__doc__)
    _add_target(p)
    _add_warnings(p)
    p.set_defaults(
        make=lambda ns: ClippyOpt(target=ns.target, warnings_as_errors=ns.warnings_as_errors)
    )

    p = sub.add_parser("doc", help=DocOpt.__doc__)
    p.add_argument("--open", action="store_true", help="Open the docs in a browser.")
    _add_warnings(p)
    p.set_defaults(
        make=lambda ns: DocOpt(open=ns.open, warnings_as_errors=ns.warnings_as_errors)
    )

    p = sub.add_parser("miri", help=MiriOpt.__doc__)
    p.set_defaults(make=lambda ns: MiriOpt())

    p = sub.add_parser("run", help=QemuOpt.__doc__)
    _add_target(p)
    _add_release(p)
    p.add_argument(
        "--disable-kvm",
        action="store_true",
        help="Disable hardware accelerated virtualization support in QEMU.",
    )
    p.add_argument(
        "--ci", action="store_true", help="Disable some tests that don't work in the CI."
    )
    p.add_argument("--headless", action="store_true", help="Run QEMU without a GUI.")
    p.add_argument("--ovmf-code", type=Path, help="Path of an OVMF code file.")
    p.add_argument("--ovmf-vars", type=Path, help="Path of an OVMF vars file.")
    p.set_defaults(
        make=lambda ns: QemuOpt(
            target=ns.target,
            release=ns.release,
            disable_kvm=ns.disable_kvm,
            ci=ns.ci,
            headless=ns.headless,
            ovmf_code=ns.ovmf_code,
            ovmf_vars=ns.ovmf_vars,
        )
    )

    p = sub.add_parser("test", help=TestOpt.__doc__)
    p.set_defaults(make=lambda ns: TestOpt())

    p = sub.add_parser("test-latest-release", help=TestLatestReleaseOpt.__doc__)
    p.set_defaults(make=lambda ns: TestLatestReleaseOpt())

    return parser


def parse_args(
    argv: list[str] | None = None,
) -> BuildOpt | ClippyOpt | DocOpt | MiriOpt | QemuOpt | TestOpt | TestLatestReleaseOpt:
    """Parse the command line into the options of the chosen task."""
    namespace = build_parser().parse_args(argv)
    return namespace.make(namespace)