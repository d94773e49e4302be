"""Construction of cargo invocations."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePath
from typing import Iterable

from uefi_xtask.arch import UefiArch
from uefi_xtask.util import Command, TaskError


class Package(Enum):
    """A package in the workspace."""

    UEFI = "uefi"
    UEFI_APP = "uefi_app"
    UEFI_MACROS = "uefi-macros"
    UEFI_SERVICES = "uefi-services"
    UEFI_TEST_RUNNER = "uefi-test-runner"
    XTASK = "xtask"

    @classmethod
    def published(cls) -> list[Package]:
        """All published packages."""
        return [cls.UEFI, cls.UEFI_MACROS, cls.UEFI_SERVICES]

    @classmethod
    def all_except_xtask(cls) -> list[Package]:
        """All the packages except for xtask."""
        return [
            cls.UEFI,
            cls.UEFI_APP,
            cls.UEFI_MACROS,
            cls.UEFI_SERVICES,
            cls.UEFI_TEST_RUNNER,
        ]


class Feature(Enum):
    """A cargo feature that can be enabled."""

    ALLOC = "alloc"
    EXTS = "exts"
    LOGGER = "logger"
    CI = "uefi-test-runner/ci"
    QEMU = "uefi-test-runner/qemu"

    @classmethod
    def more_code(cls) -> list[Feature]:
        """Features that enable more code in the root uefi crate."""
        return [cls.ALLOC, cls.EXTS, cls.LOGGER]


def comma_separated_features(features: Iterable[Feature]) -> str:
    """Join feature names with commas."""
    return ",".join(f.value for f in features)


class CargoAction(Enum):
    """The cargo subcommand to run."""

    BUILD = "build"
    CLIPPY = "clippy"
    DOC = "doc"
    MIRI = "miri"
    TEST = "test"


def sanitized_path(orig_path: str) -> str:
    """Return PATH without entries that pass through a ``.rustup`` directory."""
    kept = (
        entry
        for entry in orig_path.split(os.pathsep)
        if ".rustup" not in PurePath(entry).parts
    )
    return os.pathsep.join(kept)


def fix_nested_cargo_env(cmd: Command) -> None:
    """Unset variables that cargo sets and that break a nested toolchain choice."""
    cmd.remove_env("RUSTC")
    cmd.remove_env("RUSTDOC")
    cmd.set_env("PATH", sanitized_path(os.environ.get("PATH", "")))


@dataclass
class Cargo:
    """A cargo invocation over a set of packages."""

    action: CargoAction
    features: list[Feature] = field(default_factory=list)
    packages: list[Package] = field(default_factory=list)
    release: bool = False
    target: UefiArch | None = None
    warnings_as_errors: bool = False
    open_docs: bool = False

    def command(self) -> Command:
        """Build the command; raise TaskError if no packages are given."""
        cmd = Command("cargo")
        fix_nested_cargo_env(cmd)

        sub_action = None
        extra_args: list[str] = []
        tool_args: list[str] = []
        if self.action is CargoAction.CLIPPY:
            if self.warnings_as_errors:
                tool_args.extend(["-D", "warnings"])
        elif self.action is CargoAction.DOC:
            if self.warnings_as_errors:
                cmd.set_env("RUSTDOCFLAGS", "-Dwarnings")
            if self.open_docs:
                extra_args.append("--open")
        elif self.action is CargoAction.MIRI:
            cmd.set_env("MIRIFLAGS", "-Zmiri-tag-raw-pointers")
            sub_action = "test"

        cmd.arg(self.action.value)
        if sub_action is not None:
            cmd.arg(sub_action)

        if self.release:
            cmd.arg("--release")

        if self.target is not None:
            cmd.args(
                [
                    "--target",
                    self.target.as_triple(),
                    "-Zbuild-std=core,compiler_builtins,alloc",
                    "-Zbuild-std-features=compiler-builtins-mem",
                ]
            )

        if not self.packages:
            raise TaskError("packages cannot be empty")
        for package in self.packages:
            cmd.args(["--package", package.value])

        if self.features:
            cmd.args(["--features", comma_separated_features(self.features)])

        cmd.args(extra_args)

        if tool_args:
            cmd.arg("--")
            cmd.args(tool_args)

        return cmd