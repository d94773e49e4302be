"""Command description, formatting and execution."""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

_IGNORED_VARS = ("PATH", "RUSTC", "RUSTDOC")


class TaskError(Exception):
    """A task failed."""


@dataclass
class Command:
    """A program to run, with its arguments and environment changes.

    ``env`` maps a variable name to its new value, or to None when the
    variable is removed from the child's environment.
    """

    program: str
    arguments: list[str] = field(default_factory=list)
    env: dict[str, str | None] = field(default_factory=dict)
    cwd: Path | None = None

    def arg(self, arg: str | os.PathLike) -> Command:
        """Append one argument."""
        self.arguments.append(os.fspath(arg))
        return self

    def args(self, args: Iterable[str | os.PathLike]) -> Command:
        """Append several arguments."""
        self.arguments.extend(os.fspath(a) for a in args)
        return self

    def set_env(self, name: str, value: str) -> Command:
        """Set an environment variable for the child."""
        self.env[name] = value
        return self

    def remove_env(self, name: str) -> Command:
        """Remove an environment variable from the child's environment."""
        self.env[name] = None
        return self


def command_to_string(cmd: Command) -> str:
    """Format a command as ``VAR=val program --arg1 arg2``."""
    parts = [
        f"{name}={value or ''}"
        for name, value in sorted(cmd.env.items())
        if name not in _IGNORED_VARS
    ]
    parts.append(cmd.program)
    parts.extend(cmd.arguments)
    return " ".join(parts)


def _child_environment(cmd: Command) -> dict[str, str]:
    env = dict(os.environ)
    for name, value in cmd.env.items():
        if value is None:
            env.pop(name, None)
        else:
            env[name] = value
    return env


def _describe_status(code: int) -> str:
    if code < 0:
        return f"signal: {-code}"
    return f"exit status: {code}"


def run_cmd(cmd: Command) -> None:
    """Print a command, run it, and raise TaskError if it fails."""
    print(command_to_string(cmd))
    try:
        completed = subprocess.run(
            [cmd.program, *cmd.arguments],
            env=_child_environment(cmd),
            cwd=cmd.cwd,
            check=False,
        )
    except OSError as err:
        raise TaskError(f"failed to run {cmd.program}: {err}") from err
    if completed.returncode != 0:
        raise TaskError(f"command failed: {_describe_status(completed.returncode)}")