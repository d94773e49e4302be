"""Functions to determine the host platform."""

import os
import sys


def is_linux() -> bool:
    """Return True when running on Linux."""
    return sys.platform.startswith("linux")


def is_unix() -> bool:
    """Return True when running on a Unix-like system."""
    return os.name == "posix"


def is_windows() -> bool:
    """Return True when running on Windows."""
    return os.name == "nt"