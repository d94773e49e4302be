"""UEFI target architectures."""

from __future__ import annotations

from enum import Enum


class UefiArch(Enum):
    """A UEFI guest architecture that packages can be built for."""

    AARCH64 = "aarch64"
    IA32 = "ia32"
    X86_64 = "x86_64"

    def __str__(self) -> str:
        return self.value

    def as_triple(self) -> str:
        """Return the compiler target triple for this architecture."""
        return _TRIPLES[self]

    @classmethod
    def parse(cls, text: str) -> UefiArch:
        """Parse an architecture name such as ``x86_64``."""
        for arch in cls:
            if arch.value == text:
                return arch
        raise ValueError(f"invalid arch: {text}")

    @classmethod
    def default(cls) -> UefiArch:
        """Return the architecture used when none is given."""
        return cls.X86_64


_TRIPLES = {
    UefiArch.AARCH64: "aarch64-unknown-uefi",
    UefiArch.IA32: "i686-unknown-uefi",
    UefiArch.X86_64: "x86_64-unknown-uefi",
}