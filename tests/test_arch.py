import pytest

from uefi_xtask.arch import UefiArch


def test_from_str():
    assert UefiArch.parse("x86_64") == UefiArch.X86_64


@pytest.mark.parametrize("arch", list(UefiArch))
def test_parse_round_trip(arch):
    assert UefiArch.parse(str(arch)) is arch


def test_parse_invalid():
    with pytest.raises(ValueError, match="invalid arch: mips"):
        UefiArch.parse("mips")


def test_parse_is_case_sensitive():
    with pytest.raises(ValueError):
        UefiArch.parse("X86_64")


def test_default():
    assert UefiArch.default() is UefiArch.X86_64


@pytest.mark.parametrize(
    "arch, triple",
    [
        (UefiArch.AARCH64, "aarch64-unknown-uefi"),
        (UefiArch.IA32, "i686-unknown-uefi"),
        (UefiArch.X86_64, "x86_64-unknown-uefi"),
    ],
)
def test_as_triple(arch, triple):
    assert arch.as_triple() == triple


def test_display():
    assert str(UefiArch.parse("ia32")) == "ia32"
    assert f"{UefiArch.parse('aarch64')}" == "aarch64"
    assert f"{UefiArch.default()}" == "x86_64"