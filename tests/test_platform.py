import os
import sys

from uefi_xtask.platform import is_linux, is_unix, is_windows


def test_unix_and_windows_are_exclusive():
    assert [is_unix(), is_windows()].count(True) <= 1
    assert not (is_unix() and is_windows())


def test_linux_implies_unix():
    assert (not is_linux()) or is_unix()


def test_linux_detected(monkeypatch):
    monkeypatch.setattr(sys, "platform", "linux")
    assert is_linux() is True


def test_non_linux_detected(monkeypatch):
    monkeypatch.setattr(sys, "platform", "darwin")
    assert is_linux() is False


def test_windows_family(monkeypatch):
    monkeypatch.setattr(os, "name", "nt")
    result = (is_windows(), is_unix())
    monkeypatch.undo()
    assert result == (True, False)


def test_unix_family(monkeypatch):
    monkeypatch.setattr(os, "name", "posix")
    result = (is_windows(), is_unix())
    monkeypatch.undo()
    assert result == (False, True)