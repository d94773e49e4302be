import struct

import pytest

from uefi_xtask.disk import (
    SECTOR_SIZE,
    _FatVolume,
    _partition_range,
    check_mbr_test_disk,
    create_mbr_test_disk,
)
from uefi_xtask.util import TaskError


@pytest.fixture
def disk_path(tmp_path):
    path = tmp_path / "test_disk.fat.img"
    create_mbr_test_disk(path)
    return path


def _modify(path, action):
    disk = bytearray(path.read_bytes())
    span = _partition_range(disk)
    partition = bytearray(disk[span.start : span.stop])
    volume = _FatVolume(partition)
    action(volume)
    disk[span.start : span.stop] = partition
    path.write_bytes(disk)


def test_disk_layout(disk_path):
    disk = disk_path.read_bytes()
    assert len(disk) == 1234 * SECTOR_SIZE
    assert disk[510:512] == b"\x55\xaa"
    assert disk[446 + 4] == 0x06
    assert struct.unpack_from("<II", disk, 446 + 8) == (1, 1233)


def test_volume_contents(disk_path):
    disk = disk_path.read_bytes()
    span = _partition_range(disk)
    volume = _FatVolume(bytearray(disk[span.start : span.stop]))
    assert volume.volume_label() == "MbrTestDisk"
    assert volume.stats() == (1192, 1190)
    entry = volume.lookup("test_dir/test_input.txt")
    assert volume.read_file(entry) == b"test input data"


def test_check_fails_on_unmodified_disk(disk_path):
    with pytest.raises(TaskError, match="new_test_file.txt"):
        check_mbr_test_disk(disk_path)


def test_check_passes_after_expected_changes(disk_path, capsys):
    def change(volume):
        volume.create_file(None, "new_test_file.txt", b"test output data")
        volume.delete(volume.lookup("test_dir/test_input.txt"))

    _modify(disk_path, change)
    check_mbr_test_disk(disk_path)
    assert "Verifying test disk" in capsys.readouterr().out


def test_check_fails_when_input_not_deleted(disk_path):
    _modify(
        disk_path,
        lambda v: v.create_file(None, "new_test_file.txt", b"test output data"),
    )
    with pytest.raises(TaskError, match="test_dir"):
        check_mbr_test_disk(disk_path)


def test_delete_frees_clusters(disk_path):
    disk = disk_path.read_bytes()
    span = _partition_range(disk)
    volume = _FatVolume(bytearray(disk[span.start : span.stop]))
    total, free = volume.stats()
    volume.delete(volume.lookup("test_dir/test_input.txt"))
    assert volume.stats() == (total, free + 1)


def test_long_file_round_trip(disk_path):
    disk = disk_path.read_bytes()
    span = _partition_range(disk)
    volume = _FatVolume(bytearray(disk[span.start : span.stop]))
    payload = bytes(range(256)) * 5
    volume.create_file(None, "a rather long file name.bin", payload)
    assert volume.read_file(volume.lookup("a rather long file name.bin")) == payload


def test_invalid_mbr_rejected(tmp_path):
    path = tmp_path / "blank.img"
    path.write_bytes(bytes(4 * SECTOR_SIZE))
    with pytest.raises(TaskError, match="MBR"):
        check_mbr_test_disk(path)