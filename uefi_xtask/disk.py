"""Creation and verification of the MBR test disk used by the VM tests."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from datetime import date, datetime, time
from pathlib import Path
from typing import Iterator

from uefi_xtask.util import TaskError

SECTOR_SIZE = 512
_NUM_SECTORS = 1234
_PARTITION_ENTRY = 446
_SIGNATURE = b"\x55\xaa"

_ATTR_VOLUME = 0x08
_ATTR_DIR = 0x10
_ATTR_ARCHIVE = 0x20
_ATTR_LFN = 0x0F
_LOWER_BASE = 0x08
_LOWER_EXT = 0x10
_DELETED = 0xE5
_END_OF_CHAIN = 0xFFF
_SHORT_CHARS = set("ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789!#$%&'()-@^_`{}~")

_TEST_CREATED = datetime(2000, 1, 24)
_TEST_ACCESSED = date(2001, 2, 25)
_TEST_MODIFIED = datetime(2002, 3, 26)


def _fat_date(value: date) -> int:
    return ((value.year - 1980) << 9) | (value.month << 5) | value.day


def _fat_time(value: time) -> int:
    return (value.hour << 11) | (value.minute << 5) | (value.second // 2)


def _lfn_checksum(short_name: bytes) -> int:
    total = 0
    for byte in short_name:
        total = (((total & 1) << 7) + (total >> 1) + byte) & 0xFF
    return total


def _is_short_char(char: str) -> bool:
    return char.upper() in _SHORT_CHARS


@dataclass
class _DirEntry:
    name: str
    short: bytes
    attr: int
    cluster: int
    size: int
    slots: list[int] = field(default_factory=list)

    @property
    def is_dir(self) -> bool:
        return bool(self.attr & _ATTR_DIR)


class _FatVolume:
    """A FAT12 volume held in memory."""

    def __init__(self, data: bytearray) -> None:
        self.data = data
        if len(data) < SECTOR_SIZE or data[510:512] != _SIGNATURE:
            raise TaskError("not a FAT volume: missing boot signature")
        bps, spc, reserved, num_fats, root_entries, total16 = struct.unpack_from(
            "<HBHBHH", data, 11
        )
        (fat_sectors,) = struct.unpack_from("<H", data, 22)
        (total32,) = struct.unpack_from("<I", data, 32)
        if bps != SECTOR_SIZE or spc == 0 or num_fats == 0:
            raise TaskError("not a FAT volume: unsupported geometry")
        total = total16 or total32
        root_sectors = (root_entries * 32 + bps - 1) // bps
        self.num_fats = num_fats
        self.fat_start = reserved * bps
        self.fat_bytes = fat_sectors * bps
        self.root_start = self.fat_start + num_fats * self.fat_bytes
        self.root_size = root_entries * 32
        self.data_start = self.root_start + root_sectors * bps
        self.cluster_size = spc * bps
        self.cluster_count = (
            total - reserved - num_fats * fat_sectors - root_sectors
        ) // spc
        if self.cluster_count >= 4085:
            raise TaskError("only FAT12 volumes are supported")

    @classmethod
    def format(cls, data: bytearray, label: str) -> _FatVolume:
        """Format ``data`` as an empty FAT12 volume with the given label."""
        total = len(data) // SECTOR_SIZE
        reserved, num_fats, root_entries = 1, 2, 512
        root_sectors = root_entries * 32 // SECTOR_SIZE
        fat_sectors = 1
        while True:
            clusters = total - reserved - root_sectors - num_fats * fat_sectors
            if fat_sectors * SECTOR_SIZE * 2 >= (clusters + 2) * 3:
                break
            fat_sectors += 1
        data[:] = bytes(len(data))
        label_bytes = label.encode("ascii")[:11].ljust(11)
        struct.pack_into(
            "<3s8sHBHBHHBHHHII",
            data,
            0,
            b"\xeb\x3c\x90",
            b"MSWIN4.1",
            SECTOR_SIZE,
            1,
            reserved,
            num_fats,
            root_entries,
            total if total < 0x10000 else 0,
            0xF8,
            fat_sectors,
            32,
            64,
            0,
            0 if total < 0x10000 else total,
        )
        struct.pack_into(
            "<BBBI11s8s", data, 36, 0x80, 0, 0x29, 0x12345678, label_bytes, b"FAT12   "
        )
        data[510:512] = _SIGNATURE
        volume = cls(data)
        volume._fat_set(0, 0xFF8)
        volume._fat_set(1, _END_OF_CHAIN)
        volume.data[volume.root_start : volume.root_start + 32] = struct.pack(
            "<11sB20x", label_bytes, _ATTR_VOLUME
        )
        return volume

    def _fat_get(self, cluster: int) -> int:
        offset = self.fat_start + cluster * 3 // 2
        value = int.from_bytes(self.data[offset : offset + 2], "little")
        return value >> 4 if cluster & 1 else value & 0xFFF

    def _fat_set(self, cluster: int, value: int) -> None:
        for copy in range(self.num_fats):
            offset = self.fat_start + copy * self.fat_bytes + cluster * 3 // 2
            old = int.from_bytes(self.data[offset : offset + 2], "little")
            if cluster & 1:
                new = (old & 0x000F) | (value << 4)
            else:
                new = (old & 0xF000) | value
            self.data[offset : offset + 2] = new.to_bytes(2, "little")

    def _chain(self, cluster: int) -> Iterator[int]:
        seen = 0
        while 2 <= cluster < 0xFF8:
            seen += 1
            if seen > self.cluster_count:
                raise TaskError("cluster chain loops")
            yield cluster
            cluster = self._fat_get(cluster)

    def _cluster_offset(self, cluster: int) -> int:
        return self.data_start + (cluster - 2) * self.cluster_size

    def _dir_slots(self, dir_cluster: int | None) -> Iterator[int]:
        if dir_cluster is None:
            yield from range(self.root_start, self.root_start + self.root_size, 32)
            return
        for cluster in self._chain(dir_cluster):
            start = self._cluster_offset(cluster)
            yield from range(start, start + self.cluster_size, 32)

    def entries(self, dir_cluster: int | None = None) -> Iterator[_DirEntry]:
        """Yield the live entries of a directory (None is the root)."""
        lfn_parts: dict[int, str] = {}
        lfn_slots: list[int] = []
        lfn_checksum = -1
        for offset in self._dir_slots(dir_cluster):
            raw = bytes(self.data[offset : offset + 32])
            if raw[0] == 0:
                return
            if raw[0] == _DELETED:
                lfn_parts, lfn_slots = {}, []
                continue
            attr = raw[11]
            if attr == _ATTR_LFN:
                units = raw[1:11] + raw[14:26] + raw[28:32]
                text = ""
                for i in range(0, len(units), 2):
                    unit = units[i : i + 2]
                    if unit in (b"\0\0", b"\xff\xff"):
                        break
                    text += unit.decode("utf-16-le", "replace")
                if raw[0] & 0x40:
                    lfn_parts, lfn_slots = {}, []
                lfn_parts[raw[0] & 0x1F] = text
                lfn_slots.append(offset)
                lfn_checksum = raw[13]
                continue
            if attr & _ATTR_VOLUME:
                lfn_parts, lfn_slots = {}, []
                continue
            short = raw[:11]
            if lfn_parts and lfn_checksum == _lfn_checksum(short):
                name = "".join(lfn_parts[k] for k in sorted(lfn_parts))
            else:
                name = self._decode_short(short, raw[12])
            cluster = (raw[20] | raw[21] << 8) << 16 | raw[26] | raw[27] << 8
            (size,) = struct.unpack_from("<I", raw, 28)
            yield _DirEntry(name, short, attr, cluster, size, [*lfn_slots, offset])
            lfn_parts, lfn_slots = {}, []

    @staticmethod
    def _decode_short(short: bytes, flags: int) -> str:
        base = short[:8].decode("ascii", "replace").rstrip()
        ext = short[8:].decode("ascii", "replace").rstrip()
        if flags & _LOWER_BASE:
            base = base.lower()
        if flags & _LOWER_EXT:
            ext = ext.lower()
        return f"{base}.{ext}" if ext else base

    def volume_label(self) -> str | None:
        """Return the label stored in the root directory, if any."""
        for offset in self._dir_slots(None):
            raw = self.data[offset : offset + 32]
            if raw[0] == 0:
                break
            if raw[0] != _DELETED and raw[11] != _ATTR_LFN and raw[11] & _ATTR_VOLUME:
                return bytes(raw[:11]).decode("ascii", "replace").rstrip()
        return None

    def find(self, dir_cluster: int | None, name: str) -> _DirEntry:
        for entry in self.entries(dir_cluster):
            if entry.name.casefold() == name.casefold():
                return entry
        raise TaskError(f"file not found: {name}")

    def lookup(self, path: str) -> _DirEntry:
        """Find an entry by a ``/``-separated path from the root."""
        parts = [p for p in path.split("/") if p]
        if not parts:
            raise TaskError("empty path")
        current: int | None = None
        entry = None
        for index, part in enumerate(parts):
            entry = self.find(current, part)
            if index < len(parts) - 1:
                if not entry.is_dir:
                    raise TaskError(f"not a directory: {part}")
                current = entry.cluster or None
        assert entry is not None
        return entry

    def read_file(self, entry: _DirEntry) -> bytes:
        chunks = [
            bytes(self.data[self._cluster_offset(c) : self._cluster_offset(c) + self.cluster_size])
            for c in self._chain(entry.cluster)
        ]
        return b"".join(chunks)[: entry.size]

    def stats(self) -> tuple[int, int]:
        """Return (total clusters, free clusters)."""
        free = sum(
            1 for c in range(2, self.cluster_count + 2) if self._fat_get(c) == 0
        )
        return self.cluster_count, free

    def _allocate(self) -> int:
        for cluster in range(2, self.cluster_count + 2):
            if self._fat_get(cluster) == 0:
                self._fat_set(cluster, _END_OF_CHAIN)
                start = self._cluster_offset(cluster)
                self.data[start : start + self.cluster_size] = bytes(self.cluster_size)
                return cluster
        raise TaskError("volume is full")

    def _write_chain(self, payload: bytes) -> int:
        first = previous = 0
        for start in range(0, len(payload), self.cluster_size):
            cluster = self._allocate()
            chunk = payload[start : start + self.cluster_size]
            offset = self._cluster_offset(cluster)
            self.data[offset : offset + len(chunk)] = chunk
            if previous:
                self._fat_set(previous, cluster)
            else:
                first = cluster
            previous = cluster
        return first

    def _free_slots(self, dir_cluster: int | None, count: int) -> list[int]:
        run: list[int] = []
        for offset in self._dir_slots(dir_cluster):
            if self.data[offset] in (0, _DELETED):
                run.append(offset)
                if len(run) == count:
                    return run
            else:
                run = []
        raise TaskError("directory is full")

    def _short_name(self, dir_cluster: int | None, name: str) -> tuple[bytes, int, bool]:
        base, ext = name.rsplit(".", 1) if "." in name.strip(".") else (name, "")
        parts_ok = all(p in (p.lower(), p.upper()) for p in (base, ext))
        if (
            1 <= len(base) <= 8
            and len(ext) <= 3
            and all(_is_short_char(c) for c in base + ext)
            and parts_ok
        ):
            flags = (_LOWER_BASE if base != base.upper() else 0) | (
                _LOWER_EXT if ext != ext.upper() else 0
            )
            short = (base.upper().ljust(8) + ext.upper().ljust(3)).encode("ascii")
            return short, flags, False
        clean = "".join(c for c in base.upper() if _is_short_char(c)) or "_"
        clean_ext = "".join(c for c in ext.upper() if _is_short_char(c))[:3]
        existing = {e.short for e in self.entries(dir_cluster)}
        number = 1
        while True:
            tail = f"~{number}"
            short = (clean[: 8 - len(tail)] + tail).ljust(8) + clean_ext.ljust(3)
            encoded = short.encode("ascii")
            if encoded not in existing:
                return encoded, 0, True
            number += 1

    @staticmethod
    def _lfn_records(name: str, checksum: int) -> list[bytes]:
        data = name.encode("utf-16-le")
        units = [data[i : i + 2] for i in range(0, len(data), 2)]
        if len(units) % 13:
            units.append(b"\0\0")
        while len(units) % 13:
            units.append(b"\xff\xff")
        count = len(units) // 13
        records = []
        for seq in range(count, 0, -1):
            chunk = units[(seq - 1) * 13 : seq * 13]
            order = seq | (0x40 if seq == count else 0)
            records.append(
                bytes([order])
                + b"".join(chunk[:5])
                + bytes([_ATTR_LFN, 0, checksum])
                + b"".join(chunk[5:11])
                + b"\0\0"
                + b"".join(chunk[11:])
            )
        return records

    @staticmethod
    def _short_record(
        short: bytes,
        attr: int,
        flags: int,
        cluster: int,
        size: int,
        created: datetime,
        accessed: date,
        modified: datetime,
    ) -> bytes:
        return struct.pack(
            "<11sBBBHHHHHHHI",
            short,
            attr,
            flags,
            0,
            _fat_time(created.time()),
            _fat_date(created.date()),
            _fat_date(accessed),
            cluster >> 16,
            _fat_time(modified.time()),
            _fat_date(modified.date()),
            cluster & 0xFFFF,
            size,
        )

    def _add_entry(
        self,
        dir_cluster: int | None,
        name: str,
        attr: int,
        cluster: int,
        size: int,
        created: datetime,
        accessed: date,
        modified: datetime,
    ) -> None:
        short, flags, needs_lfn = self._short_name(dir_cluster, name)
        records = self._lfn_records(name, _lfn_checksum(short)) if needs_lfn else []
        records.append(
            self._short_record(short, attr, flags, cluster, size, created, accessed, modified)
        )
        for offset, record in zip(self._free_slots(dir_cluster, len(records)), records):
            self.data[offset : offset + 32] = record

    def create_dir(self, parent: int | None, name: str) -> int:
        """Create a subdirectory and return its first cluster."""
        now = datetime.now().replace(microsecond=0)
        cluster = self._allocate()
        start = self._cluster_offset(cluster)
        self.data[start : start + 32] = self._short_record(
            b".".ljust(11), _ATTR_DIR, 0, cluster, 0, now, now.date(), now
        )
        self.data[start + 32 : start + 64] = self._short_record(
            b"..".ljust(11), _ATTR_DIR, 0, parent or 0, 0, now, now.date(), now
        )
        self._add_entry(parent, name, _ATTR_DIR, cluster, 0, now, now.date(), now)
        return cluster

    def create_file(
        self,
        parent: int | None,
        name: str,
        payload: bytes,
        created: datetime | None = None,
        accessed: date | None = None,
        modified: datetime | None = None,
    ) -> None:
        """Create a file holding ``payload`` in the given directory."""
        now = datetime.now().replace(microsecond=0)
        cluster = self._write_chain(payload)
        self._add_entry(
            parent,
            name,
            _ATTR_ARCHIVE,
            cluster,
            len(payload),
            created or now,
            accessed or now.date(),
            modified or now,
        )

    def delete(self, entry: _DirEntry) -> None:
        """Remove an entry and free its clusters."""
        for offset in entry.slots:
            self.data[offset] = _DELETED
        for cluster in list(self._chain(entry.cluster)):
            self._fat_set(cluster, 0)


def _partition_range(disk: bytes) -> range:
    if disk[510:512] != _SIGNATURE:
        raise TaskError("invalid MBR signature")
    start, count = struct.unpack_from("<II", disk, _PARTITION_ENTRY + 8)
    return range(start * SECTOR_SIZE, (start + count) * SECTOR_SIZE)


def create_mbr_test_disk(path: Path | str) -> None:
    """Write a disk image with one FAT partition holding the test input file."""
    disk = bytearray(_NUM_SECTORS * SECTOR_SIZE)
    disk[440:444] = b"\xff" * 4
    struct.pack_into(
        "<B3sB3sII", disk, _PARTITION_ENTRY, 0, bytes(3), 0x06, bytes(3), 1, _NUM_SECTORS - 1
    )
    disk[510:512] = _SIGNATURE
    span = _partition_range(disk)

    partition = bytearray(disk[span.start : span.stop])
    volume = _FatVolume.format(partition, "MbrTestDisk")
    if volume.volume_label() != "MbrTestDisk":
        raise TaskError("volume label was not written")
    test_dir = volume.create_dir(None, "test_dir")
    volume.create_file(
        test_dir,
        "test_input.txt",
        b"test input data",
        created=_TEST_CREATED,
        accessed=_TEST_ACCESSED,
        modified=_TEST_MODIFIED,
    )
    # The test runner checks these exact numbers.
    if volume.stats() != (1192, 1190):
        raise TaskError(f"unexpected cluster counts: {volume.stats()}")

    disk[span.start : span.stop] = partition
    Path(path).write_bytes(disk)


def check_mbr_test_disk(path: Path | str) -> None:
    """Verify that the VM tests modified the test disk as expected."""
    print("Verifying test disk has been correctly modified")
    disk = Path(path).read_bytes()
    span = _partition_range(disk)
    volume = _FatVolume(bytearray(disk[span.start : span.stop]))

    data = volume.read_file(volume.lookup("new_test_file.txt"))
    if data != b"test output data":
        raise TaskError(f"unexpected new_test_file.txt contents: {data!r}")

    test_dir = volume.lookup("test_dir")
    children = [e.name for e in volume.entries(test_dir.cluster)]
    if children != [".", ".."]:
        raise TaskError(f"test_dir was not emptied: {children}")