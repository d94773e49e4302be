"""Two-way communication pipes with QEMU."""

from __future__ import annotations

import json
import os
import time
from pathlib import Path
from typing import Any, BinaryIO

from uefi_xtask import platform
from uefi_xtask.util import TaskError

_MAX_OPEN_ATTEMPTS = 100
_OPEN_RETRY_DELAY = 0.1


class Io:
    """Line-oriented reads and flushed writes over a pair of byte streams."""

    def __init__(self, reader: BinaryIO, writer: BinaryIO) -> None:
        self.reader = reader
        self.writer = writer

    def read_line(self) -> str:
        """Read one line; raise TaskError at end of input."""
        line = self.reader.readline()
        if not line:
            raise TaskError("EOF reached")
        return line.decode("utf-8", "replace")

    def read_json(self) -> Any:
        return json.loads(self.read_line())

    def write_all(self, text: str) -> None:
        self.writer.write(text.encode("utf-8"))
        self.writer.flush()

    def write_json(self, value: Any) -> None:
        # Nothing may follow the JSON data: QEMU's pipe reader on
        # Windows hangs on a trailing newline.
        self.write_all(json.dumps(value, separators=(",", ":"), sort_keys=True))

    def close(self) -> None:
        for stream in {id(self.reader): self.reader, id(self.writer): self.writer}.values():
            stream.close()

    def __enter__(self) -> Io:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class Pipe:
    """A named pipe pair (Unix) or duplex pipe (Windows) for QEMU."""

    def __init__(self, directory: Path | str, base_name: str) -> None:
        directory = Path(directory)
        if platform.is_unix():
            self.qemu_arg = f"pipe:{directory / base_name}"
            self.input_path = directory / f"{base_name}.in"
            self.output_path = directory / f"{base_name}.out"
            os.mkfifo(self.input_path, 0o666)
            os.mkfifo(self.output_path, 0o666)
        elif platform.is_windows():
            # QEMU creates the pipe itself and adds the "\\.\pipe\" prefix.
            self.qemu_arg = f"pipe:{base_name}"
            self.input_path = Path(rf"\\.\pipe\{base_name}")
            self.output_path = None
        else:
            raise TaskError("unsupported platform for pipes")

    def open_io(self) -> Io:
        """Open the pipe for reading and writing."""
        if platform.is_unix():
            reader = open(self.output_path, "rb")
            writer = open(self.input_path, "wb")
            return Io(reader, writer)
        if platform.is_windows():
            duplex = windows_open_pipe(self.input_path)
            return Io(duplex, duplex)
        raise TaskError("unsupported platform for pipes")


def windows_open_pipe(path: Path | str) -> BinaryIO:
    """Connect to a duplex named pipe, retrying while it does not exist yet."""
    attempt = 0
    while True:
        attempt += 1
        try:
            return open(path, "r+b", buffering=0)
        except OSError:
            if attempt >= _MAX_OPEN_ATTEMPTS:
                raise
            time.sleep(_OPEN_RETRY_DELAY)