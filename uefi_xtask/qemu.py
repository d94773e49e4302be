"""Running the test runner inside QEMU and talking to it while it runs."""

from __future__ import annotations

import os
import re
import shutil
import subprocess
import sys
import tempfile
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Sequence

from uefi_xtask import platform
from uefi_xtask.arch import UefiArch
from uefi_xtask.disk import check_mbr_test_disk, create_mbr_test_disk
from uefi_xtask.net import EchoService
from uefi_xtask.opt import QemuOpt
from uefi_xtask.pipe import Io, Pipe
from uefi_xtask.util import Command, TaskError, command_to_string

SCREENSHOT_DIR = Path("uefi-test-runner/screenshots")

# Escape codes added by the console output protocol when writing to the
# serial device.
_ANSI_ESCAPE = re.compile(r"(\x9b|\x1b\[)[0-?]*[ -/]*[@-~]")

_QEMU_EXE = {
    UefiArch.AARCH64: "qemu-system-aarch64",
    UefiArch.IA32: "qemu-system-i386",
    UefiArch.X86_64: "qemu-system-x86_64",
}

_BOOT_FILE = {
    UefiArch.AARCH64: "BootAA64.efi",
    UefiArch.IA32: "BootIA32.efi",
    UefiArch.X86_64: "BootX64.efi",
}

# The x86_64 test runner exits through the debug-exit device with code 3
# to signal success.
_SUCCESS_EXIT_CODE = {
    UefiArch.AARCH64: 0,
    UefiArch.IA32: 0,
    UefiArch.X86_64: 3,
}


class OvmfFileType(Enum):
    """The kind of OVMF firmware file."""

    CODE = "code"
    VARS = "vars"


@dataclass(frozen=True)
class OvmfPaths:
    """Locations of an OVMF code file and its matching vars file."""

    code: Path
    vars: Path

    def get_path(self, file_type: OvmfFileType) -> Path:
        """Return the path for the given file type."""
        return self.code if file_type is OvmfFileType.CODE else self.vars

    @classmethod
    def _of(cls, code: str, vars_: str) -> OvmfPaths:
        return cls(Path(code), Path(vars_))

    @classmethod
    def arch_linux(cls, arch: UefiArch) -> OvmfPaths:
        """Arch Linux paths for the given guest architecture."""
        if arch is UefiArch.AARCH64:
            return cls._of(
                "/usr/share/edk2-armvirt/aarch64/QEMU_CODE.fd",
                "/usr/share/edk2-armvirt/aarch64/QEMU_VARS.fd",
            )
        if arch is UefiArch.IA32:
            return cls._of(
                "/usr/share/edk2-ovmf/ia32/OVMF_CODE.fd",
                "/usr/share/edk2-ovmf/ia32/OVMF_VARS.fd",
            )
        return cls._of(
            "/usr/share/edk2-ovmf/x64/OVMF_CODE.fd",
            "/usr/share/edk2-ovmf/x64/OVMF_VARS.fd",
        )

    @classmethod
    def centos_linux(cls, arch: UefiArch) -> OvmfPaths | None:
        """CentOS paths for the given guest architecture; None for ia32."""
        if arch is UefiArch.AARCH64:
            return cls._of(
                "/usr/share/edk2/aarch64/QEMU_EFI-pflash.raw",
                "/usr/share/edk2/aarch64/vars-template-pflash.raw",
            )
        if arch is UefiArch.IA32:
            return None
        # The CentOS package has no plain OVMF_CODE.fd.
        return cls._of(
            "/usr/share/edk2/ovmf/OVMF_CODE.secboot.fd",
            "/usr/share/edk2/ovmf/OVMF_VARS.fd",
        )

    @classmethod
    def debian_linux(cls, arch: UefiArch) -> OvmfPaths:
        """Debian (and Ubuntu) paths for the given guest architecture."""
        if arch is UefiArch.AARCH64:
            return cls._of(
                "/usr/share/AAVMF/AAVMF_CODE.fd",
                "/usr/share/AAVMF/AAVMF_VARS.fd",
            )
        if arch is UefiArch.IA32:
            return cls._of(
                "/usr/share/OVMF/OVMF32_CODE_4M.secboot.fd",
                "/usr/share/OVMF/OVMF32_VARS_4M.fd",
            )
        return cls._of(
            "/usr/share/OVMF/OVMF_CODE.fd",
            "/usr/share/OVMF/OVMF_VARS.fd",
        )

    @classmethod
    def fedora_linux(cls, arch: UefiArch) -> OvmfPaths:
        """Fedora paths for the given guest architecture."""
        if arch is UefiArch.AARCH64:
            return cls._of(
                "/usr/share/edk2/aarch64/QEMU_EFI-pflash.raw",
                "/usr/share/edk2/aarch64/vars-template-pflash.raw",
            )
        if arch is UefiArch.IA32:
            return cls._of(
                "/usr/share/edk2/ovmf-ia32/OVMF_CODE.fd",
                "/usr/share/edk2/ovmf-ia32/OVMF_VARS.fd",
            )
        return cls._of(
            "/usr/share/edk2/ovmf/OVMF_CODE.fd",
            "/usr/share/edk2/ovmf/OVMF_VARS.fd",
        )

    @classmethod
    def windows(cls, arch: UefiArch) -> OvmfPaths:
        """Windows paths for the given guest architecture."""
        if arch is UefiArch.AARCH64:
            return cls._of(
                r"C:\Program Files\qemu\share\edk2-aarch64-code.fd",
                r"C:\Program Files\qemu\share\edk2-arm-vars.fd",
            )
        if arch is UefiArch.IA32:
            return cls._of(
                r"C:\Program Files\qemu\share\edk2-i386-code.fd",
                r"C:\Program Files\qemu\share\edk2-i386-vars.fd",
            )
        # There is no x86_64 vars file, but the i386 one works.
        return cls._of(
            r"C:\Program Files\qemu\share\edk2-x86_64-code.fd",
            r"C:\Program Files\qemu\share\edk2-i386-vars.fd",
        )

    @classmethod
    def get_candidate_paths(cls, arch: UefiArch) -> list[OvmfPaths]:
        """Candidate locations for the given guest arch on this host."""
        candidates: list[OvmfPaths] = []
        if platform.is_linux():
            candidates.append(cls.arch_linux(arch))
            centos = cls.centos_linux(arch)
            if centos is not None:
                candidates.append(centos)
            candidates.append(cls.debian_linux(arch))
            candidates.append(cls.fedora_linux(arch))
        if platform.is_windows():
            candidates.append(cls.windows(arch))
        return candidates

    @classmethod
    def find_ovmf_file(
        cls,
        file_type: OvmfFileType,
        user_provided_path: Path | str | None,
        candidates: Sequence[OvmfPaths],
    ) -> Path:
        """Find an OVMF file.

        A user-provided path is always used and must exist; otherwise the
        first existing candidate is returned.
        """
        if user_provided_path is not None:
            path = Path(user_provided_path)
            if path.exists():
                return path
            raise TaskError(f"ovmf {file_type.value} file does not exist: {path}")

        for candidate in candidates:
            path = candidate.get_path(file_type)
            if path.exists():
                return path

        searched = [str(c.get_path(file_type)) for c in candidates]
        raise TaskError(f"no ovmf {file_type.value} file found in candidates: {searched}")

    @classmethod
    def find(cls, opt: QemuOpt, arch: UefiArch) -> OvmfPaths:
        """Find the OVMF code and vars files to use."""
        candidates = cls.get_candidate_paths(arch)
        code = cls.find_ovmf_file(OvmfFileType.CODE, opt.ovmf_code, candidates)
        vars_ = cls.find_ovmf_file(OvmfFileType.VARS, opt.ovmf_vars, candidates)
        return cls(code, vars_)


class PflashMode(Enum):
    """Whether a pflash drive may be written by the guest."""

    READ_ONLY = "on"
    READ_WRITE = "off"


def add_pflash_args(cmd: Command, file: Path | str, mode: PflashMode) -> None:
    """Add a raw pflash drive backed by ``file``."""
    cmd.arg("-drive")
    cmd.arg(f"if=pflash,format=raw,readonly={mode.value},file={os.fspath(file)}")


def strip_ansi(line: str) -> str:
    """Remove ANSI escape sequences from a line."""
    return _ANSI_ESCAPE.sub("", line)


def echo_filtered_stdout(child_io: Io) -> None:
    """Print each line from the child, stripped of whitespace and escapes."""
    while True:
        try:
            line = child_io.read_line()
        except (TaskError, OSError, ValueError):
            return
        print(strip_ansi(line.strip()))


def _expect_empty_return(reply: object) -> None:
    if reply != {"return": {}}:
        raise TaskError(f"unexpected QEMU monitor reply: {reply!r}")


def process_qemu_io(monitor_io: Io, serial_io: Io, tmp_dir: Path | str) -> None:
    """Run the monitor handshake, then serve screenshot requests from the guest."""
    tmp_dir = Path(tmp_dir)

    greeting = monitor_io.read_line()
    if not greeting.startswith('{"QMP":'):
        raise TaskError(f"unexpected QEMU monitor greeting: {greeting!r}")
    monitor_io.write_json({"execute": "qmp_capabilities"})
    _expect_empty_return(monitor_io.read_json())

    while True:
        try:
            line = serial_io.read_line()
        except TaskError:
            return
        line = line.rstrip()

        prefix = "SCREENSHOT: "
        if not line.startswith(prefix):
            continue
        reference_name = line[len(prefix):]
        screenshot_path = tmp_dir / "screenshot.ppm"

        monitor_io.write_json(
            {"execute": "screendump", "arguments": {"filename": str(screenshot_path)}}
        )

        # Wait for the acknowledgement, ignoring events.
        reply = monitor_io.read_json()
        while isinstance(reply, dict) and "event" in reply:
            reply = monitor_io.read_json()
        _expect_empty_return(reply)

        serial_io.write_all("OK\n")

        expected = (SCREENSHOT_DIR / f"{reference_name}.ppm").read_bytes()
        actual = screenshot_path.read_bytes()
        if expected != actual:
            raise TaskError(f"screenshot does not match reference: {reference_name}")


def build_esp_dir(opt: QemuOpt) -> Path:
    """Create the EFI system partition directory handed to QEMU."""
    build_mode = "release" if opt.release else "debug"
    build_dir = Path("target") / opt.target.as_triple() / build_mode
    esp_dir = build_dir / "esp"
    boot_dir = esp_dir / "EFI" / "Boot"
    boot_dir.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(build_dir / "uefi-test-runner.efi", boot_dir / _BOOT_FILE[opt.target])

    # Used by the media protocol tests.
    (boot_dir / "test_input.txt").write_text("test input data")
    return esp_dir


class _ChildGuard:
    """Kill and reap a child process on exit unless it has already ended."""

    def __init__(self, process: subprocess.Popen) -> None:
        self.process = process

    def __enter__(self) -> subprocess.Popen:
        return self.process

    def __exit__(self, *exc_info: object) -> None:
        if self.process.poll() is not None:
            return
        try:
            self.process.kill()
        except OSError as err:
            print(f"failed to kill process: {err}", file=sys.stderr)
        try:
            self.process.wait()
        except OSError as err:
            print(f"failed to wait for process exit: {err}", file=sys.stderr)


def _environment(cmd: Command) -> dict[str, str]:
    env = dict(os.environ)
    for name, value in cmd.env.items():
        if value is None:
            env.pop(name, None)
        else:
            env[name] = value
    return env


def _add_arch_args(cmd: Command, arch: UefiArch, opt: QemuOpt) -> None:
    if arch is UefiArch.AARCH64:
        cmd.args(["-machine", "virt"])
        cmd.args(["-cpu", "cortex-a72"])
    elif arch is UefiArch.X86_64:
        cmd.args(["-machine", "q35"])
        # The multi-processor test needs exactly 4 CPUs.
        cmd.args(["-smp", "4"])
        cmd.args(["-m", "256M"])
        if platform.is_linux() and not opt.disable_kvm and not opt.ci:
            cmd.arg("--enable-kvm")
        if opt.ci:
            cmd.arg("-no-reboot")
        # Map the QEMU exit signal to port f4.
        cmd.args(["-device", "isa-debug-exit,iobase=0xf4,iosize=0x04"])


def run_qemu(arch: UefiArch, opt: QemuOpt) -> None:
    """Boot the test runner in QEMU and check that it succeeded."""
    esp_dir = build_esp_dir(opt)

    cmd = Command(_QEMU_EXE[arch])
    if platform.is_windows():
        # The Windows installer does not put QEMU on the PATH.
        cmd.set_env("PATH", os.environ.get("PATH", "") + r";C:\Program Files\qemu")

    cmd.arg("-nodefaults")
    cmd.args(["-device", "virtio-rng-pci"])
    _add_arch_args(cmd, arch, opt)

    with tempfile.TemporaryDirectory() as tmp_name:
        tmp_dir = Path(tmp_name)

        ovmf_paths = OvmfPaths.find(opt, arch)
        # A writable copy: some AArch64 firmware won't boot otherwise.
        ovmf_vars = tmp_dir / "ovmf_vars"
        shutil.copyfile(ovmf_paths.vars, ovmf_vars)
        add_pflash_args(cmd, ovmf_paths.code, PflashMode.READ_ONLY)
        add_pflash_args(cmd, ovmf_vars, PflashMode.READ_WRITE)

        cmd.args(["-drive", f"format=raw,file=fat:rw:{os.fspath(esp_dir)}"])

        cmd.args(["-vga", "std"])
        if opt.headless:
            cmd.args(["-display", "none"])

        test_disk = tmp_dir / "test_disk.fat.img"
        create_mbr_test_disk(test_disk)
        cmd.args(["-drive", f"format=raw,file={os.fspath(test_disk)}"])

        monitor_pipe = Pipe(tmp_dir, "qemu-monitor")
        serial_pipe = Pipe(tmp_dir, "serial")

        # The first serial device carries logs to stdout; the second
        # carries screenshot requests and replies.
        cmd.args(["-serial", "stdio"])
        cmd.args(["-serial", serial_pipe.qemu_arg])
        cmd.args(["-qmp", monitor_pipe.qemu_arg])
        cmd.args(
            [
                "-nic",
                "user,model=e1000,net=192.168.17.0/24,"
                "tftp=uefi-test-runner/tftp/,bootfile=fake-boot-file",
            ]
        )

        with EchoService.start() as echo_service:
            print(command_to_string(cmd))
            try:
                process = subprocess.Popen(
                    [cmd.program, *cmd.arguments],
                    env=_environment(cmd),
                    cwd=cmd.cwd,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                )
            except OSError as err:
                raise TaskError(f"failed to launch qemu: {err}") from err

            with _ChildGuard(process):
                monitor_io = monitor_pipe.open_io()
                serial_io = serial_pipe.open_io()
                child_io = Io(process.stdout, process.stdin)
                stdout_thread = threading.Thread(
                    target=echo_filtered_stdout, args=(child_io,), daemon=True
                )
                stdout_thread.start()

                error: Exception | None = None
                try:
                    process_qemu_io(monitor_io, serial_io, tmp_dir)
                except Exception as err:  # re-raised once the child has exited
                    error = err
                exit_code = process.wait()

                stdout_thread.join()
                echo_service.stop()
                monitor_io.close()
                serial_io.close()

                if error is not None:
                    raise error

        if exit_code < 0:
            raise TaskError(f"qemu was terminated by a signal: {-exit_code}")
        expected_code = _SUCCESS_EXIT_CODE[arch]
        if exit_code != expected_code:
            raise TaskError(f"qemu exited with code {exit_code}, expected {expected_code}")

        check_mbr_test_disk(test_disk)