# uefi_xtask

A command-line tool that runs the development tasks of a UEFI application
workspace. It builds the workspace's packages with cargo, lints them, builds
their docs and runs the host tests. It can also boot the test runner in QEMU
and check what the test runner did.

## Installation

```
pip install .
```

To run the test suite as well:

```
pip install ".[test]"
pytest
```

## Usage

Run the commands from the root of the workspace:

```
uefi-xtask build [--target aarch64|ia32|x86_64] [--release]
uefi-xtask clippy [--target ...] [--warnings-as-errors]
uefi-xtask doc [--open] [--warnings-as-errors]
uefi-xtask miri
uefi-xtask run [--target ...] [--release] [--disable-kvm] [--ci] [--headless]
               [--ovmf-code PATH] [--ovmf-vars PATH]
uefi-xtask test
uefi-xtask test-latest-release
```

- `build` builds all the UEFI packages except xtask for the chosen target,
  with the `alloc`, `exts` and `logger` features. The default target is
  `x86_64`.
- `clippy` lints the UEFI packages for the target and then lints xtask.
- `doc` builds the documentation of the published packages (`uefi`,
  `uefi-macros`, `uefi-services`).
- `miri` runs the `uefi` tests under Miri.
- `run` builds `uefi-test-runner` and boots it in QEMU with OVMF firmware.
  The `uefi-test-runner/ci` feature is turned on with `--ci`, and always on
  hosts other than Linux. The task copies the built `.efi` file into
  `target/<triple>/<debug|release>/esp/EFI/Boot`. It creates an MBR test disk
  with a FAT partition, serves a UDP echo service on port 21572, and answers
  `SCREENSHOT:` requests from the guest by comparing QEMU's screen dump with
  `uefi-test-runner/screenshots/<name>.ppm`. At the end it checks the QEMU
  exit code (3 on x86_64, 0 otherwise) and the changes made to the test disk.
  OVMF files are looked up in the usual locations on Arch, CentOS,
  Debian/Ubuntu, Fedora and Windows. You can give explicit paths with
  `--ovmf-code` and `--ovmf-vars`.
- `test` runs the host-side tests of xtask, `uefi` and `uefi-macros`.
- `test-latest-release` copies `template` to a temporary directory with
  `cp`. It checks that `BUILDING.md` contains the cargo build command, then
  builds the copy.

Every external command is printed before it runs, in the form
`VAR=value program arg ...`. `PATH`, `RUSTC` and `RUSTDOC` are left out of
the printed form. If a command fails, the tool prints `Error: ...` to
standard error and exits with status 1.

## Requirements on the host

The tool does not install anything. `cargo` must be on the `PATH`, and for
`run` so must the QEMU system emulator for the target and the OVMF firmware
files. Named pipes to QEMU are made with `mkfifo` on Unix. On Windows, QEMU
creates them itself.

## Library use

The modules can also be used on their own:

```python
from uefi_xtask.arch import UefiArch
from uefi_xtask.cargo import Cargo, CargoAction, Feature, Package
from uefi_xtask.util import command_to_string

cargo = Cargo(
    action=CargoAction.DOC,
    features=[Feature.ALLOC],
    packages=[Package.UEFI],
    warnings_as_errors=True,
    open_docs=True,
)
print(command_to_string(cargo.command()))
# RUSTDOCFLAGS=-Dwarnings cargo doc --package uefi --features alloc --open
print(UefiArch.parse("ia32").as_triple())
# i686-unknown-uefi
```

Other pieces you can use directly:

- `uefi_xtask.disk.create_mbr_test_disk` and `check_mbr_test_disk` write and
  verify the test disk image.
- `uefi_xtask.net.EchoService` is the UDP echo service. It can be used as a
  context manager.
- `uefi_xtask.qemu.OvmfPaths` locates the OVMF files.
- `uefi_xtask.util.run_cmd` runs a `Command` and raises `TaskError` if it
  fails.