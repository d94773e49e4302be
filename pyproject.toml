[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "uefi_xtask"
version = "0.17.0"
description = "Developer task runner for building, checking and VM-testing UEFI packages"
requires-python = ">=3.10"
dependencies = []
keywords = ["uefi", "efi", "qemu", "ovmf", "cargo", "xtask"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Operating System :: Microsoft :: Windows",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
uefi-xtask = "uefi_xtask.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["uefi_xtask"]

[tool.pytest.ini_options]
addopts = "-ra"
