"""Developer task runner for building, checking and VM-testing UEFI packages."""

__version__ = "0.17.0"