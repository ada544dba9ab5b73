"""UEFI boot entry management and EFI stub installation for Linux systems."""

__version__ = "0.1.0"
