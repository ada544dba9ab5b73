from __future__ import annotations

import os
from pathlib import Path

_DEFAULT_BASE = "/var/lib/uefi-manager"
_DEFAULT_MOUNT_BASE = "/mnt/uefi-manager"
_DEFAULT_HELPER = "/usr/lib/uefi-manager/helper"
_DEFAULT_TIMEOUT = 600.0

ELEVATION_COMMANDS = ("/usr/bin/pkexec", "/usr/bin/gksu")


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def base_path() -> str:
    """Return the base directory for uefi-manager state.

    The location can be overridden via the ``UEFIBOOT_BASE_PATH`` environment
    variable.
    """

    override = os.environ.get("UEFIBOOT_BASE_PATH")
    if override:
        return _expand(override)
    return _DEFAULT_BASE


def logs_dir() -> str:
    return str(Path(base_path()) / "logs")


def mount_base() -> str:
    """Scratch root under which partitions are mounted on demand."""

    override = os.environ.get("UEFIBOOT_MOUNT_BASE")
    if override:
        return override.rstrip("/") or "/"
    return _DEFAULT_MOUNT_BASE


def helper_path() -> str:
    return os.environ.get("UEFIBOOT_HELPER") or _DEFAULT_HELPER


def command_timeout() -> float | None:
    raw = os.environ.get("UEFIBOOT_CMD_TIMEOUT")
    if raw is None or not raw.strip():
        return _DEFAULT_TIMEOUT
    try:
        value = float(raw)
    except ValueError:
        return _DEFAULT_TIMEOUT
    return value if value > 0 else None
