"""Installed kernel discovery and distribution naming."""
from __future__ import annotations

import functools
import os
import re

from .boot_plumbing import read_root_file
from .executil import warn

_VERSION_RE = re.compile(r"(\d+)\.(\d+)(?:\.(\d+))?(-([a-z0-9]+[^-]*)?)?(-.*)?")


def _version_less(a: str, b: str, reverse: bool) -> bool:
    ma, mb = _VERSION_RE.search(a), _VERSION_RE.search(b)
    if not ma and not mb:
        return a > b if reverse else a < b
    if not ma:
        return reverse
    if not mb:
        return not reverse
    va = tuple(int(ma.group(i) or 0) for i in (1, 2, 3))
    vb = tuple(int(mb.group(i) or 0) for i in (1, 2, 3))
    if va != vb:
        return va > vb if reverse else va < vb
    sa, sb = ma.group(4) or "", mb.group(4) or ""
    return sa > sb if reverse else sa < sb


def sort_kernel_versions(names: list[str], reverse: bool = True) -> list[str]:
    """Order kernel names by (major, minor, patch), newest first by default.

    Ties break on the first ``-suffix``. Names without a version compare as
    plain strings and sort ahead of versioned names when ``reverse`` is set.
    """

    def cmp(a: str, b: str) -> int:
        if _version_less(a, b, reverse):
            return -1
        if _version_less(b, a, reverse):
            return 1
        return 0

    return sorted(names, key=functools.cmp_to_key(cmp))


def list_kernels(boot_dir: str) -> list[str]:
    try:
        names = os.listdir(boot_dir)
    except OSError as exc:
        warn("kernels.list_failed", boot=boot_dir, error=str(exc))
        return []
    versions = [
        n[len("vmlinuz-"):] for n in names
        if n.startswith("vmlinuz-") and os.path.isfile(os.path.join(boot_dir, n))
    ]
    return sort_kernel_versions(versions)


def current_kernel(ex) -> str:
    return ex.output(["uname", "-r"], quiet=True)


def pick_kernel(ex, boot_dir: str, root_dir: str, wanted: str | None = None) -> str | None:
    kernels = list_kernels(boot_dir)
    if wanted:
        return wanted if wanted in kernels else None
    if not kernels:
        return None
    if root_dir == "/":
        running = current_kernel(ex)
        if running in kernels:
            return running
    return kernels[0]


def _release_value(text: str | None, key: str, missing: str) -> str:
    if text is None:
        return missing
    m = re.search(rf"^{key}=(.*)$", text, re.MULTILINE)
    if not m:
        return "Linux"
    return m.group(1).strip().strip("\"'")


def detect_distro(ex, root: str = "/") -> tuple[str, str]:
    """Return ``(pretty name, short id)`` for the installation at ``root``."""

    etc = os.path.join(root, "etc")
    os_release = read_root_file(ex, os.path.join(etc, "os-release"))
    mx_like = any(os.path.exists(os.path.join(etc, f)) for f in ("antix-version", "mx-version"))
    if mx_like or os_release is None:
        pretty = _release_value(read_root_file(ex, os.path.join(etc, "lsb-release")), "PRETTY_NAME", "MX Linux")
        short = _release_value(read_root_file(ex, os.path.join(etc, "initrd_release")), "NAME", "MX")
    else:
        pretty = _release_value(os_release, "PRETTY_NAME", "MX Linux")
        short = _release_value(os_release, "ID", "MX")
    pretty = pretty.strip().replace(" GNU/Linux", "").replace(" Linux", "")
    return pretty, short
