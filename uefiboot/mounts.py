"""Identifier resolution, on-demand mounting and session teardown."""
from __future__ import annotations

import os
import re

from . import luks
from .devices import detect_root_device, device_for_token, uuid_of
from .errors import UefiBootError
from .executil import log, trace, warn
from .model import DeviceSnapshot, LuksMapping, MountRecord, RootDevice
from .paths import mount_base
from .prompter import Prompter

_PAIRS_MOUNTPOINT_RE = re.compile(r'MOUNTPOINT="([^"]*)"')


def _unescape_lsblk(value: str) -> str:
    return re.sub(r"\\x([0-9a-fA-F]{2})", lambda m: chr(int(m.group(1), 16)), value)


class Session:
    """Owns every mount, directory and LUKS mapping created while it is open.

    ``teardown`` releases them in reverse creation order: mounts first, then
    directories, then mappings. Each item is attempted even if an earlier one
    fails.
    """

    def __init__(self, ex, prompter: Prompter | None = None, root: RootDevice | None = None, base: str | None = None):
        self.ex = ex
        self.prompter = prompter or Prompter()
        self.base = base or mount_base()
        self._root = root
        self.mounts: list[MountRecord] = []
        self.directories: list[str] = []
        self.mappings: list[LuksMapping] = []
        self._resolved: dict[str, str] = {}

    @property
    def root(self) -> RootDevice:
        if self._root is None:
            self._root = detect_root_device(self.ex)
        return self._root

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.teardown()
        return False

    def _is_root(self, ident: str) -> bool:
        root = self.root
        if not root.partition:
            return False
        return ident in (root.partition, f"/dev/{root.partition}") or (
            bool(root.device_path) and ident == root.device_path
        )

    def findmnt(self, device: str) -> str:
        return self.ex.output(
            ["findmnt", "--noheadings", "--first-only", "--output", "TARGET", "--source", device],
            elevate=True,
            quiet=True,
        )

    def _recorded_mount(self, device: str) -> str:
        for rec in self.mounts:
            if rec.device == device:
                return rec.mountpoint
        return ""

    def _canonical_device(self, ident: str) -> str:
        if "=" in ident:
            return device_for_token(self.ex, ident)
        dev = ident if ident.startswith("/dev/") else f"/dev/{ident}"
        uuid = uuid_of(self.ex, dev)
        if not uuid:
            # no filesystem UUID, fall back to the node itself
            return dev
        return device_for_token(self.ex, f"UUID={uuid}") or dev

    def resolve(self, ident: str) -> str:
        """Return a mountpoint for ``ident``, mounting it if needed; "" on failure."""

        if self._is_root(ident):
            return "/"
        if ident in self._resolved:
            return self._resolved[ident]

        device = self._canonical_device(ident)
        if not device:
            self.prompter.error(f"Could not find a device for {ident}")
            return ""
        if self._is_root(device):
            return "/"

        target = self._recorded_mount(device) or self.findmnt(device)
        if not target and luks.is_luks(self.ex, device):
            target = self._resolve_luks(device)
        elif not target:
            target = self._mount_new(device, os.path.join(self.base, os.path.basename(device)))

        if target:
            self._resolved[ident] = target
        trace("mounts.resolve", ident=ident, device=device, target=target)
        return target

    def _resolve_luks(self, device: str) -> str:
        uuid = luks.luks_uuid(self.ex, device)
        if uuid:
            mapped = f"/dev/mapper/{luks.mapper_name(uuid)}"
            target = self._recorded_mount(mapped) or self.findmnt(mapped)
            if target:
                return target
        name = luks.unlock(self.ex, self.prompter, device, self.mappings)
        if not name:
            return ""
        return self._mount_new(f"/dev/mapper/{name}", os.path.join(self.base, name))

    def _mount_new(self, device: str, directory: str) -> str:
        if not os.path.isdir(directory):
            if not self.ex.run_as_root(["mkdir", "-p", directory]).ok:
                self.prompter.error(f"Could not create {directory}")
                return ""
            self.directories.append(directory)
        if not self.ex.run_as_root(["mount", device, directory]).ok:
            self.prompter.error(f"Could not mount {device} on {directory}")
            return ""
        self.mounts.append(MountRecord(device=device, mountpoint=directory))
        return directory

    def mount_point(self, partition: str) -> str:
        """Current mountpoint of ``partition`` from lsblk, or "" when unmounted."""

        if self._is_root(partition):
            return "/"
        dev = partition if partition.startswith("/dev/") else f"/dev/{partition}"
        out = self.ex.output(["lsblk", "--pairs", "--output", "MOUNTPOINT", dev], quiet=True)
        for value in _PAIRS_MOUNTPOINT_RE.findall(out):
            if value:
                return _unescape_lsblk(value)
        return ""

    def mount_at(self, device: str, directory: str) -> str:
        target = self._recorded_mount(device) or self.findmnt(device)
        if target:
            return target
        return self._mount_new(device, directory)

    def mount_esps(self, snapshot: DeviceSnapshot) -> list[str]:
        mounted = []
        for esp in snapshot.esps:
            target = esp.mountpoint or self.mount_at(esp.path, f"/boot/efi/{esp.name}")
            if target:
                mounted.append(target)
        return mounted

    def _attempt(self, cmd: list[str]) -> bool:
        try:
            return self.ex.run_as_root(cmd).ok
        except UefiBootError as exc:
            warn("mounts.teardown_error", cmd=cmd, error=str(exc))
            return False

    def teardown(self) -> list[str]:
        """Undo everything recorded, newest first. Returns what could not be undone."""

        failed: list[str] = []
        mounts, self.mounts = self.mounts, []
        directories, self.directories = self.directories, []
        mappings, self.mappings = self.mappings, []
        self._resolved.clear()

        for rec in reversed(mounts):
            if not self._attempt(["umount", rec.mountpoint]):
                failed.append(rec.mountpoint)
        for directory in reversed(directories):
            if not self._attempt(["rmdir", directory]):
                failed.append(directory)
        for mapping in reversed(mappings):
            if not self._attempt(["cryptsetup", "close", mapping.name]):
                failed.append(f"/dev/mapper/{mapping.name}")

        if failed:
            warn("mounts.teardown_incomplete", failed=failed)
        else:
            log("INFO", "mounts.teardown", mounts=len(mounts), directories=len(directories), mappings=len(mappings))
        return failed
