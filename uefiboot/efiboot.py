"""Firmware boot entries: efibootmgr output parsing and mutations."""
from __future__ import annotations

import os
import re
from dataclasses import dataclass

from .devices import df_source, df_target, partition_number, pkname
from .executil import log, trace, warn
from .model import BootEntry, BootSnapshot, DeviceSnapshot
from .prompter import Prompter

MAX_TIMEOUT = 65535
DEFAULT_LABEL = "New entry"

_ENTRY_RE = re.compile(r"^Boot([0-9A-Fa-f]{4})(\*?)\s+(.*)$")
_BOOTNUM_RE = re.compile(r"^[0-9A-F]{4}$")
_SFDISK_RE = re.compile(r"^(\S+)\s*:\s.*\buuid=([^,\s]+)")
_VERBOSE_RE = re.compile(
    r"^Boot([0-9A-Fa-f]{4})\*?\s+(.+)\s+HD\((\d+),[^,]+,([^,]+)[^)]+\)/File\(([^)]+)\)"
)
_PARTITION_DEVICE_RE = re.compile(r"^(/dev/(?:[hsv]d[a-z]+|xvd[a-z]+|nvme\d+n\d+|mmcblk\d+))p?(\d+)$")
_PAIRS_RE = re.compile(r'(\w+)="([^"]*)"')


def _relative_to_mount(path: str, mountpoint: str) -> str:
    """``path`` as seen from the root of the filesystem mounted at ``mountpoint``."""

    if not mountpoint:
        return ""
    mountpoint = mountpoint.rstrip("/")
    if path != mountpoint and not path.startswith(mountpoint + "/"):
        return ""
    return path[len(mountpoint):] or "/"


@dataclass(frozen=True)
class VerboseEntry:
    bootnum: str
    label: str
    partition: str
    uuid: str
    loader: str


def apply_boot_order(entries: list[BootEntry], order: list[str]) -> list[BootEntry]:
    """Entries named in ``order`` first, in that order; the rest keep listing order."""

    by_num = {e.bootnum: e for e in entries}
    ordered = [by_num[n] for n in order if n in by_num]
    seen = {e.bootnum for e in ordered}
    ordered += [e for e in entries if e.bootnum not in seen]
    for position, entry in enumerate(ordered):
        entry.position = position
    return ordered


def parse_boot_entries(text: str) -> BootSnapshot:
    snap = BootSnapshot()
    for line in (text or "").splitlines():
        line = line.rstrip()
        m = _ENTRY_RE.match(line)
        if m:
            label, _, path = m.group(3).partition("\t")
            snap.entries.append(
                BootEntry(bootnum=m.group(1).upper(), label=label.strip(), active=m.group(2) == "*", path=path.strip())
            )
            continue
        key, sep, value = line.partition(":")
        if not sep:
            continue
        value = value.strip()
        if key == "Timeout":
            digits = re.match(r"\d+", value)
            snap.timeout = int(digits.group(0)) if digits else None
        elif key == "BootNext":
            snap.boot_next = value.upper() or None
        elif key == "BootCurrent":
            snap.boot_current = value.upper() or None
        elif key == "BootOrder":
            snap.boot_order = [n.strip().upper() for n in value.split(",") if n.strip()]
    snap.entries = apply_boot_order(snap.entries, snap.boot_order)
    return snap


def parse_lsblk_pairs_disks(text: str) -> list[str]:
    disks = []
    for line in (text or "").splitlines():
        fields = dict(_PAIRS_RE.findall(line))
        if fields.get("TYPE") == "disk" and fields.get("NAME"):
            disks.append(fields["NAME"])
    return disks


def parse_sfdisk_dump(text: str) -> dict[str, str]:
    """Map lower-case partition UUID to partition device from ``sfdisk -d``."""

    found = {}
    for line in (text or "").splitlines():
        if ": start=" not in line:
            continue
        m = _SFDISK_RE.match(line.strip())
        if m:
            found[m.group(2).lower()] = m.group(1)
    return found


def parse_verbose_entries(text: str) -> list[VerboseEntry]:
    entries = []
    for line in (text or "").splitlines():
        m = _VERBOSE_RE.match(line)
        if m:
            entries.append(
                VerboseEntry(
                    bootnum=m.group(1).upper(),
                    label=m.group(2).strip(),
                    partition=m.group(3),
                    uuid=m.group(4).lower(),
                    loader=m.group(5),
                )
            )
    return entries


def split_partition_device(device: str) -> tuple[str, str] | None:
    m = _PARTITION_DEVICE_RE.match(device)
    return (m.group(1), m.group(2)) if m else None


class BootManager:
    """Holds the latest firmware snapshot and applies efibootmgr mutations."""

    def __init__(self, ex, prompter: Prompter | None = None, session=None):
        self.ex = ex
        self.prompter = prompter or Prompter()
        self.session = session
        self.snapshot = BootSnapshot()

    def refresh(self) -> BootSnapshot | None:
        res = self.ex.run(["efibootmgr"], quiet=True)
        if not res.ok:
            self.prompter.error(f"efibootmgr failed: {res.out}")
            return None
        self.snapshot = parse_boot_entries(res.out)
        trace("efi.refresh", entries=len(self.snapshot.entries), order=self.snapshot.boot_order)
        return self.snapshot

    def _efibootmgr(self, *args: str) -> bool:
        res = self.ex.run_as_root(["efibootmgr", *args])
        if not res.ok:
            log("ERROR", "efi.command_failed", args=list(args), rc=res.rc, out=res.out)
            self.prompter.error(f"efibootmgr {' '.join(args)} failed: {res.out}")
        return res.ok

    def _entry(self, bootnum: str) -> BootEntry | None:
        entry = self.snapshot.find(bootnum)
        if entry is None:
            self.prompter.error(f"No boot entry Boot{bootnum.upper()}")
        return entry

    def toggle_active(self, bootnum: str) -> bool:
        entry = self._entry(bootnum)
        if entry is None:
            return False
        flag = "--inactive" if entry.active else "--active"
        if not self._efibootmgr(flag, "-b", entry.bootnum):
            return False
        entry.active = not entry.active
        return True

    def delete(self, bootnum: str) -> bool:
        entry = self._entry(bootnum)
        if entry is None:
            return False
        if not self.prompter.confirm(f"Remove boot entry Boot{entry.bootnum} ({entry.label})?"):
            log("INFO", "efi.delete_declined", bootnum=entry.bootnum)
            return False
        if not self._efibootmgr("-B", "-b", entry.bootnum):
            return False
        self.refresh()
        return True

    def set_boot_next(self, bootnum: str) -> bool:
        entry = self._entry(bootnum)
        if entry is None or not self._efibootmgr("-n", entry.bootnum):
            return False
        self.snapshot.boot_next = entry.bootnum
        return True

    def reset_boot_next(self) -> bool:
        if not self._efibootmgr("-N"):
            return False
        self.snapshot.boot_next = None
        return True

    def set_timeout(self, seconds: int) -> bool:
        if not 0 <= seconds <= MAX_TIMEOUT:
            self.prompter.error(f"Timeout must be between 0 and {MAX_TIMEOUT} seconds")
            return False
        if not self._efibootmgr("-t", str(seconds)):
            return False
        self.snapshot.timeout = seconds
        return True

    def create(self, disk: str, partition: str, label: str, loader: str, options: str = "") -> bool:
        args = ["--disk", disk, "--part", partition, "--create", "--label", label, "--loader", loader]
        if options:
            args += ["--unicode", options]
        if not self._efibootmgr(*args):
            return False
        self.refresh()
        return True

    def reorder(self, order: list[str]) -> bool:
        order = [n.upper() for n in order]
        bad = [n for n in order if not _BOOTNUM_RE.match(n)]
        if bad or not order:
            self.prompter.error(f"Invalid boot order: {','.join(order)}")
            return False
        if not self._efibootmgr("-o", ",".join(order)):
            return False
        self.snapshot.boot_order = order
        self.snapshot.entries = apply_boot_order(self.snapshot.entries, order)
        return True

    def move(self, bootnum: str, step: int) -> bool:
        order = self.snapshot.order()
        wanted = bootnum.upper()
        if wanted not in order:
            self.prompter.error(f"No boot entry Boot{wanted}")
            return False
        idx = order.index(wanted)
        new_idx = max(0, min(len(order) - 1, idx + step))
        if new_idx == idx:
            return True
        order.insert(new_idx, order.pop(idx))
        return self.reorder(order)

    def add_from_file(self, path: str, label: str = "", devices: DeviceSnapshot | None = None) -> bool:
        """Register an EFI binary that lives on a mounted ESP."""

        if self.session is not None and devices is not None:
            self.session.mount_esps(devices)
        if not os.path.exists(path) and not self.ex.run_as_root(["test", "-e", path], quiet=True).ok:
            self.prompter.error(f"{path} does not exist")
            return False
        source = df_source(self.ex, path)
        disk = pkname(self.ex, source) if source else ""
        part = partition_number(source)
        if not disk or not part:
            self.prompter.error(f"Could not find the partition holding {path}")
            return False
        relative = _relative_to_mount(path, df_target(self.ex, path))
        if not relative.upper().startswith("/EFI/"):
            self.prompter.error(f"{path} is not inside the EFI directory of its partition")
            return False
        loader = relative.replace("/", "\\")
        ok = self._efibootmgr("-c", "-L", label.strip() or DEFAULT_LABEL, "-d", f"/dev/{disk}", "-p", part, "-l", loader)
        if ok:
            self.refresh()
        return ok

    def rename(self, old_label: str, new_label: str, bootnum: str | None = None) -> bool:
        """Recreate the entry labelled ``old_label`` under ``new_label``.

        efibootmgr cannot rename in place, so the entry is deleted and created
        again on the same disk, partition and loader. ``old_label`` may be "*"
        to match any label, in which case ``bootnum`` selects the entry.
        """

        if not old_label.strip() or not new_label.strip():
            self.prompter.error("Both the current and the new label are required")
            return False

        disks_out = self.ex.output(["lsblk", "--nodeps", "--noheadings", "--pairs", "--output", "NAME,TYPE"], quiet=True)
        uuid_map: dict[str, str] = {}
        for disk in parse_lsblk_pairs_disks(disks_out):
            uuid_map.update(parse_sfdisk_dump(self.ex.output(["sfdisk", "-d", f"/dev/{disk}"], elevate=True, quiet=True)))

        verbose = parse_verbose_entries(self.ex.output(["efibootmgr", "--verbose"], quiet=True))
        matches = [e for e in verbose if old_label == "*" or e.label == old_label]
        if bootnum:
            matches = [e for e in matches if e.bootnum == bootnum.upper()]
        elif len(matches) > 1:
            self.prompter.error(f"More than one entry is labelled {old_label!r}; pass a boot number")
            return False
        if not matches:
            self.prompter.error(f"No boot entry labelled {old_label!r}")
            return False
        entry = matches[0]

        device = uuid_map.get(entry.uuid)
        if not device:
            self.prompter.error(f"Partition {entry.uuid} of Boot{entry.bootnum} not found on any disk")
            return False
        split = split_partition_device(device)
        if split is None:
            self.prompter.error(f"Unexpected device name {device}")
            return False
        disk, part = split
        if part != entry.partition:
            warn("efi.rename_partition_mismatch", device=device, firmware=entry.partition)
            self.prompter.error(f"Partition number mismatch for {device} (firmware says {entry.partition})")
            return False

        if not self._efibootmgr("--bootnum", entry.bootnum, "--delete-bootnum"):
            return False
        if not self._efibootmgr(
            "--create", "--disk", disk, "--part", part, "--label", new_label, "--loader", entry.loader
        ):
            return False
        log("INFO", "efi.renamed", bootnum=entry.bootnum, old=entry.label, new=new_label)
        self.refresh()
        return True
