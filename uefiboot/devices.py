"""Block device discovery and partition naming helpers."""
from __future__ import annotations

import dataclasses
import json
import os
import re

from .executil import trace, warn
from .model import BlockDevice, DeviceSnapshot, RootDevice

LSBLK_COLUMNS = "NAME,SIZE,FSTYPE,MOUNTPOINT,LABEL,MODEL,PARTTYPE,TYPE"

GIB = 1024 ** 3
LINUX_MIN_SIZE = 6 * GIB
FRUGAL_MIN_SIZE = 1 * GIB
LINUX_EXCLUDED_FS = {"ntfs", "exfat", "vfat", "bitlocker", "swap"}
FRUGAL_EXCLUDED_FS = {"swap", "bitlocker"}

# Linux filesystem data, x86-64 root and the MBR "Linux" type
LINUX_PARTTYPES = {
    "0fc63daf-8483-4772-8e79-3d69d8477de4",
    "4f68bce3-e8cd-4db1-96e7-fbcaf984b709",
    "0x83",
}

_DRIVE_RE = re.compile(r"^(x?[hsv]d[a-z]|mmcblk|nvme)")
_DISK_PATTERNS = (
    re.compile(r"^(nvme\d+n\d+)(?:p\d+)?$"),
    re.compile(r"^(mmcblk\d+)(?:p\d+)?$"),
    re.compile(r"^(x?[hsv]d[a-z]+)\d*$"),
    re.compile(r"^(.*\d)p\d+$"),
)


def natural_key(text: str):
    return [int(part) if part.isdigit() else part.lower() for part in re.split(r"(\d+)", text)]


def extract_disk_from_partition(name: str) -> str:
    """Return the whole-disk name owning ``name`` (``nvme0n1p2`` -> ``nvme0n1``).

    Whole-disk names come back unchanged.
    """

    name = name.rsplit("/", 1)[-1]
    for pattern in _DISK_PATTERNS:
        m = pattern.match(name)
        if m:
            return m.group(1)
    return name


def partition_number(name: str) -> str:
    name = name.rsplit("/", 1)[-1]
    rest = name[len(extract_disk_from_partition(name)):]
    rest = rest[1:] if rest.startswith("p") else rest
    return rest if rest.isdigit() else ""


def format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "K", "M", "G", "T"):
        if value < 1024 or unit == "T":
            return f"{value:.0f}{unit}" if unit == "B" else f"{value:.1f}{unit}"
        value /= 1024
    return f"{size}B"


def _block_device(node: dict) -> BlockDevice:
    try:
        size = int(node.get("size") or 0)
    except (TypeError, ValueError):
        size = 0
    return BlockDevice(
        name=node.get("name") or "",
        size=size,
        fstype=node.get("fstype") or "",
        mountpoint=node.get("mountpoint") or "",
        label=node.get("label") or "",
        model=(node.get("model") or "").strip(),
        parttype=node.get("parttype") or "",
        type=node.get("type") or "",
    )


def parse_lsblk_json(text: str, root_partition: str = "") -> DeviceSnapshot:
    try:
        payload = json.loads(text or "{}")
    except json.JSONDecodeError as exc:
        warn("devices.lsblk_parse_error", error=str(exc))
        return DeviceSnapshot()

    drives, partitions = [], []
    for node in payload.get("blockdevices") or []:
        dev = _block_device(node)
        if root_partition and dev.name == root_partition:
            dev = dataclasses.replace(dev, mountpoint="/")
        if dev.type == "disk" and _DRIVE_RE.match(dev.name):
            drives.append(dev)
        elif dev.type == "part":
            partitions.append(dev)

    drives.sort(key=lambda d: natural_key(d.name))
    partitions.sort(key=lambda d: natural_key(d.name))
    esps = [p for p in partitions if p.is_esp()]
    linux = [
        p for p in partitions
        if p.size >= LINUX_MIN_SIZE and p.fstype.lower() not in LINUX_EXCLUDED_FS
    ]
    frugal = [
        p for p in partitions
        if p.size >= FRUGAL_MIN_SIZE and p.fstype.lower() not in FRUGAL_EXCLUDED_FS
    ]
    return DeviceSnapshot(
        drives=tuple(drives),
        partitions=tuple(partitions),
        esps=tuple(esps),
        linux_partitions=tuple(linux),
        frugal_partitions=tuple(frugal),
    )


def scan_devices(ex, root_partition: str = "") -> DeviceSnapshot:
    """Take a fresh snapshot of drives and partitions with one lsblk call."""

    res = ex.run(["lsblk", "-ln", "--json", "--bytes", "-o", LSBLK_COLUMNS, "-e", "2,11"], quiet=True)
    if not res.ok:
        warn("devices.lsblk_failed", rc=res.rc)
        return DeviceSnapshot()
    snap = parse_lsblk_json(res.out, root_partition)
    trace(
        "devices.scan",
        drives=[d.name for d in snap.drives],
        esps=[p.name for p in snap.esps],
        linux=[p.name for p in snap.linux_partitions],
    )
    return snap


def parse_df_source(text: str) -> str:
    lines = [line.strip() for line in (text or "").splitlines() if line.strip()]
    if not lines or not lines[-1].startswith("/dev/"):
        return ""
    return lines[-1]


def df_source(ex, path: str) -> str:
    return parse_df_source(ex.output(["df", "--output=source", path], quiet=True))


def df_target(ex, path: str) -> str:
    """Mountpoint of the filesystem holding ``path``, "" when unknown."""

    lines = [line.strip() for line in ex.output(["df", "--output=target", path], quiet=True).splitlines()]
    lines = [line for line in lines if line]
    if not lines or not lines[-1].startswith("/"):
        return ""
    return lines[-1]


def pkname(ex, device: str) -> str:
    out = ex.output(["lsblk", "-ln", "-o", "PKNAME", device], quiet=True)
    for line in out.splitlines():
        if line.strip():
            return line.strip()
    return ""


def blkid_tag(ex, device: str, tag: str) -> str:
    return ex.output(["blkid", "--output", "value", "--match-tag", tag, device], elevate=True, quiet=True)


def uuid_of(ex, device: str) -> str:
    return blkid_tag(ex, device, "UUID")


def device_for_token(ex, token: str) -> str:
    return ex.output(["blkid", "--list-one", "--output", "device", "--match-token", token], elevate=True)


def detect_root_device(ex) -> RootDevice:
    source = df_source(ex, "/")
    if not source:
        warn("devices.root_unknown")
        return RootDevice()
    partition = os.path.basename(source)
    if source.startswith("/dev/mapper/") or partition.startswith("dm-"):
        parent = pkname(ex, source)
        if parent:
            partition = parent
    root = RootDevice(device_path=source, partition=partition, drive=extract_disk_from_partition(partition))
    trace("devices.root", device=root.device_path, partition=root.partition, drive=root.drive)
    return root


def partitions_on(snapshot: DeviceSnapshot, drive: str, frugal: bool = False) -> list[BlockDevice]:
    return [p for p in snapshot.partitions_on(drive, frugal) if extract_disk_from_partition(p.name) == drive]


def guess_root_partition(snapshot: DeviceSnapshot, drive: str, root: RootDevice | None = None) -> str:
    candidates = partitions_on(snapshot, drive)
    if root and root.partition and any(p.name == root.partition for p in candidates):
        return root.partition
    for p in candidates:
        if p.label.startswith("rootMX"):
            return p.name
    for p in candidates:
        if p.parttype.lower() in LINUX_PARTTYPES:
            return p.name
    return candidates[0].name if candidates else ""
