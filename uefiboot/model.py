from dataclasses import dataclass, field
from typing import Optional

ESP_GUID_GPT = "c12a7328-f81f-11d2-ba4b-00a0c93ec93b"
ESP_TYPE_MBR = "0xef"

# Persistence tokens found on frugal boot lines, mapped to what the kernel expects
PERSISTENCE_TYPES = {
    "persist_all": "persist_all",
    "persist_root": "persist_root",
    "persist_static": "persist_static",
    "persist_static_root": "persist_static_root",
    "p_static_root": "persist_static_root",
    "persist_home": "persist_home",
    "frugal_persist": "persist_all",
    "frugal_root": "persist_root",
    "frugal_static": "persist_static",
    "frugal_static_root": "persist_static_root",
    "f_static_root": "persist_static_root",
    "frugal_home": "persist_home",
    "frugal_only": "frugal_only",
}


@dataclass(frozen=True)
class MountRecord:
    device: str
    mountpoint: str


@dataclass(frozen=True)
class LuksMapping:
    name: str
    device: str


@dataclass
class BootEntry:
    bootnum: str
    label: str
    active: bool
    position: int = 0
    path: str = ""

    def display(self) -> str:
        marker = "*" if self.active else ""
        text = f"Boot{self.bootnum}{marker} {self.label}"
        return f"{text}\t{self.path}" if self.path else text


@dataclass
class BootSnapshot:
    entries: list[BootEntry] = field(default_factory=list)
    timeout: Optional[int] = None
    boot_next: Optional[str] = None
    boot_current: Optional[str] = None
    boot_order: list[str] = field(default_factory=list)

    def find(self, bootnum: str) -> Optional[BootEntry]:
        wanted = bootnum.upper()
        for entry in self.entries:
            if entry.bootnum == wanted:
                return entry
        return None

    def order(self) -> list[str]:
        return [entry.bootnum for entry in self.entries]


@dataclass
class KernelOptions:
    root: str = ""
    persistence: str = ""
    extra: str = ""
    bdir: str = ""
    uuid: str = ""
    entry_name: str = ""

    def render(self, initrd: str = "") -> str:
        parts = []
        if self.bdir:
            parts.append(f"bdir={self.bdir}")
        if self.uuid:
            parts.append(f"buuid={self.uuid}")
        if self.root and self.root not in self.extra:
            parts.append(self.root)
        parts += [self.extra, self.persistence, initrd]
        return " ".join(p for p in parts if p)


@dataclass(frozen=True)
class EspTarget:
    mountpoint: str
    disk: str
    partition: str


@dataclass(frozen=True)
class BlockDevice:
    name: str
    size: int = 0
    fstype: str = ""
    mountpoint: str = ""
    label: str = ""
    model: str = ""
    parttype: str = ""
    type: str = ""

    @property
    def path(self) -> str:
        return f"/dev/{self.name}"

    def is_esp(self) -> bool:
        return (
            self.type == "part"
            and self.fstype.lower() == "vfat"
            and self.parttype.lower() in (ESP_GUID_GPT, ESP_TYPE_MBR)
        )


@dataclass(frozen=True)
class DeviceSnapshot:
    """One lsblk scan. Replaced wholesale on rescan, never mutated."""

    drives: tuple[BlockDevice, ...] = ()
    partitions: tuple[BlockDevice, ...] = ()
    esps: tuple[BlockDevice, ...] = ()
    linux_partitions: tuple[BlockDevice, ...] = ()
    frugal_partitions: tuple[BlockDevice, ...] = ()

    def partitions_on(self, drive: str, frugal: bool = False) -> list[BlockDevice]:
        pool = self.frugal_partitions if frugal else self.linux_partitions
        return [p for p in pool if p.name.startswith(drive)]


@dataclass(frozen=True)
class RootDevice:
    device_path: str = ""
    partition: str = ""
    drive: str = ""
