"""Copy kernel payloads to an ESP and register a direct-boot firmware entry."""
from __future__ import annotations

import os
from dataclasses import dataclass

from .boot_plumbing import derive_kernel_options, locate_boot, missing_frugal_files, parse_grub_entry, read_root_file
from .devices import extract_disk_from_partition, partition_number, uuid_of
from .errors import PayloadError
from .executil import log, trace, warn
from .kernels import detect_distro, pick_kernel
from .model import PERSISTENCE_TYPES, DeviceSnapshot, EspTarget

STALE_PAYLOAD = (
    "vmlinuz",
    "initrd.img",
    "initrd.gz",
    "amducode.img",
    "amducode.gz",
    "intucode.img",
    "intucode.gz",
)
MICROCODE = (("amd-ucode.img", "amducode.img"), ("intel-ucode.img", "intucode.img"))
INITRD_TARGET = "initrd.img"
# microcode must be loaded before the main initrd
INITRD_CHAIN = ("amducode.img", "intucode.img", INITRD_TARGET)


@dataclass
class Payload:
    files: list[tuple[str, str]]

    @property
    def required(self) -> int:
        return sum(os.path.getsize(src) for src, _ in self.files)


def _first_existing(*paths: str) -> str | None:
    return next((p for p in paths if os.path.isfile(p)), None)


def collect_payload(source_dir: str, kernel_version: str = "", frugal: bool = False) -> Payload:
    """Source files and their ESP names; raises PayloadError if kernel or initrd is missing."""

    if frugal:
        kernel = _first_existing(os.path.join(source_dir, "vmlinuz"))
        initrd = _first_existing(os.path.join(source_dir, "initrd.gz"))
    else:
        kernel = _first_existing(
            os.path.join(source_dir, f"vmlinuz-{kernel_version}"),
            os.path.join(source_dir, "vmlinuz-linux"),
        )
        initrd = _first_existing(
            os.path.join(source_dir, f"initrd.img-{kernel_version}"),
            os.path.join(source_dir, f"initramfs-{kernel_version}.img"),
            os.path.join(source_dir, "initramfs-linux.img"),
        )
    if kernel is None:
        raise PayloadError(f"no kernel found in {source_dir}", path=source_dir)
    if initrd is None:
        raise PayloadError(f"no initrd found in {source_dir}", path=source_dir)

    files = [(kernel, "vmlinuz"), (initrd, INITRD_TARGET)]
    for src_name, target in MICROCODE:
        src = os.path.join(source_dir, src_name)
        if os.path.isfile(src):
            files.append((src, target))
    return Payload(files)


def has_space(required: int, free: int) -> bool:
    return required <= free


def esp_free_space(mountpoint: str) -> int:
    st = os.statvfs(mountpoint)
    return st.f_bavail * st.f_frsize


def esp_target(mountpoint: str, esp_name: str) -> EspTarget | None:
    part = partition_number(esp_name)
    if not part:
        return None
    return EspTarget(mountpoint=mountpoint, disk=f"/dev/{extract_disk_from_partition(esp_name)}", partition=part)


def select_esp(session, devices: DeviceSnapshot, prompter, esp_name: str | None = None) -> EspTarget | None:
    names = [p.name for p in devices.esps]
    if esp_name:
        esp_name = esp_name.rsplit("/", 1)[-1]
        if esp_name not in names:
            prompter.error(f"{esp_name} is not an EFI System Partition")
            return None
    elif not names:
        prompter.error("No EFI System Partition found")
        return None
    else:
        esp_name = prompter.choose("Select EFI System Partition", names)
        if not esp_name:
            prompter.error("No EFI System Partition selected")
            return None
    mountpoint = session.resolve(esp_name)
    if not mountpoint:
        prompter.error(f"Could not mount EFI System Partition {esp_name}")
        return None
    return esp_target(mountpoint, esp_name)


def efi_dir(distro: str, kind: str) -> str:
    return f"\\EFI\\{distro}\\{kind}"


def loader_path(distro: str, kind: str) -> str:
    return f"{efi_dir(distro, kind)}\\vmlinuz"


def initrd_clauses(target_dir: str, distro: str, kind: str) -> str:
    base = efi_dir(distro, kind)
    clauses = []
    for name in INITRD_CHAIN:
        if name == INITRD_TARGET or os.path.isfile(os.path.join(target_dir, name)):
            clauses.append(f"initrd={base}\\{name}")
    return " ".join(clauses)


def clear_stale(ex, target_dir: str) -> bool:
    return ex.run_as_root(["rm", "-f", *(os.path.join(target_dir, n) for n in STALE_PAYLOAD)]).ok


def copy_payload(ex, payload: Payload, target_dir: str) -> bool:
    if not os.path.isdir(target_dir) and not ex.run_as_root(["mkdir", "-p", target_dir]).ok:
        warn("stub.mkdir_failed", target=target_dir)
        return False
    for src, name in payload.files:
        if not ex.run_as_root(["cp", src, os.path.join(target_dir, name)]).ok:
            warn("stub.copy_failed", src=src, target=target_dir)
            return False
    return True


def install_stub(
    ex,
    manager,
    prompter,
    *,
    esp: EspTarget,
    source_dir: str,
    distro: str,
    label: str,
    options: str,
    kernel_version: str = "",
    frugal: bool = False,
) -> bool:
    """Copy the payload to ``<esp>/EFI/<distro>/<stub|frugal>`` and create the entry.

    Nothing is written to firmware unless every copy succeeded.
    """

    kind = "frugal" if frugal else "stub"
    try:
        payload = collect_payload(source_dir, kernel_version, frugal)
    except PayloadError as exc:
        prompter.error(str(exc))
        return False

    free = esp_free_space(esp.mountpoint)
    trace("stub.space", required=payload.required, free=free, esp=esp.mountpoint)
    if not has_space(payload.required, free):
        prompter.error("Not enough space on the EFI System Partition to copy the kernel and initrd files.")
        return False

    target_dir = os.path.join(esp.mountpoint, "EFI", distro, kind)
    clear_stale(ex, target_dir)
    if not copy_payload(ex, payload, target_dir):
        prompter.error(f"Could not copy the kernel and initrd files to {target_dir}")
        return False

    boot_options = " ".join(p for p in (options, initrd_clauses(target_dir, distro, kind)) if p)
    if not manager.create(esp.disk, esp.partition, label, loader_path(distro, kind), boot_options):
        return False
    log("INFO", "stub.installed", label=label, esp=esp.mountpoint, kind=kind, options=boot_options)
    return True


def install_for_root(
    session,
    manager,
    devices: DeviceSnapshot,
    root_partition: str,
    *,
    kernel: str | None = None,
    label: str | None = None,
    options: str | None = None,
    esp_name: str | None = None,
) -> bool:
    """Boot-stub install of the kernel used by the Linux root on ``root_partition``."""

    ex, prompter = session.ex, session.prompter
    root = session.resolve(root_partition)
    if not root:
        prompter.error(f"Could not mount {root_partition}")
        return False
    boot = locate_boot(session, root)
    version = pick_kernel(ex, boot, root, kernel)
    if not version:
        prompter.error(f"No kernel found in {boot}")
        return False
    pretty, distro = detect_distro(ex, root)
    if options is None:
        options = derive_kernel_options(ex, boot, root, version)
    esp = select_esp(session, devices, prompter, esp_name)
    if esp is None:
        return False
    return install_stub(
        ex,
        manager,
        prompter,
        esp=esp,
        source_dir=boot,
        distro=distro,
        label=label or pretty,
        options=options,
        kernel_version=version,
    )


def install_frugal(
    session,
    manager,
    devices: DeviceSnapshot,
    partition: str,
    directory: str,
    *,
    label: str | None = None,
    extra: str | None = None,
    persistence: str | None = None,
    esp_name: str | None = None,
) -> bool:
    """Boot-stub install of a frugal directory found on ``partition``."""

    ex, prompter = session.ex, session.prompter
    if persistence and persistence not in PERSISTENCE_TYPES:
        prompter.error(f"Unknown persistence mode {persistence}")
        return False
    mounted = session.resolve(partition)
    if not mounted:
        prompter.error(f"Could not mount {partition}")
        return False
    frugal_dir = os.path.join(mounted, directory.lstrip("/"))
    missing = missing_frugal_files(frugal_dir)
    if missing:
        prompter.error(f"{frugal_dir} is not a frugal install, missing: {', '.join(missing)}")
        return False

    opts = parse_grub_entry(read_root_file(ex, os.path.join(frugal_dir, "grub.entry")) or "")
    if extra is not None:
        opts.extra = extra
    if persistence is not None:
        opts.persistence = PERSISTENCE_TYPES.get(persistence, persistence)
    if not opts.bdir:
        opts.bdir = directory.strip("/")
    if not opts.uuid:
        opts.uuid = uuid_of(ex, partition if partition.startswith("/dev/") else f"/dev/{partition}")
    _, distro = detect_distro(ex, "/")
    esp = select_esp(session, devices, prompter, esp_name)
    if esp is None:
        return False
    return install_stub(
        ex,
        manager,
        prompter,
        esp=esp,
        source_dir=frugal_dir,
        distro=distro,
        label=label or opts.entry_name or "Frugal",
        options=opts.render(),
        frugal=True,
    )
