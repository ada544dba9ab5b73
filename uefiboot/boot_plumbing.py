"""Boot directory discovery and kernel command-line derivation for an installed root."""
import os
import re
from typing import Iterable

from .devices import blkid_tag, df_source, pkname
from .executil import trace, warn
from .model import PERSISTENCE_TYPES, KernelOptions

SYSTEMD_INIT = "init=/lib/systemd/systemd"
FRUGAL_REQUIRED = ("vmlinuz", "linuxfs", "grub.entry")

_FSTAB_BOOT_RE = re.compile(r"^(.+?)\s+(/boot)\s+.*$")
_FSTAB_SPACE = "\\040"


def read_root_file(ex, path: str) -> str | None:
    """Read a config file from a (possibly foreign) root; None when absent."""

    try:
        with open(path, "r", encoding="utf-8", errors="replace") as fh:
            return fh.read()
    except FileNotFoundError:
        return None
    except PermissionError:
        res = ex.run_as_root(["cat", path], quiet=True)
        return res.out if res.ok else None
    except OSError as exc:
        warn("boot.read_error", path=path, error=str(exc))
        return None


def parse_fstab_boot(text: str) -> str | None:
    for line in (text or "").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        m = _FSTAB_BOOT_RE.match(line)
        if m:
            return m.group(1).strip().replace(_FSTAB_SPACE, " ")
    return None


def locate_boot(session, root: str) -> str:
    """Directory holding vmlinuz/initrd for the installation mounted at ``root``."""

    fstab = read_root_file(session.ex, os.path.join(root, "etc/fstab"))
    source = parse_fstab_boot(fstab) if fstab else None
    if source:
        trace("boot.fstab_entry", root=root, source=source)
        mounted = session.resolve(source)
        if mounted:
            return mounted
        warn("boot.mount_failed", root=root, source=source)
        return root
    boot = os.path.join(root, "boot")
    if os.path.isdir(boot):
        return boot
    warn("boot.not_found", root=root)
    return root


def determine_kernel_dir(ex, boot_dir: str, root_dir: str) -> str:
    """Prefix that grub.cfg puts in front of kernel paths: "/boot" or ""."""

    if boot_dir.rstrip("/") == "/boot":
        return "" if ex.run(["mountpoint", "-q", "/boot"], quiet=True).ok else "/boot"
    root = root_dir.rstrip("/")
    if root and boot_dir.rstrip("/") == f"{root}/boot":
        return "/boot"
    return ""


def parse_crypttab_mapper(text: str, identifiers: Iterable[str]) -> str | None:
    ids = [i for i in identifiers if i]
    for line in (text or "").splitlines():
        fields = line.split()
        if len(fields) < 2 or fields[0].startswith("#"):
            continue
        if any(fields[1].startswith(i) for i in ids):
            return fields[0]
    return None


def root_identifiers(ex, root_dir: str) -> list[str]:
    """Strings a ``root=`` clause may use for the filesystem mounted at ``root_dir``."""

    source = df_source(ex, root_dir)
    if not source:
        warn("boot.root_source_unknown", root=root_dir)
        return []
    patterns = [source]
    uuid = blkid_tag(ex, source, "UUID")
    if uuid:
        patterns.append(f"UUID={uuid}")

    if source.startswith("/dev/mapper/") or os.path.basename(source).startswith("dm-"):
        parent = pkname(ex, source)
        if parent:
            pdev = f"/dev/{parent}"
            ids = []
            for tag in ("UUID", "PARTUUID", "PARTLABEL"):
                value = blkid_tag(ex, pdev, tag)
                if value:
                    ids.append(f"{tag}={value.replace(' ', _FSTAB_SPACE)}")
            crypttab = read_root_file(ex, os.path.join(root_dir, "etc/crypttab"))
            mapper = parse_crypttab_mapper(crypttab or "", ids)
            if mapper:
                patterns.append(f"/dev/mapper/{mapper}")
            else:
                warn("boot.crypttab_no_match", root=root_dir, parent=pdev, ids=ids)
    return patterns


def parse_grub_linux_options(text: str, kernel_dir: str, kernel_file: str, patterns: Iterable[str]) -> str | None:
    """Options following the kernel path on the first matching ``linux`` line."""

    alts = "|".join(re.escape(p) for p in patterns if p)
    if not alts:
        return None
    rx = re.compile(
        rf"^\s*linux\s+(?:/@)?{re.escape(kernel_dir)}/{re.escape(kernel_file)}\s+"
        rf"(.*root=(?:{alts})(?:\s.*)?)$",
        re.IGNORECASE | re.MULTILINE,
    )
    m = rx.search(text or "")
    return m.group(1).strip() if m else None


def parse_default_grub(text: str) -> str:
    values = []
    for key in ("GRUB_CMDLINE_LINUX", "GRUB_CMDLINE_LINUX_DEFAULT"):
        m = re.search(rf"^\s*{key}=([\"'])(.*?)\1", text or "", re.MULTILINE)
        if m and m.group(2).strip():
            values.append(m.group(2).strip())
    return " ".join(values)


def fallback_options(uuid: str, default_grub: str) -> str:
    root = f"root=UUID={uuid}" if uuid else ""
    return " ".join(p for p in (root, parse_default_grub(default_grub)) if p)


def is_systemd(marker: str = "/run/systemd/system") -> bool:
    return os.path.isdir(marker)


def is_shim_systemd(root: str) -> bool:
    """True when ``root`` ships systemd but /sbin/init does not point at it."""

    init = next(
        (p for p in (os.path.join(root, "sbin/init"), os.path.join(root, "bin/init")) if os.path.lexists(p)),
        None,
    )
    if init is None or not os.path.exists(os.path.join(root, "lib/systemd/systemd")):
        return False
    if not os.path.islink(init):
        return True
    return not os.readlink(init).endswith("/systemd")


def combine_boot_options(options: str, root: str) -> str:
    if options and SYSTEMD_INIT not in options and is_systemd() and is_shim_systemd(root):
        trace("boot.systemd_init_added", root=root)
        return f"{options} {SYSTEMD_INIT}"
    return options


def derive_kernel_options(ex, boot_dir: str, root_dir: str, kernel_version: str) -> str:
    """Rebuild the command line the installation at ``root_dir`` boots with."""

    kernel_dir = determine_kernel_dir(ex, boot_dir, root_dir)
    patterns = root_identifiers(ex, root_dir)
    grub_cfg = read_root_file(ex, os.path.join(boot_dir, "grub/grub.cfg"))
    options = None
    if grub_cfg and patterns:
        options = parse_grub_linux_options(grub_cfg, kernel_dir, f"vmlinuz-{kernel_version}", patterns)
    if options is None:
        warn("boot.grub_cfg_no_match", boot=boot_dir, kernel=kernel_version, have_cfg=grub_cfg is not None)
        uuid = next((p[len("UUID="):] for p in patterns if p.startswith("UUID=")), "")
        default = read_root_file(ex, os.path.join(root_dir, "etc/default/grub"))
        if default is None:
            warn("boot.default_grub_missing", root=root_dir)
        options = fallback_options(uuid, default or "")
    options = combine_boot_options(options, root_dir)
    trace("boot.options", root=root_dir, kernel=kernel_version, options=options)
    return options


def missing_frugal_files(directory: str) -> list[str]:
    return [name for name in FRUGAL_REQUIRED if not os.path.isfile(os.path.join(directory, name))]


def parse_grub_entry(text: str) -> KernelOptions:
    """Pull entry name, filesystem UUID, bdir, persistence and extras from a grub.entry."""

    opts = KernelOptions()
    extra: list[str] = []
    for line in (text or "").splitlines():
        line = line.strip()
        m = re.match(r'^menuentry\s+"([^"]*)"', line)
        if m:
            opts.entry_name = m.group(1)
            continue
        m = re.match(r"^search\b.*--fs-uuid\s+(\S+)", line)
        if m:
            opts.uuid = m.group(1)
            continue
        if not line.startswith("linux ") and not line.startswith("linux\t"):
            continue
        for token in line.split()[1:]:
            if token.startswith("bdir="):
                opts.bdir = token[len("bdir="):]
            elif token.startswith("buuid=") or token.endswith("vmlinuz"):
                continue
            elif token in PERSISTENCE_TYPES:
                opts.persistence = PERSISTENCE_TYPES[token]
            else:
                extra.append(token)
    opts.extra = " ".join(extra)
    return opts
