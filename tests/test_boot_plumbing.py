import os

import pytest

from uefiboot import boot_plumbing as bp
from uefiboot.model import RootDevice
from uefiboot.mounts import Session

GRUB_CFG = """\
menuentry 'MX Linux' {
	search --no-floppy --fs-uuid --set=root 1111-root
	linux	/boot/vmlinuz-6.1.0-13-amd64 root=UUID=1111-root ro quiet splash
	initrd	/boot/initrd.img-6.1.0-13-amd64
}
menuentry 'MX Linux, older' {
	linux	/boot/vmlinuz-6.1.0-12-amd64 root=UUID=1111-root ro quiet
}
menuentry 'Other distro' {
	linux	/boot/vmlinuz-6.1.0-13-amd64 root=UUID=2222-other ro
}
"""

DEFAULT_GRUB = """\
GRUB_DEFAULT=0
GRUB_CMDLINE_LINUX_DEFAULT="quiet splash"
GRUB_CMDLINE_LINUX="resume=UUID=3333"
"""


def _write(path, text):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        fh.write(text)


def test_parse_fstab_boot_handles_comments_and_escapes():
    fstab = "\n".join(
        [
            "# /boot was on /dev/sda1",
            "",
            "UUID=aaaa  /      ext4  defaults 0 1",
            "UUID=efi   /boot/efi vfat umask=0077 0 1",
            "LABEL=my\\040boot\t/boot  ext4 defaults 0 2",
        ]
    )
    assert bp.parse_fstab_boot(fstab) == "LABEL=my boot"
    assert bp.parse_fstab_boot("UUID=efi /boot/efi vfat defaults 0 1\n") is None
    assert bp.parse_fstab_boot("#UUID=x /boot ext4 defaults 0 2\n") is None


def test_locate_boot_prefers_fstab_entry(fake_ex, prompter, tmp_path):
    root = tmp_path / "root"
    _write(str(root / "etc/fstab"), "UUID=bbbb /boot ext4 defaults 0 2\n")
    fake_ex.on(["blkid", "--list-one"], "/dev/sdb2")
    fake_ex.on(["findmnt"], "/mnt/elsewhere")
    session = Session(fake_ex, prompter, root=RootDevice("/dev/sda1", "sda1", "sda"), base=str(tmp_path / "mnt"))
    assert bp.locate_boot(session, str(root)) == "/mnt/elsewhere"


def test_locate_boot_fallbacks(fake_ex, prompter, tmp_path):
    session = Session(fake_ex, prompter, root=RootDevice(), base=str(tmp_path / "mnt"))
    root = tmp_path / "root"
    root.mkdir()
    assert bp.locate_boot(session, str(root)) == str(root)
    (root / "boot").mkdir()
    assert bp.locate_boot(session, str(root)) == str(root / "boot")


def test_locate_boot_mount_failure_degrades_to_root(fake_ex, prompter, tmp_path):
    root = tmp_path / "root"
    _write(str(root / "etc/fstab"), "UUID=bbbb /boot ext4 defaults 0 2\n")
    (root / "boot").mkdir()
    fake_ex.on(["blkid"], "", rc=2)
    session = Session(fake_ex, prompter, root=RootDevice(), base=str(tmp_path / "mnt"))
    assert bp.locate_boot(session, str(root)) == str(root)


def test_determine_kernel_dir(fake_ex):
    fake_ex.on(["mountpoint"], rc=1)
    assert bp.determine_kernel_dir(fake_ex, "/boot", "/") == "/boot"
    fake_ex.on(["mountpoint"], rc=0)
    assert bp.determine_kernel_dir(fake_ex, "/boot/", "/") == ""
    assert bp.determine_kernel_dir(fake_ex, "/mnt/uefi-manager/sdb2/boot", "/mnt/uefi-manager/sdb2") == "/boot"
    assert bp.determine_kernel_dir(fake_ex, "/mnt/uefi-manager/sdb1", "/mnt/uefi-manager/sdb2") == ""


def test_parse_grub_linux_options_matches_kernel_and_root():
    opts = bp.parse_grub_linux_options(GRUB_CFG, "/boot", "vmlinuz-6.1.0-13-amd64", ["/dev/sda2", "UUID=1111-root"])
    assert opts == "root=UUID=1111-root ro quiet splash"
    other = bp.parse_grub_linux_options(GRUB_CFG, "/boot", "vmlinuz-6.1.0-13-amd64", ["UUID=2222-other"])
    assert other == "root=UUID=2222-other ro"


def test_parse_grub_linux_options_no_prefix_match():
    assert bp.parse_grub_linux_options(GRUB_CFG, "/boot", "vmlinuz-6.1.0-13-amd64", ["UUID=1111"]) is None
    assert bp.parse_grub_linux_options(GRUB_CFG, "", "vmlinuz-6.1.0-13-amd64", ["UUID=1111-root"]) is None
    assert bp.parse_grub_linux_options(GRUB_CFG, "/boot", "vmlinuz-5.10.0", ["UUID=1111-root"]) is None


def test_parse_grub_linux_options_btrfs_subvolume():
    cfg = "  linux /@/boot/vmlinuz-6.6.1 root=UUID=abc rootflags=subvol=@ ro\n"
    assert bp.parse_grub_linux_options(cfg, "/boot", "vmlinuz-6.6.1", ["UUID=abc"]) == "root=UUID=abc rootflags=subvol=@ ro"


def test_fallback_options_from_default_grub():
    assert bp.parse_default_grub(DEFAULT_GRUB) == "resume=UUID=3333 quiet splash"
    assert bp.fallback_options("1111", DEFAULT_GRUB) == "root=UUID=1111 resume=UUID=3333 quiet splash"
    assert bp.fallback_options("1111", "") == "root=UUID=1111"


def test_parse_crypttab_mapper():
    crypttab = "# comment\nluks-root PARTUUID=pppp none luks,discard\nswap UUID=ssss /dev/urandom swap\n"
    assert bp.parse_crypttab_mapper(crypttab, ["UUID=aaaa", "PARTUUID=pppp"]) == "luks-root"
    assert bp.parse_crypttab_mapper(crypttab, ["UUID=zzzz"]) is None


def test_root_identifiers_encrypted_root(fake_ex, tmp_path):
    root = tmp_path / "root"
    _write(str(root / "etc/crypttab"), "cryptroot UUID=luks-part none luks\n")
    fake_ex.on(["df"], "Filesystem\n/dev/mapper/cryptroot")
    fake_ex.on(["blkid", "--output", "value", "--match-tag", "UUID", "/dev/mapper/cryptroot"], "fs-uuid")
    fake_ex.on(["lsblk", "-ln", "-o", "PKNAME"], "sda3")
    fake_ex.on(["blkid", "--output", "value", "--match-tag", "UUID", "/dev/sda3"], "luks-part")
    fake_ex.on(["blkid", "--output", "value", "--match-tag", "PARTLABEL", "/dev/sda3"], "my root")
    ids = bp.root_identifiers(fake_ex, str(root))
    assert ids == ["/dev/mapper/cryptroot", "UUID=fs-uuid", "/dev/mapper/cryptroot"]


def test_root_identifiers_plain(fake_ex, tmp_path):
    fake_ex.on(["df"], "Filesystem\n/dev/sda2")
    fake_ex.on(["blkid"], "1111-root")
    assert bp.root_identifiers(fake_ex, str(tmp_path)) == ["/dev/sda2", "UUID=1111-root"]


def _systemd_root(tmp_path, link_target=None):
    root = tmp_path / "root"
    (root / "sbin").mkdir(parents=True)
    (root / "lib/systemd").mkdir(parents=True)
    (root / "lib/systemd/systemd").write_text("")
    if link_target:
        os.symlink(link_target, root / "sbin/init")
    else:
        (root / "sbin/init").write_text("")
    return root


def test_is_shim_systemd(tmp_path):
    assert bp.is_shim_systemd(str(_systemd_root(tmp_path)))


def test_is_shim_systemd_false_when_init_links_systemd(tmp_path):
    assert not bp.is_shim_systemd(str(_systemd_root(tmp_path, "/lib/systemd/systemd")))


def test_combine_boot_options(tmp_path, monkeypatch):
    root = str(_systemd_root(tmp_path))
    monkeypatch.setattr(bp, "is_systemd", lambda: True)
    assert bp.combine_boot_options("root=UUID=1 ro", root) == "root=UUID=1 ro init=/lib/systemd/systemd"
    assert bp.combine_boot_options("ro init=/lib/systemd/systemd", root) == "ro init=/lib/systemd/systemd"
    assert bp.combine_boot_options("", root) == ""
    monkeypatch.setattr(bp, "is_systemd", lambda: False)
    assert bp.combine_boot_options("ro", root) == "ro"


def test_derive_kernel_options_from_grub_cfg(fake_ex, tmp_path, monkeypatch):
    monkeypatch.setattr(bp, "is_systemd", lambda: False)
    root = tmp_path / "root"
    _write(str(root / "boot/grub/grub.cfg"), GRUB_CFG)
    fake_ex.on(["df"], "Filesystem\n/dev/sda2")
    fake_ex.on(["blkid"], "1111-root")
    opts = bp.derive_kernel_options(fake_ex, str(root / "boot"), str(root), "6.1.0-13-amd64")
    assert opts == "root=UUID=1111-root ro quiet splash"


def test_derive_kernel_options_falls_back_to_default_grub(fake_ex, tmp_path, monkeypatch):
    monkeypatch.setattr(bp, "is_systemd", lambda: False)
    root = tmp_path / "root"
    _write(str(root / "etc/default/grub"), DEFAULT_GRUB)
    (root / "boot").mkdir()
    fake_ex.on(["df"], "Filesystem\n/dev/sda2")
    fake_ex.on(["blkid"], "1111-root")
    opts = bp.derive_kernel_options(fake_ex, str(root / "boot"), str(root), "6.1.0-13-amd64")
    assert opts == "root=UUID=1111-root resume=UUID=3333 quiet splash"


def test_read_root_file_uses_elevated_cat_when_unreadable(fake_ex, tmp_path, monkeypatch):
    def deny(*args, **kwargs):
        raise PermissionError("denied")

    monkeypatch.setattr(bp, "open", deny, raising=False)
    fake_ex.on(["cat"], "secret contents")
    assert bp.read_root_file(fake_ex, "/etc/crypttab") == "secret contents"
    assert fake_ex.calls[0].elevate


def test_read_root_file_missing(fake_ex, tmp_path):
    assert bp.read_root_file(fake_ex, str(tmp_path / "nope")) is None
    assert fake_ex.calls == []


GRUB_ENTRY = """\
menuentry "antiX-23 Frugal" {
    search --no-floppy --set=root --fs-uuid 9999-frugal
    linux /antiX-Frugal-23/vmlinuz bdir=antiX-Frugal-23 buuid=9999-frugal quiet lang=en_US frugal_root
    initrd /antiX-Frugal-23/initrd.gz
}
"""


def test_parse_grub_entry():
    opts = bp.parse_grub_entry(GRUB_ENTRY)
    assert opts.entry_name == "antiX-23 Frugal"
    assert opts.uuid == "9999-frugal"
    assert opts.bdir == "antiX-Frugal-23"
    assert opts.persistence == "persist_root"
    assert opts.extra == "quiet lang=en_US"
    assert opts.render("initrd=\\EFI\\MX\\frugal\\initrd.img") == (
        "bdir=antiX-Frugal-23 buuid=9999-frugal quiet lang=en_US persist_root initrd=\\EFI\\MX\\frugal\\initrd.img"
    )


@pytest.mark.parametrize("token,canonical", [("p_static_root", "persist_static_root"), ("frugal_only", "frugal_only")])
def test_parse_grub_entry_persistence_aliases(token, canonical):
    opts = bp.parse_grub_entry(f"linux /f/vmlinuz bdir=f {token}\n")
    assert opts.persistence == canonical


def test_missing_frugal_files(tmp_path):
    (tmp_path / "vmlinuz").write_text("")
    assert bp.missing_frugal_files(str(tmp_path)) == ["linuxfs", "grub.entry"]
