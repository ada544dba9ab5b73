"""LUKS container detection, unlock and close."""

from __future__ import annotations

import os

from .executil import log, trace
from .model import LuksMapping

SCRUB_BYTE = 0xA5


def mapper_name(uuid: str) -> str:
    return f"luks-{uuid}"


def is_luks(ex, device: str) -> bool:
    return ex.run_as_root(["cryptsetup", "isLuks", device], quiet=True).ok


def luks_uuid(ex, device: str) -> str:
    return ex.output(["cryptsetup", "luksUUID", device], elevate=True, quiet=True)


def scrub(buf: bytearray) -> None:
    for i in range(len(buf)):
        buf[i] = SCRUB_BYTE


def unlock(ex, prompter, device: str, mappings: list[LuksMapping]) -> str | None:
    """Open ``device`` as ``luks-<uuid>`` and return the mapper name.

    The passphrase buffer is overwritten whether or not the open succeeds.
    A new mapping is appended to ``mappings`` so the session can close it.
    """

    uuid = luks_uuid(ex, device)
    if not uuid:
        prompter.error(f"Could not read the LUKS UUID of {device}")
        return None
    name = mapper_name(uuid)
    if os.path.exists(f"/dev/mapper/{name}"):
        trace("luks.already_open", device=device, name=name)
        return name

    secret = prompter.prompt_passphrase(f"Enter passphrase to unlock {device}")
    if not secret:
        log("INFO", "luks.cancelled", device=device)
        return None
    buf = secret if isinstance(secret, bytearray) else bytearray(secret)
    try:
        res = ex.run_as_root(
            ["cryptsetup", "luksOpen", "--allow-discards", "--key-file", "-", device, name],
            input=buf,
        )
    finally:
        scrub(buf)

    if not res.ok:
        prompter.error(f"Could not open {device}: {res.out or 'wrong passphrase?'}")
        return None
    mappings.append(LuksMapping(name=name, device=device))
    trace("luks.opened", device=device, name=name)
    return name
