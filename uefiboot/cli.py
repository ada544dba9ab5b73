"""CLI entrypoint for the UEFI boot entry and boot-stub manager."""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from typing import Any, Callable, Dict, Optional

from . import __version__
from .devices import format_size, scan_devices
from .efiboot import BootManager
from .errors import ElevationError
from .executil import Executor, append_jsonl, log, resolve_log_path
from .model import BlockDevice
from .mounts import Session
from .paths import logs_dir
from .prompter import TerminalPrompter
from .stub_install import install_for_root, install_frugal

RESULT_CODES: Dict[str, int] = {
    "LIST_OK": 0,
    "DEVICES_OK": 0,
    "TOGGLE_OK": 0,
    "DELETE_OK": 0,
    "NEXT_OK": 0,
    "RESET_NEXT_OK": 0,
    "TIMEOUT_OK": 0,
    "ORDER_OK": 0,
    "MOVE_OK": 0,
    "ADD_OK": 0,
    "RENAME_OK": 0,
    "STUB_OK": 0,
    "FRUGAL_OK": 0,
    "FAIL_USAGE": 2,
    "FAIL_ELEVATION": 3,
    "FAIL_EFIBOOTMGR": 4,
    "FAIL_OPERATION": 5,
    "FAIL_INSTALL": 6,
    "FAIL_UNHANDLED": 12,
}

Outcome = tuple[str, Dict[str, Any]]


def _result_log_path() -> str:
    return os.path.join(logs_dir(), "results.jsonl")


def _emit_result(kind: str, extra: Optional[Dict[str, Any]] = None) -> None:
    payload: Dict[str, Any] = {"result": kind, "ts": int(time.time()), "version": __version__}
    if extra:
        payload.update(extra)
    log_path = resolve_log_path()
    if log_path:
        payload.setdefault("log_path", log_path)
    append_jsonl(_result_log_path(), payload)
    print(json.dumps(payload, sort_keys=True, separators=(",", ":")))
    raise SystemExit(RESULT_CODES.get(kind, 1))


class Context:
    def __init__(self, args: argparse.Namespace, session: Session, manager: BootManager):
        self.args = args
        self.session = session
        self.manager = manager
        self.prompter = session.prompter

    def done(self, ok: bool, kind: str, fail: str = "FAIL_OPERATION", **extra: Any) -> Outcome:
        if ok:
            return kind, extra
        extra["why"] = "; ".join(self.prompter.errors) or "operation failed"
        return fail, extra

    def refreshed(self) -> bool:
        return self.manager.refresh() is not None


def _device_dict(dev: BlockDevice) -> Dict[str, Any]:
    return {
        "name": dev.name,
        "size": format_size(dev.size),
        "fstype": dev.fstype,
        "label": dev.label,
        "mountpoint": dev.mountpoint,
        "model": dev.model,
    }


def cmd_list(ctx: Context) -> Outcome:
    snap = ctx.manager.refresh()
    if snap is None:
        return ctx.done(False, "LIST_OK", fail="FAIL_EFIBOOTMGR")
    entries = [
        {"bootnum": e.bootnum, "label": e.label, "active": e.active, "position": e.position, "path": e.path}
        for e in snap.entries
    ]
    return "LIST_OK", {
        "entries": entries,
        "timeout": snap.timeout,
        "boot_next": snap.boot_next,
        "boot_current": snap.boot_current,
        "boot_order": snap.boot_order,
    }


def cmd_devices(ctx: Context) -> Outcome:
    root = ctx.session.root
    snap = scan_devices(ctx.session.ex, root.partition)
    return "DEVICES_OK", {
        "root": {"device": root.device_path, "partition": root.partition, "drive": root.drive},
        "drives": [_device_dict(d) for d in snap.drives],
        "esps": [_device_dict(p) for p in snap.esps],
        "linux": [_device_dict(p) for p in snap.linux_partitions],
        "frugal": [_device_dict(p) for p in snap.frugal_partitions],
    }


def cmd_toggle(ctx: Context) -> Outcome:
    ok = ctx.refreshed() and ctx.manager.toggle_active(ctx.args.bootnum)
    entry = ctx.manager.snapshot.find(ctx.args.bootnum)
    return ctx.done(ok, "TOGGLE_OK", bootnum=ctx.args.bootnum.upper(), active=entry.active if entry else None)


def cmd_delete(ctx: Context) -> Outcome:
    ok = ctx.refreshed() and ctx.manager.delete(ctx.args.bootnum)
    return ctx.done(ok, "DELETE_OK", bootnum=ctx.args.bootnum.upper())


def cmd_next(ctx: Context) -> Outcome:
    ok = ctx.refreshed() and ctx.manager.set_boot_next(ctx.args.bootnum)
    return ctx.done(ok, "NEXT_OK", boot_next=ctx.args.bootnum.upper())


def cmd_reset_next(ctx: Context) -> Outcome:
    return ctx.done(ctx.manager.reset_boot_next(), "RESET_NEXT_OK")


def cmd_timeout(ctx: Context) -> Outcome:
    return ctx.done(ctx.manager.set_timeout(ctx.args.seconds), "TIMEOUT_OK", timeout=ctx.args.seconds)


def cmd_order(ctx: Context) -> Outcome:
    order = [n.strip() for n in ctx.args.order.split(",") if n.strip()]
    ok = ctx.refreshed() and ctx.manager.reorder(order)
    return ctx.done(ok, "ORDER_OK", boot_order=ctx.manager.snapshot.boot_order)


def cmd_move(ctx: Context) -> Outcome:
    ok = ctx.refreshed() and ctx.manager.move(ctx.args.bootnum, ctx.args.step)
    return ctx.done(ok, "MOVE_OK", boot_order=ctx.manager.snapshot.order())


def cmd_add(ctx: Context) -> Outcome:
    devices = scan_devices(ctx.session.ex, ctx.session.root.partition)
    ok = ctx.manager.add_from_file(ctx.args.path, ctx.args.label or "", devices)
    return ctx.done(ok, "ADD_OK", path=ctx.args.path)


def cmd_rename(ctx: Context) -> Outcome:
    ok = ctx.manager.rename(ctx.args.old_label, ctx.args.new_label, ctx.args.bootnum)
    return ctx.done(ok, "RENAME_OK", label=ctx.args.new_label)


def cmd_stub(ctx: Context) -> Outcome:
    a = ctx.args
    devices = scan_devices(ctx.session.ex, ctx.session.root.partition)
    ok = install_for_root(
        ctx.session,
        ctx.manager,
        devices,
        a.partition,
        kernel=a.kernel,
        label=a.label,
        options=a.options,
        esp_name=a.esp,
    )
    return ctx.done(ok, "STUB_OK", fail="FAIL_INSTALL", partition=a.partition)


def cmd_frugal(ctx: Context) -> Outcome:
    a = ctx.args
    devices = scan_devices(ctx.session.ex, ctx.session.root.partition)
    ok = install_frugal(
        ctx.session,
        ctx.manager,
        devices,
        a.partition,
        a.directory,
        label=a.label,
        extra=a.options,
        persistence=a.persistence,
        esp_name=a.esp,
    )
    return ctx.done(ok, "FRUGAL_OK", fail="FAIL_INSTALL", partition=a.partition, directory=a.directory)


COMMANDS: Dict[str, Callable[[Context], Outcome]] = {
    "list": cmd_list,
    "devices": cmd_devices,
    "toggle": cmd_toggle,
    "delete": cmd_delete,
    "next": cmd_next,
    "reset-next": cmd_reset_next,
    "timeout": cmd_timeout,
    "order": cmd_order,
    "move": cmd_move,
    "add": cmd_add,
    "rename": cmd_rename,
    "stub": cmd_stub,
    "frugal": cmd_frugal,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="uefiboot", add_help=True)
    parser.add_argument("--yes", dest="assume_yes", action="store_true")
    parser.add_argument("--version", action="version", version=__version__)
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list")
    sub.add_parser("devices")
    for name in ("toggle", "delete", "next"):
        sub.add_parser(name).add_argument("bootnum")
    sub.add_parser("reset-next")
    sub.add_parser("timeout").add_argument("seconds", type=int)
    sub.add_parser("order").add_argument("order", help="comma separated boot numbers")

    p = sub.add_parser("move")
    p.add_argument("bootnum")
    p.add_argument("step", type=int, help="negative moves towards the front")

    p = sub.add_parser("add")
    p.add_argument("path")
    p.add_argument("--label", default="")

    p = sub.add_parser("rename")
    p.add_argument("old_label")
    p.add_argument("new_label")
    p.add_argument("--bootnum", default=None)

    for name in ("stub", "frugal"):
        p = sub.add_parser(name)
        p.add_argument("partition")
        if name == "frugal":
            p.add_argument("directory")
            p.add_argument("--persistence", default=None)
        else:
            p.add_argument("--kernel", default=None)
        p.add_argument("--label", default=None)
        p.add_argument("--options", default=None)
        p.add_argument("--esp", default=None)
    return parser


def _main_impl(argv: Optional[list[str]] = None, executor: Optional[Executor] = None, prompter=None) -> int:
    args = build_parser().parse_args(argv)
    prompter = prompter or TerminalPrompter(assume_yes=args.assume_yes)
    try:
        ex = executor or Executor()
        session = Session(ex, prompter)
        manager = BootManager(ex, prompter, session)
        try:
            kind, extra = COMMANDS[args.command](Context(args, session, manager))
        finally:
            leftovers = session.teardown()
    except ElevationError as exc:
        _emit_result("FAIL_ELEVATION", {"why": str(exc), "command": args.command})
    if leftovers:
        extra["teardown_failed"] = leftovers
    extra["command"] = args.command
    _emit_result(kind, extra)
    return 0


def main(argv: Optional[list[str]] = None) -> int:  # pragma: no cover - exercised via manual CLI
    try:
        return _main_impl(argv)
    except SystemExit:
        raise
    except Exception as exc:  # noqa: BLE001
        log("ERROR", "cli.unhandled", error=str(exc))
        _emit_result("FAIL_UNHANDLED", extra={"error": str(exc)})
    return 0


if __name__ == "__main__":
    sys.exit(main())
