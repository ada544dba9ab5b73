from __future__ import annotations

"""Blocking command execution with optional elevation, plus JSONL trace logging."""

import datetime as _dt
import json
import os
import subprocess
import time
from typing import Sequence

from .errors import ElevationError
from .paths import ELEVATION_COMMANDS, command_timeout, helper_path, logs_dir


LOG_DIRS: list[str] | None = None
LOG_PATH: str | None = None
LOG_NAME = "uefi-manager.jsonl"

# pkexec: dialog dismissed / not authorised, and command not found
EXIT_CODE_PERMISSION_DENIED = 126
EXIT_CODE_COMMAND_NOT_FOUND = 127
EXIT_CODE_TIMEOUT = 124


def _log_dirs() -> list[str]:
    if LOG_DIRS:
        return list(LOG_DIRS)
    return [
        logs_dir(),
        "/var/log/uefi-manager",
        "/tmp/uefi-manager-logs",
    ]


def _ensure_logger() -> str | None:
    global LOG_PATH
    if LOG_PATH:
        return LOG_PATH
    for d in _log_dirs():
        d_expanded = os.path.expanduser(d)
        try:
            os.makedirs(d_expanded, exist_ok=True)
            LOG_PATH = os.path.join(d_expanded, LOG_NAME)
            return LOG_PATH
        except OSError:
            continue
    LOG_PATH = None
    return None


def resolve_log_path() -> str | None:
    """Return the active log path, creating directories when possible."""

    return _ensure_logger()


LEVELS = {"TRACE": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "NONE": 100}
LOG_LEVEL = os.environ.get("UEFIBOOT_LOG_LEVEL", "TRACE").upper()


def _write_jsonl(obj: dict):
    path = _ensure_logger()
    try:
        if path:
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(obj, default=str) + "\n")
    except OSError:
        pass


def log(level: str, event: str, **fields):
    lvl = LEVELS.get(level.upper(), 100)
    cur = LEVELS.get(LOG_LEVEL, 100)
    if lvl < cur:
        return
    ts = _dt.datetime.now(_dt.timezone.utc).isoformat()
    rec = {"ts": ts, "level": level.upper(), "event": event}
    rec.update(fields)
    _write_jsonl(rec)


def trace(event: str, **fields):
    log("TRACE", event, **fields)


def warn(event: str, **fields):
    log("WARN", event, **fields)


def append_jsonl(path: str, obj: dict):
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
    except OSError:
        pass


class Result:
    """Outcome of one command: exit code and merged, trimmed stdout+stderr."""

    def __init__(self, rc: int, out: str, duration: float = 0.0):
        self.rc, self.out, self.duration = rc, out, duration

    @property
    def ok(self) -> bool:
        return self.rc == 0

    def __repr__(self) -> str:
        return f"Result(rc={self.rc!r}, out={self.out!r})"


def run(
    cmd: Sequence[str],
    input: bytes | bytearray | None = None,
    quiet: bool = False,
    timeout: float | None = None,
) -> Result:
    """Run ``cmd`` to completion and capture its merged output.

    ``input`` is handed to the child's stdin as-is so callers can keep
    ownership of mutable buffers. ``quiet`` suppresses the start record only.
    """

    if not quiet:
        trace("exec.start", cmd=list(cmd))
    started = time.time()
    try:
        proc = subprocess.run(
            list(cmd),
            input=input,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        dur = time.time() - started
        warn("exec.timeout", cmd=list(cmd), timeout=timeout)
        return Result(EXIT_CODE_TIMEOUT, "", dur)
    except OSError as exc:
        dur = time.time() - started
        warn("exec.error", cmd=list(cmd), error=str(exc))
        rc = EXIT_CODE_COMMAND_NOT_FOUND if isinstance(exc, FileNotFoundError) else 1
        return Result(rc, "", dur)
    dur = time.time() - started
    out = (proc.stdout or b"").decode("utf-8", errors="replace").strip()
    trace("exec.done", cmd=list(cmd), rc=proc.returncode, dur=dur, out=out)
    return Result(proc.returncode, out, dur)


def find_elevation_command() -> str | None:
    for candidate in ELEVATION_COMMANDS:
        if os.path.exists(candidate):
            return candidate
    return None


class Executor:
    """Serialised command runner.

    At most one command is in flight per instance. Elevated calls from an
    unprivileged process are wrapped as ``<elevation> <helper> <cmd...>``.
    """

    def __init__(
        self,
        elevation_cmd: str | None = None,
        helper: str | None = None,
        timeout: float | None = None,
        euid: int | None = None,
    ):
        self.elevation_cmd = elevation_cmd if elevation_cmd is not None else find_elevation_command()
        self.helper = helper or helper_path()
        self.timeout = timeout if timeout is not None else command_timeout()
        self.euid = os.geteuid() if euid is None else euid
        self.elevation_failed = False
        self._busy = False
        if not self.elevation_cmd:
            warn("exec.no_elevation", candidates=list(ELEVATION_COMMANDS))

    @property
    def busy(self) -> bool:
        return self._busy

    def _elevation_error(self, reason: str):
        self.elevation_failed = True
        log("ERROR", "exec.elevation_failed", reason=reason)
        raise ElevationError(
            "This operation requires administrator privileges. Please restart the "
            "application and enter your password when prompted."
        )

    def run(
        self,
        cmd: Sequence[str],
        input: bytes | bytearray | None = None,
        elevate: bool = False,
        quiet: bool = False,
    ) -> Result:
        if self.elevation_failed:
            return Result(1, "")
        if self._busy:
            trace("exec.busy", cmd=list(cmd))
            return Result(1, "")

        wrapped = elevate and self.euid != 0
        if wrapped and not self.elevation_cmd:
            self._elevation_error("no elevation command available")

        argv = [self.elevation_cmd, self.helper, *cmd] if wrapped else list(cmd)
        self._busy = True
        try:
            res = run(argv, input=input, quiet=quiet, timeout=self.timeout)
        finally:
            self._busy = False

        if wrapped and res.rc in (EXIT_CODE_PERMISSION_DENIED, EXIT_CODE_COMMAND_NOT_FOUND):
            self._elevation_error(f"elevated command exited with {res.rc}")
        return res

    def run_as_root(self, cmd: Sequence[str], input: bytes | bytearray | None = None, quiet: bool = False) -> Result:
        return self.run(cmd, input=input, elevate=True, quiet=quiet)

    def output(self, cmd: Sequence[str], elevate: bool = False, quiet: bool = False) -> str:
        """Return the trimmed output of ``cmd``, or an empty string on failure."""

        res = self.run(cmd, elevate=elevate, quiet=quiet)
        return res.out if res.ok else ""


