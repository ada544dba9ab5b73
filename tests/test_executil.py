import json
from types import SimpleNamespace

import pytest

from uefiboot import executil, paths
from uefiboot.errors import ElevationError


def _records(tmp_path):
    log_file = tmp_path / "logs" / executil.LOG_NAME
    return [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines() if line]


def test_log_event_creates_log(tmp_path):
    executil.log("INFO", "unit.test", answer=42)
    data = _records(tmp_path)
    assert data and data[0]["event"] == "unit.test"
    assert data[0]["level"] == "INFO" and data[0]["answer"] == 42


def test_log_level_threshold(tmp_path, monkeypatch):
    monkeypatch.setattr(executil, "LOG_LEVEL", "WARN")
    executil.trace("dropped")
    executil.warn("kept")
    assert [r["event"] for r in _records(tmp_path)] == ["kept"]


def test_run_merges_output_and_traces(tmp_path, monkeypatch):
    seen = {}

    def fake_run(cmd, input=None, stdout=None, stderr=None, timeout=None):
        seen.update(cmd=cmd, stderr=stderr, input=input)
        return SimpleNamespace(returncode=0, stdout=b"  hello\nworld \n")

    monkeypatch.setattr(executil.subprocess, "run", fake_run)
    res = executil.run(["echo", "hi"], input=b"x")
    assert res.ok and res.out == "hello\nworld"
    assert seen["stderr"] is executil.subprocess.STDOUT
    assert seen["input"] == b"x"
    events = [r["event"] for r in _records(tmp_path)]
    assert events == ["exec.start", "exec.done"]


def test_quiet_run_still_logs_result(tmp_path, monkeypatch):
    monkeypatch.setattr(
        executil.subprocess, "run", lambda cmd, **kw: SimpleNamespace(returncode=3, stdout=b"bad")
    )
    res = executil.run(["false"], quiet=True)
    assert not res.ok and res.rc == 3
    data = _records(tmp_path)
    assert [r["event"] for r in data] == ["exec.done"]
    assert data[0]["rc"] == 3


def test_run_timeout_is_operation_failure(monkeypatch):
    def fake_run(cmd, **kwargs):
        raise executil.subprocess.TimeoutExpired(cmd, kwargs.get("timeout"))

    monkeypatch.setattr(executil.subprocess, "run", fake_run)
    res = executil.run(["sleep", "100"], timeout=0.01)
    assert res.rc == executil.EXIT_CODE_TIMEOUT
    assert not res.ok


def test_run_missing_program(monkeypatch):
    def fake_run(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(executil.subprocess, "run", fake_run)
    assert executil.run(["nope"]).rc == executil.EXIT_CODE_COMMAND_NOT_FOUND


def test_append_jsonl(tmp_path):
    path = tmp_path / "data" / "log.jsonl"
    executil.append_jsonl(str(path), {"foo": "bar"})
    assert json.loads(path.read_text(encoding="utf-8").strip()) == {"foo": "bar"}


class Recorder:
    def __init__(self, rc=0, out=""):
        self.calls = []
        self.rc, self.out = rc, out

    def __call__(self, cmd, input=None, quiet=False, timeout=None):
        self.calls.append(list(cmd))
        return executil.Result(self.rc, self.out)


def test_executor_wraps_elevated_calls(monkeypatch):
    rec = Recorder(out="ok")
    monkeypatch.setattr(executil, "run", rec)
    ex = executil.Executor(elevation_cmd="/usr/bin/pkexec", helper="/usr/lib/uefi-manager/helper", euid=1000)

    assert ex.run(["efibootmgr"]).ok
    assert ex.run_as_root(["efibootmgr", "-N"]).ok
    assert rec.calls == [
        ["efibootmgr"],
        ["/usr/bin/pkexec", "/usr/lib/uefi-manager/helper", "efibootmgr", "-N"],
    ]
    assert not ex.busy


def test_executor_as_root_runs_directly(monkeypatch):
    rec = Recorder()
    monkeypatch.setattr(executil, "run", rec)
    ex = executil.Executor(elevation_cmd="", euid=0)
    ex.run_as_root(["mount", "/dev/sda1", "/mnt"])
    assert rec.calls == [["mount", "/dev/sda1", "/mnt"]]


def test_missing_elevation_is_fatal(monkeypatch):
    monkeypatch.setattr(executil, "run", Recorder())
    ex = executil.Executor(elevation_cmd="", euid=1000)
    with pytest.raises(ElevationError):
        ex.run_as_root(["mount"])
    assert ex.elevation_failed


@pytest.mark.parametrize("rc", [126, 127])
def test_sentinel_exit_codes_are_fatal(monkeypatch, rc):
    rec = Recorder(rc=rc)
    monkeypatch.setattr(executil, "run", rec)
    ex = executil.Executor(elevation_cmd="/usr/bin/pkexec", euid=1000)
    with pytest.raises(ElevationError):
        ex.run_as_root(["umount", "/mnt"])
    # every later call is refused without spawning anything
    assert not ex.run(["true"]).ok
    assert len(rec.calls) == 1


def test_sentinel_ignored_for_unwrapped_calls(monkeypatch):
    monkeypatch.setattr(executil, "run", Recorder(rc=127))
    ex = executil.Executor(elevation_cmd="/usr/bin/pkexec", euid=1000)
    assert ex.run(["missing-tool"]).rc == 127
    assert not ex.elevation_failed


def test_busy_executor_refuses_second_command(monkeypatch):
    ex = executil.Executor(elevation_cmd="/usr/bin/pkexec", euid=1000)
    inner = {}

    def reentrant(cmd, input=None, quiet=False, timeout=None):
        inner["res"] = ex.run(["second"])
        return executil.Result(0, "")

    monkeypatch.setattr(executil, "run", reentrant)
    assert ex.run(["first"]).ok
    assert not inner["res"].ok
    assert not ex.busy


def test_output_empty_on_failure(monkeypatch):
    monkeypatch.setattr(executil, "run", Recorder(rc=1, out="boom"))
    ex = executil.Executor(elevation_cmd="/usr/bin/pkexec", euid=1000)
    assert ex.output(["blkid"]) == ""


def test_command_timeout_config(monkeypatch):
    monkeypatch.setenv("UEFIBOOT_CMD_TIMEOUT", "0")
    assert paths.command_timeout() is None
    monkeypatch.setenv("UEFIBOOT_CMD_TIMEOUT", "junk")
    assert paths.command_timeout() == 600.0
    monkeypatch.setenv("UEFIBOOT_CMD_TIMEOUT", "30")
    assert paths.command_timeout() == 30.0
