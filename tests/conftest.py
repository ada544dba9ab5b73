from dataclasses import dataclass
from typing import Any

import pytest

from uefiboot import executil
from uefiboot.executil import Result
from uefiboot.prompter import Prompter


@dataclass
class Call:
    cmd: list[str]
    elevate: bool
    input: Any = None
    input_at_call: bytes | None = None


class FakeExecutor:
    """Records commands; answers from prefix rules, newest rule first."""

    def __init__(self):
        self.rules: list[tuple[list[str], int, Any]] = []
        self.calls: list[Call] = []

    def on(self, prefix, out="", rc=0):
        self.rules.append((list(prefix), rc, out))
        return self

    def run(self, cmd, input=None, elevate=False, quiet=False):
        cmd = list(cmd)
        self.calls.append(Call(cmd, elevate, input, bytes(input) if input is not None else None))
        for prefix, rc, out in reversed(self.rules):
            if cmd[: len(prefix)] == prefix:
                if callable(out):
                    out = out(cmd)
                return Result(rc, out)
        return Result(0, "")

    def run_as_root(self, cmd, input=None, quiet=False):
        return self.run(cmd, input=input, elevate=True, quiet=quiet)

    def output(self, cmd, elevate=False, quiet=False):
        res = self.run(cmd, elevate=elevate, quiet=quiet)
        return res.out if res.ok else ""

    @property
    def commands(self) -> list[list[str]]:
        return [c.cmd for c in self.calls]

    def named(self, program: str) -> list[list[str]]:
        return [c for c in self.commands if c and c[0] == program]


class FakePrompter(Prompter):
    def __init__(self, passphrase=None, confirm=True, choice=None):
        super().__init__()
        self.passphrase = passphrase
        self.answer = confirm
        self.choice = choice
        self.asked: list[str] = []

    def prompt_passphrase(self, description):
        self.asked.append(description)
        if self.passphrase is None:
            return None
        return bytearray(self.passphrase)

    def confirm(self, message):
        self.asked.append(message)
        return self.answer

    def choose(self, title, items):
        self.asked.append(title)
        return self.choice if self.choice is not None else (items[0] if items else None)


@pytest.fixture(autouse=True)
def _isolated_log(tmp_path, monkeypatch):
    monkeypatch.setattr(executil, "LOG_DIRS", [str(tmp_path / "logs")])
    monkeypatch.setattr(executil, "LOG_PATH", None)
    monkeypatch.setenv("UEFIBOOT_BASE_PATH", str(tmp_path / "base"))


@pytest.fixture
def fake_ex():
    return FakeExecutor()


@pytest.fixture
def prompter():
    return FakePrompter()
