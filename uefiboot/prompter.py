"""User decision callbacks used by the session (passphrase, confirm, choose)."""
from __future__ import annotations

import getpass
import sys
from typing import Sequence

from .executil import log


class Prompter:
    """Non-interactive default: declines everything and records errors."""

    def __init__(self):
        self.errors: list[str] = []

    def prompt_passphrase(self, description: str) -> bytearray | None:
        return None

    def confirm(self, message: str) -> bool:
        return False

    def choose(self, title: str, items: Sequence[str]) -> str | None:
        return items[0] if len(items) == 1 else None

    def error(self, message: str) -> None:
        self.errors.append(message)
        log("ERROR", "ui.error", message=message)


class TerminalPrompter(Prompter):
    def __init__(self, assume_yes: bool = False, stream=None):
        super().__init__()
        self.assume_yes = assume_yes
        self.stream = stream or sys.stderr

    def prompt_passphrase(self, description: str) -> bytearray | None:
        try:
            secret = getpass.getpass(f"{description}: ")
        except (EOFError, KeyboardInterrupt):
            return None
        return bytearray(secret.encode("utf-8")) if secret else None

    def confirm(self, message: str) -> bool:
        if self.assume_yes:
            return True
        try:
            answer = input(f"{message} [y/N] ")
        except EOFError:
            return False
        return answer.strip().lower() in ("y", "yes")

    def choose(self, title: str, items: Sequence[str]) -> str | None:
        if len(items) <= 1 or self.assume_yes:
            return items[0] if items else None
        print(title, file=self.stream)
        for idx, item in enumerate(items, 1):
            print(f"  {idx}) {item}", file=self.stream)
        try:
            answer = input("> ").strip()
        except EOFError:
            return None
        if answer.isdigit() and 1 <= int(answer) <= len(items):
            return items[int(answer) - 1]
        return None

    def error(self, message: str) -> None:
        super().error(message)
        print(f"error: {message}", file=self.stream)
