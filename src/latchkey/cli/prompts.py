"""Line-based prompts for interactive commands.

Prompts are written to stderr so that ``--json`` output on stdout stays a
single document.
"""

import sys
from collections.abc import Sequence
from typing import TextIO


class PromptAborted(Exception):
    """Raised when input ends before a prompt was answered."""


class Prompter:
    """Asks questions on a terminal."""

    def __init__(self, stdin: TextIO | None = None, stderr: TextIO | None = None):
        self._stdin = stdin
        self._stderr = stderr

    @property
    def stdin(self) -> TextIO:
        return self._stdin or sys.stdin

    @property
    def stderr(self) -> TextIO:
        return self._stderr or sys.stderr

    def readline(self) -> str:
        line = self.stdin.readline()
        if not line:
            raise PromptAborted("input closed")
        return line.rstrip("\n")

    def say(self, message: str) -> None:
        """Show a message without asking anything."""
        print(message, file=self.stderr)

    def ask(self, prompt: str, default: str | None = None) -> str:
        """Ask for free text. Returns ``default`` (or "") on an empty answer."""
        suffix = f" [{default}]" if default else ""
        self.stderr.write(f"{prompt}{suffix}: ")
        self.stderr.flush()
        answer = self.readline().strip()
        return answer or (default or "")

    def confirm(self, prompt: str, default: bool = False) -> bool:
        """Ask a yes/no question."""
        hint = "Y/n" if default else "y/N"
        answer = self.ask(f"{prompt} ({hint})").lower()
        if not answer:
            return default
        return answer in ("y", "yes")

    def choose(self, prompt: str, options: Sequence[str], default: str | None = None) -> str:
        """Ask until the answer is one of ``options``."""
        while True:
            answer = self.ask(f"{prompt} ({'/'.join(options)})", default)
            if answer in options:
                return answer
            self.say(f"Please answer one of: {', '.join(options)}")
