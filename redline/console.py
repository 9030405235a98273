"""Interactive read-execute-render loop."""

from __future__ import annotations

import sys
from typing import Callable, TextIO

from redline.client import Client
from redline.core.errors import ExitCode, LockBusy, NotConnected, RedlineError
from redline.core.logging import get_logger
from redline.protocol.render import render
from redline.protocol.resp import Response


QUIT_TOKENS = frozenset({"quit", "exit", "q"})
PUSH_PREFIXES = frozenset({"subscribe", "psubscribe", "ssubscribe", "monitor"})


def is_push_command(line: str) -> bool:
    words = line.split(None, 1)
    return bool(words) and words[0].lower() in PUSH_PREFIXES


class Console:
    def __init__(
        self,
        client: Client,
        *,
        read_line: Callable[[str], str] = input,
        out: TextIO | None = None,
        err: TextIO | None = None,
        confirm: Callable[[], bool] | None = None,
    ) -> None:
        self.client = client
        self.read_line = read_line
        self.out = out or sys.stdout
        self.err = err or sys.stderr
        self.confirm = confirm or self._confirm_leave_push
        self.logger = get_logger("redline.console")
        self.last_code = ExitCode.SUCCESS

    @property
    def prompt(self) -> str:
        return f"{self.client.config.address}> "

    @property
    def pretty(self) -> bool:
        isatty = getattr(self.out, "isatty", None)
        return bool(isatty and isatty())

    def run(self) -> int:
        while True:
            try:
                line = self.read_line(self.prompt)
            except EOFError:
                if self.pretty:
                    self.out.write("\n")
                break
            except KeyboardInterrupt:
                if self.pretty:
                    self.out.write("\n")
                continue
            stripped = line.strip()
            if not stripped:
                continue
            if stripped.lower() in QUIT_TOKENS:
                break
            self.last_code = self.handle(stripped)
        return int(self.last_code)

    def handle(self, line: str) -> ExitCode:
        """Run one console line and return its exit code."""
        try:
            return self._dispatch(line)
        except NotConnected:
            try:
                self.client.connect()
            except RedlineError as exc:
                self.err.write(f"{exc}\n")
                return exc.exit_code
        except LockBusy as exc:
            self.err.write(f"{exc}\n")
            return exc.exit_code
        except ValueError as exc:
            self.err.write(f"{exc}\n")
            return ExitCode.SERVER_ERROR
        except RedlineError as exc:
            self.err.write(f"{exc}\n")
            return exc.exit_code
        try:
            return self._dispatch(line)
        except ValueError as exc:
            self.err.write(f"{exc}\n")
            return ExitCode.SERVER_ERROR
        except RedlineError as exc:
            self.err.write(f"{exc}\n")
            return exc.exit_code

    def _dispatch(self, line: str) -> ExitCode:
        if is_push_command(line):
            return self._push(line)
        reply = self.client.execute(line)
        return render(reply, self.out, self.err, pretty=self.pretty)

    def _push(self, line: str) -> ExitCode:
        codes: list[ExitCode] = []

        def _on_reply(reply: Response) -> None:
            codes.append(render(reply, self.out, self.err, pretty=self.pretty))
            self.out.flush()

        self.client.push(line, _on_reply, confirm_stop=self.confirm)
        if ExitCode.SERVER_ERROR in codes:
            return ExitCode.SERVER_ERROR
        return ExitCode.SUCCESS

    def _confirm_leave_push(self) -> bool:
        try:
            answer = self.read_line("\nleave push mode? [y/N] ")
        except (EOFError, KeyboardInterrupt):
            return True
        return answer.strip().lower() in {"y", "yes"}
