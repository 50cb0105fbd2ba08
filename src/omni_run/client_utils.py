"""Console output for the runtime: log lines and the live text stream.

Log lines go to stderr with a timestamp and a colored level tag. Streamed text
tokens go to stdout on a single line; when a log line arrives mid-stream the
partial line is cleared, the log is printed and the line is restored.
"""

from __future__ import annotations

import os
import sys
import threading
import time
from dataclasses import dataclass
from typing import Optional, Union

_LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40}

_TAGS = {
    "debug": ("[DBUG]", "1;32"),
    "info": ("[INFO]", "1;34"),
    "warning": ("[WARN]", "1;33"),
    "error": ("[ERR ]", "1;31"),
}


def colorize(text: str, color: str) -> str:
    return f"\033[{color}m{text}\033[0m"


def _threshold() -> int:
    name = os.getenv("OMNI_LOG_LEVEL", "info").strip().lower()
    return _LEVELS.get(name, _LEVELS["info"])


def make_log_msg(level: str, msg: str) -> str:
    timestamp = time.strftime("%H:%M:%S")
    tag = _TAGS.get(level)
    prefix = colorize(*tag) if tag else f"[{level.upper()}]"
    return f"{colorize(timestamp, '90')} {prefix} {msg}"


class RawPrinter:
    """Printer for pipes and files: no line juggling."""

    def __init__(self, stream=sys.stdout):
        self.stream = stream
        self._lock = threading.Lock()

    def log(self, level: str, msg: str):
        with self._lock:
            print(make_log_msg(level, msg), file=sys.stderr)

    def print_token(self, token: str, color: Optional[str] = None):
        with self._lock:
            self.stream.write(token)
            self.stream.flush()

    def end_line(self):
        with self._lock:
            self.stream.write("\n")
            self.stream.flush()


@dataclass
class LineEntry:
    msg: str
    color: Optional[str] = None

    def render(self) -> str:
        return colorize(self.msg, self.color) if self.color else self.msg

    def __len__(self) -> int:
        return len(self.msg)


class Line:
    """The text line currently being streamed."""

    def __init__(self, stream):
        self.stream = stream
        self._entries: list[LineEntry] = []
        self._len = 0

    def add(self, msg: str, color: Optional[str] = None):
        entry = LineEntry(msg, color)
        self._entries.append(entry)
        self._len += len(msg)
        self.stream.write(entry.render())

    def clear(self):
        self.stream.write("\r" + " " * self._len + "\r")

    def restore(self):
        for entry in self._entries:
            self.stream.write(entry.render())

    def reset(self):
        self._entries.clear()
        self._len = 0


class Printer:
    """TTY printer that keeps the token stream readable around log lines."""

    def __init__(self, stream=sys.stdout):
        self.stream = stream
        self.line = Line(stream)
        self._lock = threading.Lock()

    def log(self, level: str, msg: str):
        with self._lock:
            self.line.clear()
            print(make_log_msg(level, msg), file=sys.stderr)
            self.line.restore()
            self.stream.flush()

    def print_token(self, token: str, color: Optional[str] = None):
        with self._lock:
            # Tokens may carry newlines; only the last line can be restored.
            if "\n" in token:
                head, _, tail = token.rpartition("\n")
                self.line.add(head + "\n", color)
                self.line.reset()
                if tail:
                    self.line.add(tail, color)
            else:
                self.line.add(token, color)
            self.stream.flush()

    def end_line(self):
        with self._lock:
            self.stream.write("\n")
            self.line.reset()
            self.stream.flush()


_printer: Optional[Union[Printer, RawPrinter]] = None


def get_logger() -> Union[Printer, RawPrinter]:
    global _printer
    if _printer is None:
        _printer = Printer() if sys.stdout.isatty() else RawPrinter()
    return _printer


def log(level: str, msg: str):
    if _LEVELS.get(level, _LEVELS["error"]) < _threshold():
        return
    get_logger().log(level, msg)
