"""
p12relay.logger
~~~~~~~~~~~~~~~
Colourised console output plus an optional JSON-lines access log with
daily rotation.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Dict, Iterable, Optional, Tuple

LOGGER_NAME = "p12relay"

_ISO = "%Y-%m-%dT%H:%M:%SZ"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

RESET = "\033[0m"
DARK_GRAY = 90
CYAN = 36
LIGHT_YELLOW = 93
LIGHT_RED = 91

_COLORS = {
    logging.DEBUG: DARK_GRAY,
    logging.INFO: CYAN,
    logging.WARNING: LIGHT_YELLOW,
    logging.ERROR: LIGHT_RED,
}


def _now() -> str:  # RFC-3339 without microseconds
    return datetime.now(tz=timezone.utc).strftime(_ISO)


def parse_level(name: str) -> int:
    """Map debug/info/warn/error onto logging levels; anything else is INFO."""
    return _LEVELS.get((name or "").lower(), logging.INFO)


def colorize(code: int, text: str) -> str:
    return f"\033[{code}m{text}{RESET}"


class ColorFormatter(logging.Formatter):
    """ e.g. 2025-06-19 15:07:02,118 | DEBUG |   X-Trace: abc """

    def __init__(self, pretty: bool = True, verbose: bool = False):
        super().__init__()
        self.pretty = pretty
        self.verbose = verbose

    def format(self, record):  # type: ignore[override]
        line = record.getMessage()
        if self.verbose:
            line = f"{self.formatTime(record)} | {record.levelname} | {line}"
        if record.exc_info and record.levelno >= logging.ERROR:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        if self.pretty:
            code = _COLORS.get(record.levelno)
            if code is None and record.levelno > logging.ERROR:
                code = LIGHT_RED
            if code is not None:
                line = colorize(code, line)
        return line


class _JSONFormatter(logging.Formatter):
    def format(self, record):  # type: ignore[override]
        return json.dumps(record.msg, separators=(",", ":"))


def setup_logging(
    level: int = logging.INFO,
    pretty: bool = True,
    stream: Optional[IO[str]] = None,
) -> logging.Logger:
    """Configure the ``p12relay`` logger tree and return its root."""
    root = logging.getLogger(LOGGER_NAME)
    root.setLevel(level)
    root.propagate = False

    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()

    h = logging.StreamHandler(stream or sys.stdout)
    h.setFormatter(ColorFormatter(pretty=pretty, verbose=level <= logging.DEBUG))
    root.addHandler(h)
    return root


Header = Tuple[str, str]


class AccessLog:
    """Per-request events, written to the console logger and, when a path
    is given, as JSON lines to a midnight-rotated file."""

    def __init__(self, log: logging.Logger, path: str | Path | None = None):
        self.log = log
        self.records: Optional[logging.Logger] = None

        if path:
            records = logging.getLogger(f"{log.name}.access")
            records.setLevel(logging.INFO)
            records.propagate = False  # console already gets the summary lines

            for old in list(records.handlers):
                records.removeHandler(old)
                old.close()

            jsonl_file = Path(path).with_suffix(".jsonl")
            h = logging.handlers.TimedRotatingFileHandler(
                jsonl_file, when="midnight", backupCount=7, encoding="utf-8"
            )
            h.setFormatter(_JSONFormatter())
            records.addHandler(h)
            self.records = records

    def _record(self, event: Dict[str, Any]) -> None:
        if self.records is not None:
            self.records.info({"ts": _now(), **event})

    def info(self, msg: str) -> None:
        self.log.info(msg)

    def forwarding(self, method: str, uri: str, target: str) -> None:
        self.log.info(f"{method} {uri} -> {target}")
        self._record({"event": "start", "method": method, "uri": uri, "url": target})

    def completed(self, method: str, target: str, status: int, reason: str) -> None:
        self.log.info(f"{method} {target} -> {status} {reason}".rstrip())

    def finished(
        self, method: str, target: str, status: int, total_bytes: int, duration_ms: int
    ) -> None:
        self._record(
            {
                "event": "end",
                "method": method,
                "url": target,
                "status": status,
                "bytes": total_bytes,
                "ms": duration_ms,
            }
        )

    def headers(self, title: str, headers: Iterable[Header]) -> None:
        self.log.debug(title)
        for name, value in headers:
            self.log.debug(f"  {name}: {value}")

    def rejected(self, method: str, uri: str, status: int, reason: str) -> None:
        self.log.info(f"{method} {uri} -> {status} {reason}")
        self._record(
            {"event": "reject", "method": method, "uri": uri, "status": status, "reason": reason}
        )

    def failed(self, method: str, target: str, status: int, error: str) -> None:
        self.log.error(error)
        self._record(
            {"event": "error", "method": method, "url": target, "status": status, "error": error}
        )
