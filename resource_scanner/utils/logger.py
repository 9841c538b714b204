"""
Structured, coloured console logging for the scanner.

Every line carries a UTC timestamp, a level symbol, the emitting
component and optional ``key=value`` data.  Lines go to stderr, so
stdout stays free for JSON/CSV/text result output, and can be
mirrored (without colours) into a plain-text log file.

Named timers live in a ``contextvars.ContextVar``: each scan task gets
its own copy, so concurrent visits timing the same label don't clash.
"""

from __future__ import annotations

import contextvars
import pathlib
import re
import sys
import time
from datetime import UTC, datetime
from typing import NamedTuple, TextIO

# ============================================================================
# Styling
# ============================================================================

_RESET = "\033[0m"
_BRIGHT = "\033[1m"
_DIM = "\033[2m"
_RED = "\033[31m"
_GREEN = "\033[32m"
_YELLOW = "\033[33m"
_BLUE = "\033[34m"
_MAGENTA = "\033[35m"
_CYAN = "\033[36m"
_GRAY = "\033[90m"

_ANSI_RE = re.compile(r"\033\[[0-9;]*m")


class _Style(NamedTuple):
    rank: int
    colour: str
    symbol: str


_STYLES: dict[str, _Style] = {
    "debug": _Style(10, _GRAY, "•"),
    "timing": _Style(15, _MAGENTA, "⏱"),
    "info": _Style(20, _CYAN, "ℹ"),
    "success": _Style(20, _GREEN, "✓"),
    "warn": _Style(30, _YELLOW, "⚠"),
    "error": _Style(40, _RED, "✗"),
}

# Long strings in data fields are cut to this many characters.
_MAX_VALUE_CHARS = 300
_MAX_INLINE_ITEMS = 8

# ============================================================================
# Process-wide sinks
# ============================================================================

_threshold = _STYLES["info"].rank
_log_file: TextIO | None = None

_timers: contextvars.ContextVar[dict[str, tuple[float, str]] | None] = contextvars.ContextVar(
    "scanner_log_timers", default=None
)


def configure(level: str = "info", log_file: str | None = None) -> None:
    """Set the minimum level shown and optionally start a log file.

    Args:
        level: ``debug``, ``info``, ``warn`` or ``error``.
        log_file: Append ANSI-free copies of every line to this path.
    """
    global _threshold
    style = _STYLES.get(level.lower())
    _threshold = style.rank if style is not None else _STYLES["info"].rank
    if log_file:
        open_log_file(log_file)


def open_log_file(path: str) -> None:
    """Mirror log lines into *path* (appending), replacing any open file."""
    global _log_file
    close_log_file()

    target = pathlib.Path(path)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        handle = open(target, "a", encoding="utf-8")  # noqa: SIM115
    except OSError as exc:
        print(f"{_RED}✗ [Logger] Cannot open log file {target}: {exc}{_RESET}", file=sys.stderr)
        return

    rule = "=" * 80
    handle.write(f"\n{rule}\n  Scan Log\n  Started: {datetime.now(UTC).isoformat()}\n{rule}\n")
    _log_file = handle


def close_log_file() -> None:
    """Flush and close the log file, if one is open."""
    global _log_file
    handle, _log_file = _log_file, None
    if handle is None:
        return
    try:
        handle.close()
    except OSError as exc:
        print(f"{_YELLOW}⚠ [Logger] Log file not closed cleanly: {exc}{_RESET}", file=sys.stderr)


def _write_line(line: str) -> None:
    print(line, file=sys.stderr)
    if _log_file is not None:
        _log_file.write(_ANSI_RE.sub("", line) + "\n")
        _log_file.flush()


# ============================================================================
# Formatting helpers
# ============================================================================


def _clock() -> str:
    now = datetime.now(UTC)
    return f"{now:%H:%M:%S}.{now.microsecond // 1000:03d}"


def _format_duration(ms: float) -> str:
    """``250ms``, ``1.50s`` or ``1m 30.0s``."""
    if ms < 1000:
        return f"{int(ms)}ms"
    if ms < 60_000:
        return f"{ms / 1000:.2f}s"
    minutes, rest = divmod(ms, 60_000)
    return f"{int(minutes)}m {rest / 1000:.1f}s"


def _format_value(value: object) -> str:
    if value is None:
        return f"{_DIM}None{_RESET}"
    if isinstance(value, bool):
        return f"{_GREEN if value else _RED}{value}{_RESET}"
    if isinstance(value, (int, float)):
        return f"{_YELLOW}{value}{_RESET}"
    if isinstance(value, str):
        if len(value) > _MAX_VALUE_CHARS:
            value = value[: _MAX_VALUE_CHARS - 3] + "..."
        return f'{_GREEN}"{value}"{_RESET}'
    if isinstance(value, (list, tuple, set, frozenset)):
        items = list(value)
        if len(items) <= _MAX_INLINE_ITEMS and all(isinstance(v, str) for v in items):
            return f"{_CYAN}[{', '.join(items)}]{_RESET}"
        return f"{_CYAN}[{len(items)} items]{_RESET}"
    if isinstance(value, dict):
        return f"{_CYAN}{{{len(value)} keys}}{_RESET}"
    return str(value)


def _task_timers() -> dict[str, tuple[float, str]]:
    timers = _timers.get()
    if timers is None:
        timers = {}
        _timers.set(timers)
    return timers


# ============================================================================
# Logger
# ============================================================================


class Logger:
    """Logger bound to one component name, e.g. ``[ContextPool]``."""

    def __init__(self, context: str = "Scanner") -> None:
        self._context = context

    def _log(self, level: str, message: str, data: dict[str, object] | None = None) -> None:
        style = _STYLES[level]
        if style.rank < _threshold:
            return
        line = (
            f"{_GRAY}[{_clock()}]{_RESET} {style.colour}{style.symbol}{_RESET} "
            f"{_BRIGHT}[{self._context}]{_RESET} {message}"
        )
        if data:
            line += " " + " ".join(f"{_DIM}{key}={_RESET}{_format_value(val)}" for key, val in data.items())
        _write_line(line)

    def info(self, message: str, data: dict[str, object] | None = None) -> None:
        self._log("info", message, data)

    def success(self, message: str, data: dict[str, object] | None = None) -> None:
        self._log("success", message, data)

    def warn(self, message: str, data: dict[str, object] | None = None) -> None:
        self._log("warn", message, data)

    def error(self, message: str, data: dict[str, object] | None = None) -> None:
        self._log("error", message, data)

    def debug(self, message: str, data: dict[str, object] | None = None) -> None:
        self._log("debug", message, data)

    def start_timer(self, label: str) -> None:
        """Start timing *label* within the current task."""
        _task_timers()[f"{self._context}:{label}"] = (time.monotonic(), _clock())
        self._log("timing", f"Starting: {label}")

    def end_timer(self, label: str, message: str | None = None) -> float:
        """Log and return the milliseconds elapsed since :meth:`start_timer`.

        Returns 0.0 (with a warning) when the timer was never started.
        """
        entry = _task_timers().pop(f"{self._context}:{label}", None)
        if entry is None:
            self.warn(f'Timer "{label}" was not started')
            return 0.0
        started, started_at = entry
        elapsed_ms = (time.monotonic() - started) * 1000
        self._log(
            "timing",
            f"{message or f'Completed: {label}'} {_DIM}took{_RESET} "
            f"{_MAGENTA}{_format_duration(elapsed_ms)}{_RESET} {_DIM}(started {started_at}){_RESET}",
        )
        return elapsed_ms

    def section(self, title: str) -> None:
        """Print a banner separating the phases of a run."""
        rule = f"{_BLUE}{'─' * 60}{_RESET}"
        for line in ("", rule, f"{_BLUE}{_BRIGHT}  {title}{_RESET}", rule, ""):
            _write_line(line)


def create_logger(context: str) -> Logger:
    """Create a logger for a specific module."""
    return Logger(context)
