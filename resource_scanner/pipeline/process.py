"""
Process lifecycle: cancellation signal, OS signal handling, cleanup
callbacks and the exit code the run finishes with.

A single ``ProcessContext`` is created by the entry point and passed to
everything that needs to observe cancellation or register cleanup.
"""

from __future__ import annotations

import asyncio
import inspect
import signal
from collections.abc import Awaitable, Callable

from resource_scanner.utils import errors, logger

log = logger.create_logger("Process")

# ── Exit codes ──────────────────────────────────────────────────
EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2
EXIT_TERMINATED = 124
EXIT_INTERRUPTED = 130

_SIGNAL_EXIT_CODES = {
    "SIGTERM": EXIT_TERMINATED,
    "SIGINT": EXIT_INTERRUPTED,
}

CleanupCallback = Callable[[], Awaitable[None] | None]


class ProcessContext:
    """Cancellation state and cleanup registry for one scanner run."""

    def __init__(self) -> None:
        self._cancelled = asyncio.Event()
        self._signal_name: str | None = None
        self._cleanups: list[tuple[str, CleanupCallback]] = []
        self._cleaned_up = False
        self._installed: list[signal.Signals] = []

    # ── Cancellation ────────────────────────────────────────────

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def signal_name(self) -> str | None:
        """Name of the OS signal that cancelled the run, if any."""
        return self._signal_name

    def cancel(self, signal_name: str | None = None) -> None:
        """Request a graceful stop.  Only the first signal is remembered."""
        if signal_name and self._signal_name is None:
            self._signal_name = signal_name
        if not self._cancelled.is_set():
            log.warn("Shutdown requested", {"signal": signal_name or "internal"})
        self._cancelled.set()

    async def wait_cancelled(self) -> None:
        await self._cancelled.wait()

    @property
    def exit_code(self) -> int:
        """0 for a normal finish, 124 after SIGTERM, 130 after SIGINT."""
        if self._signal_name is None:
            return EXIT_OK
        return _SIGNAL_EXIT_CODES.get(self._signal_name, EXIT_FATAL)

    # ── Signals ─────────────────────────────────────────────────

    def install_signal_handlers(self) -> None:
        """Route SIGTERM and SIGINT to :meth:`cancel` on the running loop."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.cancel, sig.name)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform / not the main thread.
                log.debug("Signal handler not installed", {"signal": sig.name})
                continue
            self._installed.append(sig)

    def remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        while self._installed:
            loop.remove_signal_handler(self._installed.pop())

    # ── Cleanup ─────────────────────────────────────────────────

    def add_cleanup(self, name: str, callback: CleanupCallback) -> None:
        """Register *callback* to run at shutdown (last registered runs first)."""
        self._cleanups.append((name, callback))

    async def run_cleanup(self) -> None:
        """Run every registered callback once, in reverse order.

        Failures are logged; the remaining callbacks still run.
        """
        if self._cleaned_up:
            return
        self._cleaned_up = True

        while self._cleanups:
            name, callback = self._cleanups.pop()
            try:
                outcome = callback()
                if inspect.isawaitable(outcome):
                    await outcome
                log.debug("Cleanup done", {"resource": name})
            except Exception as exc:
                log.error("Cleanup failed", {"resource": name, "error": errors.get_error_message(exc)})
