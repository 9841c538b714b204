"""
Error taxonomy for the scan pipeline and consistent error message extraction.

Per-domain failures (navigation, a single unusable context, a
rejected write) are recorded and the batch continues.  Only
``PoolExhaustedError`` and ``StoreUnavailableError`` abort a run;
``ConfigurationError`` stops the process before any work begins.
"""


class ScannerError(Exception):
    """Base class for every error raised by the scanner."""


# ── Navigation ──────────────────────────────────────────────────


class NavigationError(ScannerError):
    """A page could not be loaded (DNS, TLS, HTTP or engine failure)."""

    def __init__(self, message: str, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class NavigationTimeoutError(NavigationError):
    """Navigation did not reach the completion policy within the timeout."""


# ── Browser contexts ────────────────────────────────────────────


class ContextFaultError(ScannerError):
    """A browser context crashed or became unusable."""


class ContextUnavailableError(ContextFaultError):
    """No usable context could be produced within the retry bound."""


class PoolExhaustedError(ContextUnavailableError):
    """The pool has no live contexts left and cannot create new ones."""


class PoolClosedError(ContextFaultError):
    """The pool was closed while a caller was waiting for a context."""


# ── Persistence ─────────────────────────────────────────────────


class PersistenceError(ScannerError):
    """A scan result could not be committed; the transaction was rolled back."""

    def __init__(self, message: str, domain: str | None = None) -> None:
        super().__init__(message)
        self.domain = domain


class StoreUnavailableError(PersistenceError):
    """The store itself cannot be used (unopenable, locked, I/O failure)."""


# ── Startup ─────────────────────────────────────────────────────


class ConfigurationError(ScannerError):
    """Missing or invalid configuration detected at startup."""


def get_error_message(error: BaseException | object) -> str:
    """
    Safely extract a human-readable message from an unknown error type.
    """
    if isinstance(error, BaseException):
        message = str(error).strip()
        if not message:
            return type(error).__name__
        # Playwright errors append a multi-line call log; keep the headline.
        return message.splitlines()[0]
    return "Unknown error"
