"""
Pool of reusable Playwright browser contexts sharing one Chromium process.

Each context is borrowed by exactly one visit at a time.  Contexts are
reset (pages closed, cookies and permissions cleared) on release, and
recycled after ``max_uses`` borrowings to bound the memory held by
long-lived browser state.  A context that fails its liveness probe or
cannot be reset is destroyed and replaced; it is never handed out
again.

The pool tracks "slots": one per live context or per context being
created.  A slot freed by a failed replacement is handed to the
longest-waiting caller (who then creates its own context) so waiters
never hang on a shrinking pool.
"""

from __future__ import annotations

import asyncio
import collections
import contextlib
import dataclasses
import time
from collections.abc import AsyncIterator, Iterable

from playwright import async_api

from resource_scanner.utils import errors, logger, retry

log = logger.create_logger("ContextPool")

# ============================================================================
# Constants
# ============================================================================

DEFAULT_BLOCK_TYPES: tuple[str, ...] = ("image", "font", "media")
DEFAULT_MAX_USES = 50
CREATE_ATTEMPTS = 3

VIEWPORT = {"width": 1280, "height": 800}
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# Relaxed, low-overhead Chromium for unattended crawling: no sandbox,
# no background services, certificate errors ignored.
LAUNCH_ARGS: list[str] = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-web-security",
    "--disable-features=IsolateOrigins,site-per-process",
    "--disable-http2",
    "--disable-quic",
    "--disable-gpu",
    "--disable-software-rasterizer",
    "--disable-accelerated-2d-canvas",
    "--disable-extensions",
    "--disable-background-networking",
    "--disable-background-timer-throttling",
    "--disable-breakpad",
    "--disable-client-side-phishing-detection",
    "--disable-default-apps",
    "--disable-dev-shm-usage",
    "--disable-hang-monitor",
    "--disable-popup-blocking",
    "--disable-prompt-on-repost",
    "--disable-sync",
    "--disable-translate",
    "--metrics-recording-only",
    "--no-first-run",
    "--no-zygote",
    "--dns-prefetch-disable",
    "--ignore-certificate-errors",
]


@dataclasses.dataclass(eq=False)
class PooledContext:
    """A browser context owned by the pool.

    ``usage_count`` counts completed borrowings; it is always below the
    pool's ``max_uses`` when handed out.
    """

    id: int
    context: async_api.BrowserContext
    blocked_types: frozenset[str]
    usage_count: int = 0
    created_at: float = dataclasses.field(default_factory=time.monotonic)

    async def new_page(self) -> async_api.Page:
        """Open a new page in this context."""
        return await self.context.new_page()


class ContextPool:
    """
    Fixed-size pool of browser contexts with FIFO waiters.
    """

    def __init__(
        self,
        size: int,
        *,
        block_types: Iterable[str] = DEFAULT_BLOCK_TYPES,
        max_uses: int = DEFAULT_MAX_USES,
        headless: bool = True,
        browser: async_api.Browser | None = None,
        create_attempts: int = CREATE_ATTEMPTS,
        retry_delay_ms: int = 200,
    ) -> None:
        if size < 1:
            raise ValueError("Pool size must be at least 1")
        if max_uses < 1:
            raise ValueError("max_uses must be at least 1")

        self._size = size
        self._block_types = frozenset(block_types)
        self._max_uses = max_uses
        self._headless = headless
        self._create_attempts = max(1, create_attempts)
        self._retry_delay_ms = retry_delay_ms

        self._playwright: async_api.Playwright | None = None
        self._browser = browser

        self._lock = asyncio.Lock()
        self._idle: collections.deque[PooledContext] = collections.deque()
        self._waiters: collections.deque[asyncio.Future[PooledContext | None]] = collections.deque()
        self._live: set[PooledContext] = set()
        self._slots = 0
        self._next_id = 0
        self._closed = False

        self._created = 0
        self._recycled = 0
        self._replaced = 0

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def init(self) -> None:
        """Launch Chromium (unless a browser was injected) and fill the pool."""
        log.info(
            "Initialising context pool",
            {"size": self._size, "blockTypes": sorted(self._block_types), "maxUses": self._max_uses},
        )
        if self._browser is None:
            self._playwright = await async_api.async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self._headless,
                args=LAUNCH_ARGS,
            )

        for _ in range(self._size):
            self._slots += 1
            pooled = await self._ready(None)
            async with self._lock:
                self._put_back(pooled)
        log.success("Context pool ready", self.stats())

    async def close(self) -> None:
        """Destroy every context and the browser.  Safe to call twice."""
        if self._closed:
            return
        self._closed = True

        async with self._lock:
            while self._waiters:
                waiter = self._waiters.popleft()
                if not waiter.done():
                    waiter.set_exception(errors.PoolClosedError("Context pool closed"))
            self._idle.clear()

        for pooled in list(self._live):
            await self._destroy(pooled)
        self._slots = 0

        if self._browser is not None:
            try:
                await self._browser.close()
            except Exception as exc:
                log.debug("Browser close error (non-fatal)", {"error": errors.get_error_message(exc)})
            self._browser = None

        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as exc:
                log.debug("Playwright stop error (non-fatal)", {"error": errors.get_error_message(exc)})
            self._playwright = None

        log.info("Context pool closed", {"created": self._created, "recycled": self._recycled})

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def create_attempts(self) -> int:
        return self._create_attempts

    def stats(self) -> dict[str, object]:
        """Counters for logging and tests."""
        return {
            "size": self._size,
            "live": len(self._live),
            "idle": len(self._idle),
            "borrowed": len(self._live) - len(self._idle),
            "waiting": sum(1 for w in self._waiters if not w.done()),
            "created": self._created,
            "recycled": self._recycled,
            "replaced": self._replaced,
        }

    # ==========================================================================
    # Borrowing
    # ==========================================================================

    async def acquire(self) -> PooledContext:
        """Borrow a context, waiting (FIFO) when all are in use.

        Raises:
            ContextUnavailableError: No usable context after the retry bound.
            PoolExhaustedError: The pool has no live context left at all.
            PoolClosedError: The pool was closed.
        """
        while True:
            async with self._lock:
                if self._closed:
                    raise errors.PoolClosedError("Context pool closed")
                if self._idle:
                    pooled: PooledContext | None = self._idle.popleft()
                    break
                if self._slots < self._size:
                    self._slots += 1
                    pooled = None
                    break
                waiter: asyncio.Future[PooledContext | None] = asyncio.get_running_loop().create_future()
                self._waiters.append(waiter)

            try:
                pooled = await waiter
                break
            except asyncio.CancelledError:
                self._abandon(waiter)
                raise

        return await self._ready(pooled)

    async def release(self, pooled: PooledContext, *, faulted: bool = False) -> None:
        """Reset a borrowed context and return it to the pool.

        A context whose reset fails, or that the borrower reports as
        *faulted*, is destroyed and replaced.  Never raises: release
        runs on every visit's cleanup path.
        """
        if pooled not in self._live:
            return

        if not faulted:
            try:
                for page in list(pooled.context.pages):
                    with contextlib.suppress(async_api.Error):
                        await page.close()
                await pooled.context.clear_cookies()
                await pooled.context.clear_permissions()
                pooled.usage_count += 1
            except Exception as exc:
                log.warn(
                    "Context reset failed, replacing",
                    {"contextId": pooled.id, "error": errors.get_error_message(exc)},
                )
                faulted = True

        if faulted:
            await self._destroy(pooled)
            self._replaced += 1
            try:
                pooled = await self._ready(None)
            except errors.ContextUnavailableError as create_exc:
                log.error("Could not replace context", {"error": errors.get_error_message(create_exc)})
                return

        if self._closed:
            await self._destroy(pooled)
            return

        async with self._lock:
            self._put_back(pooled)

    @contextlib.asynccontextmanager
    async def borrow(self) -> AsyncIterator[PooledContext]:
        """Acquire a context for the duration of the block, always releasing it."""
        pooled = await self.acquire()
        try:
            yield pooled
        finally:
            await self.release(pooled)

    # ==========================================================================
    # Internals
    # ==========================================================================

    def _put_back(self, pooled: PooledContext) -> None:
        """Hand *pooled* to the longest waiter, or park it as idle."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(pooled)
                return
        self._idle.append(pooled)

    def _free_slot(self) -> None:
        """Give a slot to the longest waiter (who will create a context) or drop it."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._slots = max(0, self._slots - 1)

    def _abandon(self, waiter: asyncio.Future[PooledContext | None]) -> None:
        """Undo a cancelled wait, passing on anything handed to it."""
        with contextlib.suppress(ValueError):
            self._waiters.remove(waiter)
        if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
            handed = waiter.result()
            if handed is None:
                self._free_slot()
            else:
                self._put_back(handed)

    async def _route(self, route: async_api.Route) -> None:
        """Abort requests for blocked resource types."""
        if route.request.resource_type in self._block_types:
            await route.abort()
        else:
            await route.continue_()

    async def _create_context(self) -> PooledContext:
        if self._browser is None:
            raise errors.ContextFaultError("Browser not launched")

        context = await self._browser.new_context(
            viewport=VIEWPORT,
            user_agent=USER_AGENT,
            bypass_csp=True,
            ignore_https_errors=True,
        )
        try:
            if self._block_types:
                await context.route("**/*", self._route)
        except Exception:
            with contextlib.suppress(Exception):
                await context.close()
            raise

        self._next_id += 1
        self._created += 1
        pooled = PooledContext(id=self._next_id, context=context, blocked_types=self._block_types)
        self._live.add(pooled)
        log.debug("Context created", {"contextId": pooled.id})
        return pooled

    async def _destroy(self, pooled: PooledContext) -> None:
        self._live.discard(pooled)
        try:
            await pooled.context.close()
        except Exception as exc:
            log.debug("Context close error (non-fatal)", {"contextId": pooled.id, "error": errors.get_error_message(exc)})

    async def _ready(self, pooled: PooledContext | None) -> PooledContext:
        """Make sure the caller's slot holds a fresh, live context.

        Creates a context when *pooled* is ``None``, recycles one that
        hit the usage ceiling, and probes liveness.  Any failure
        destroys the context and tries again with a new one.
        """
        candidate = pooled

        async def attempt() -> PooledContext:
            nonlocal candidate
            try:
                if candidate is not None and candidate.usage_count >= self._max_uses:
                    log.debug("Recycling context", {"contextId": candidate.id, "uses": candidate.usage_count})
                    await self._destroy(candidate)
                    self._recycled += 1
                    candidate = None
                if candidate is None:
                    candidate = await self._create_context()
                # Liveness probe: a crashed context fails any protocol call.
                await candidate.context.cookies()
                return candidate
            except Exception:
                if candidate is not None:
                    await self._destroy(candidate)
                    self._replaced += 1
                    candidate = None
                raise

        try:
            return await retry.with_retry(
                attempt,
                max_attempts=self._create_attempts,
                initial_delay_ms=self._retry_delay_ms,
                give_up_on=(errors.PoolClosedError,),
                context="context-acquire",
            )
        except asyncio.CancelledError:
            # The caller's slot holds no usable context any more.
            if candidate is not None:
                await self._destroy(candidate)
            async with self._lock:
                self._free_slot()
            raise
        except Exception as exc:
            async with self._lock:
                self._free_slot()
                exhausted = self._slots == 0 and not self._live
            message = f"No usable browser context after {self._create_attempts} attempts: {errors.get_error_message(exc)}"
            if exhausted:
                raise errors.PoolExhaustedError(message) from exc
            raise errors.ContextUnavailableError(message) from exc
