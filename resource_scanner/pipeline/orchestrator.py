"""
Two-stage scan pipeline.

    input ──► scan queue ──► N scan workers ──► write queue ──► 1 writer ──► sink
                                                                    └──► checkpoint

The scan stage runs ``concurrency`` workers over a bounded queue of
``ScanTask``s; each visit is retried with backoff and always ends in a
``ScanResult`` (a failed one after the last attempt).  Exactly one
writer task drains the write queue in order, so the sink never sees
concurrent writes and the checkpoint is only mutated from one place.

Shutdown (signal, or a fatal error in either stage): the producer
stops, queued tasks are dropped, in-flight scans get
``drain_timeout_s`` to finish before they are cancelled, and every
result already produced is still written.
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
from collections.abc import Awaitable, Callable, Iterable

from resource_scanner.browser import capture
from resource_scanner.browser import pool as context_pool
from resource_scanner.models import scan
from resource_scanner.pipeline import checkpoint as checkpoint_store
from resource_scanner.pipeline import process
from resource_scanner.storage import sinks
from resource_scanner.utils import errors, logger, retry

log = logger.create_logger("Pipeline")

CaptureFn = Callable[[str, context_pool.ContextPool, scan.ScanOptions], Awaitable[scan.ScanResult]]

# Scan-queue slots per worker; bounds how far the producer reads ahead.
QUEUE_DEPTH_PER_WORKER = 2


class DomainState(enum.Enum):
    """Lifecycle of one domain through the pipeline."""

    PENDING = "pending"
    SCANNING = "scanning"
    SUCCESS = "success"
    FAILED = "failed"
    PERSISTING = "persisting"
    DONE = "done"


@dataclasses.dataclass
class RunSummary:
    """Totals reported when a run finishes."""

    read: int = 0
    skipped: int = 0
    scanned: int = 0
    succeeded: int = 0
    failed: int = 0
    persisted: int = 0
    write_errors: int = 0
    dropped: int = 0

    def as_dict(self) -> dict[str, object]:
        return dataclasses.asdict(self)


def normalise_domain(line: str) -> str | None:
    """Return the domain on an input line, or ``None`` for blanks and comments."""
    domain = line.strip()
    if not domain or domain.startswith("#"):
        return None
    return domain


class Pipeline:
    """Runs a list of domains through capture and into a sink."""

    def __init__(
        self,
        domains: Iterable[str],
        *,
        pool: context_pool.ContextPool,
        sink: sinks.ResultSink,
        process_context: process.ProcessContext,
        options: scan.ScanOptions,
        concurrency: int = 5,
        max_retries: int = 3,
        retry_delay_ms: int = 250,
        checkpoint: checkpoint_store.Checkpoint | None = None,
        drain_timeout_s: float = 5.0,
        capture_fn: CaptureFn = capture.capture,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._domains = domains
        self._pool = pool
        self._sink = sink
        self._process = process_context
        self._options = options
        self._concurrency = concurrency
        self._max_retries = max(1, max_retries)
        self._retry_delay_ms = retry_delay_ms
        # Non-persistent sinks bypass checkpointing.
        self._checkpoint = checkpoint if sink.persistent else None
        self._drain_timeout_s = drain_timeout_s
        self._capture = capture_fn

        self._scan_queue: asyncio.Queue[scan.ScanTask | None] = asyncio.Queue(
            maxsize=concurrency * QUEUE_DEPTH_PER_WORKER
        )
        self._write_queue: asyncio.Queue[scan.ScanResult | None] = asyncio.Queue()
        self._stop = asyncio.Event()
        self._fatal: BaseException | None = None
        self._store_failed = False

        self.summary = RunSummary()
        self.states: dict[str, DomainState] = {}

    # ==========================================================================
    # Run
    # ==========================================================================

    async def run(self) -> RunSummary:
        """Process every input domain (or until stopped).

        Raises:
            PoolExhaustedError: No browser context could be kept alive.
            StoreUnavailableError: The result store failed.
        """
        log.start_timer("run")
        producer = asyncio.create_task(self._produce(), name="producer")
        workers = [asyncio.create_task(self._work(i), name=f"scan-worker-{i}") for i in range(self._concurrency)]
        writer = asyncio.create_task(self._write(), name="writer")
        watcher = asyncio.create_task(self._watch_cancellation(), name="cancel-watcher")

        try:
            await self._wait_scan_stage(producer, workers)
        finally:
            for task in (producer, *workers):
                if not task.done():
                    task.cancel()
            await asyncio.gather(producer, *workers, return_exceptions=True)
            self._drop_queued()

            # Pending writes always finish.
            await self._write_queue.put(None)
            await writer

            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)

            if self._checkpoint is not None:
                try:
                    self._checkpoint.flush()
                except OSError as exc:
                    log.error("Final checkpoint flush failed", {"error": errors.get_error_message(exc)})

        log.end_timer("run", "Pipeline finished")
        log.info("Run summary", self.summary.as_dict())
        if self._fatal is not None:
            raise self._fatal
        return self.summary

    async def _wait_scan_stage(self, producer: asyncio.Task[None], workers: list[asyncio.Task[None]]) -> None:
        stop_waiter = asyncio.create_task(self._stop.wait())
        remaining: set[asyncio.Task[None]] = set(workers)
        try:
            while remaining and not self._stop.is_set():
                _, pending = await asyncio.wait(remaining | {stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
                remaining = {t for t in pending if t is not stop_waiter}
        finally:
            stop_waiter.cancel()

        if not remaining:
            return

        # Stop feeding and wake idle workers; busy ones exit after their scan.
        producer.cancel()
        await asyncio.gather(producer, return_exceptions=True)
        self._drop_queued()
        for _ in remaining:
            self._scan_queue.put_nowait(None)

        log.info("Draining in-flight scans", {"inFlight": len(remaining), "graceSeconds": self._drain_timeout_s})
        _, still_running = await asyncio.wait(remaining, timeout=self._drain_timeout_s)
        if still_running:
            log.warn("Cancelling scans that did not finish in time", {"count": len(still_running)})
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)

    async def _watch_cancellation(self) -> None:
        await self._process.wait_cancelled()
        self._request_stop()

    def _request_stop(self) -> None:
        if not self._stop.is_set():
            log.info("Stopping pipeline")
        self._stop.set()

    def _fail_fatal(self, exc: BaseException) -> None:
        if self._fatal is None:
            self._fatal = exc
            log.error("Fatal error, stopping pipeline", {"error": errors.get_error_message(exc)})
        self._request_stop()

    def _transition(self, domain: str, state: DomainState) -> None:
        if state is DomainState.DONE:
            self.states.pop(domain, None)
        else:
            self.states[domain] = state
        log.debug("Domain state", {"domain": domain, "state": state.value})

    def _drop_queued(self) -> None:
        dropped = 0
        while not self._scan_queue.empty():
            task = self._scan_queue.get_nowait()
            if task is not None:
                dropped += 1
                self.states.pop(task.domain, None)
        if dropped:
            self.summary.dropped += dropped
            log.warn("Dropped queued domains", {"count": dropped})

    # ==========================================================================
    # Stages
    # ==========================================================================

    async def _produce(self) -> None:
        """Feed the scan queue, skipping checkpointed and repeated domains."""
        seen: set[str] = set()
        for line in self._domains:
            if self._stop.is_set():
                break
            domain = normalise_domain(line)
            if domain is None:
                continue
            self.summary.read += 1
            if domain in seen or (self._checkpoint is not None and domain in self._checkpoint):
                self.summary.skipped += 1
                continue
            seen.add(domain)
            self._transition(domain, DomainState.PENDING)
            await self._scan_queue.put(scan.ScanTask(domain=domain, options=self._options))
        else:
            log.debug("Input exhausted", {"read": self.summary.read, "skipped": self.summary.skipped})
        for _ in range(self._concurrency):
            await self._scan_queue.put(None)

    async def _work(self, worker_id: int) -> None:
        while not self._stop.is_set():
            task = await self._scan_queue.get()
            if task is None:
                break
            if self._stop.is_set():
                self.summary.dropped += 1
                self.states.pop(task.domain, None)
                break

            self._transition(task.domain, DomainState.SCANNING)
            try:
                result = await self._scan(task)
            except errors.PoolExhaustedError as exc:
                self._fail_fatal(exc)
                break
            except errors.PoolClosedError:
                self.summary.dropped += 1
                self.states.pop(task.domain, None)
                break

            self.summary.scanned += 1
            if result.success:
                self.summary.succeeded += 1
                self._transition(task.domain, DomainState.SUCCESS)
                log.success(
                    "Scanned",
                    {"domain": task.domain, "resources": len(result.resources), "worker": worker_id},
                )
            else:
                self.summary.failed += 1
                self._transition(task.domain, DomainState.FAILED)
                log.error(
                    "Scan failed",
                    {"domain": task.domain, "attempts": result.attempts, "error": result.error},
                )
            await self._write_queue.put(result)

    async def _scan(self, task: scan.ScanTask) -> scan.ScanResult:
        """Capture *task* with retries; a failed result once attempts run out."""
        attempts = 0

        async def attempt() -> scan.ScanResult:
            nonlocal attempts
            attempts += 1
            result = await self._capture(task.domain, self._pool, task.options)
            return result.model_copy(update={"attempts": attempts})

        try:
            return await retry.with_retry(
                attempt,
                max_attempts=self._max_retries,
                initial_delay_ms=self._retry_delay_ms,
                give_up_on=(errors.PoolExhaustedError, errors.PoolClosedError),
                context=task.domain,
            )
        except (errors.PoolExhaustedError, errors.PoolClosedError):
            raise
        except Exception as exc:
            return scan.ScanResult.failure(task.domain, errors.get_error_message(exc), attempts=attempts)

    async def _write(self) -> None:
        """Single writer: sink first, checkpoint after the commit."""
        while True:
            result = await self._write_queue.get()
            if result is None:
                break
            if self._store_failed:
                # Left out of the checkpoint; rescanned on resume.
                continue

            self._transition(result.domain, DomainState.PERSISTING)
            try:
                await self._sink.write(result)
            except errors.StoreUnavailableError as exc:
                self._store_failed = True
                self._fail_fatal(exc)
                continue
            except errors.PersistenceError as exc:
                self.summary.write_errors += 1
                self.states.pop(result.domain, None)
                log.error("Write failed", {"domain": result.domain, "error": errors.get_error_message(exc)})
                continue
            except OSError as exc:
                self._store_failed = True
                self._fail_fatal(errors.StoreUnavailableError(f"Output failed: {exc}", domain=result.domain))
                continue

            self.summary.persisted += 1
            if self._checkpoint is not None:
                try:
                    self._checkpoint.add(result.domain)
                except OSError as exc:
                    log.warn("Checkpoint write failed", {"error": errors.get_error_message(exc)})
            self._transition(result.domain, DomainState.DONE)
