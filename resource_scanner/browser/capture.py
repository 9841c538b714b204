"""
Single-visit resource capture.

Borrows a context from the pool, navigates to the domain and records
what the page loaded:

- finished requests bucketed by declared resource type (URL sets);
- ``script[src]`` / ``link[rel=stylesheet]`` re-derived from the live DOM,
  since elements injected before the listener attached, or served
  without an observable round-trip, never show up as finished requests;
- every request start with its offset from navigation start, plus the
  DOM-creation records, for the dependency classifier.

The context is released on every path; a visit can never leak one.
"""

from __future__ import annotations

import pathlib
import time

from playwright import async_api

from resource_scanner.analysis import dependencies as dependency_analysis
from resource_scanner.analysis import sri
from resource_scanner.browser import instrumentation
from resource_scanner.browser import pool as context_pool
from resource_scanner.models import dependencies, scan
from resource_scanner.utils import errors, image, logger, url

log = logger.create_logger("Capture")

_DOM_SCRIPTS = "() => Array.from(document.querySelectorAll('script[src]')).map((el) => el.src)"
_DOM_STYLESHEETS = (
    "() => Array.from(document.querySelectorAll('link[rel~=\"stylesheet\"][href]')).map((el) => el.href)"
)


class _RequestRecorder:
    """Collects request events from one page."""

    def __init__(self, page: async_api.Page, capture_types: tuple[str, ...]) -> None:
        self._page = page
        self._capture_types = capture_types
        self.by_type: dict[str, set[str]] = {t: set() for t in capture_types}
        self.timeline: list[dependencies.RequestEvent] = []
        self.navigation_start = time.monotonic()
        self.navigation_epoch_ms = time.time() * 1000
        self._tracking_timeline = False

    def mark_navigation_start(self) -> None:
        # Wall-clock twin of the monotonic origin, for in-page timestamps.
        self.navigation_start = time.monotonic()
        self.navigation_epoch_ms = time.time() * 1000

    def on_request(self, request: async_api.Request) -> None:
        """Record a request start for the classifier timeline."""
        try:
            is_main_document = request.is_navigation_request() and request.frame == self._page.main_frame
        except async_api.Error:
            # Service-worker requests have no frame.
            is_main_document = False
        self.timeline.append(
            dependencies.RequestEvent(
                url=request.url,
                resource_type=request.resource_type,
                timestamp_ms=(time.monotonic() - self.navigation_start) * 1000,
                is_main_document=is_main_document,
            )
        )

    def on_request_finished(self, request: async_api.Request) -> None:
        """Bucket a finished request by declared resource type."""
        bucket = self.by_type.get(request.resource_type)
        if bucket is not None:
            bucket.add(request.url)

    def attach(self, track_timeline: bool) -> None:
        self._page.on("requestfinished", self.on_request_finished)
        if track_timeline:
            self._page.on("request", self.on_request)
            self._tracking_timeline = True

    def detach(self) -> None:
        self._page.remove_listener("requestfinished", self.on_request_finished)
        if self._tracking_timeline:
            self._page.remove_listener("request", self.on_request)
            self._tracking_timeline = False


async def _navigate(page: async_api.Page, target: str, options: scan.ScanOptions) -> None:
    """Go to *target*, translating engine failures into navigation errors."""
    try:
        await page.goto(target, wait_until=options.wait_until, timeout=options.timeout_ms)
    except async_api.TimeoutError as exc:
        raise errors.NavigationTimeoutError(
            f"Navigation timeout of {options.timeout_ms}ms exceeded", url=target
        ) from exc
    except async_api.Error as exc:
        raise errors.NavigationError(errors.get_error_message(exc), url=target) from exc


async def _dom_urls(page: async_api.Page, expression: str) -> list[str]:
    try:
        result = await page.evaluate(expression)
    except async_api.Error as exc:
        log.debug("DOM query failed", {"error": errors.get_error_message(exc)})
        return []
    return [u for u in result if isinstance(u, str)] if isinstance(result, list) else []


def _build_resources(
    by_type: dict[str, set[str]],
    capture_types: tuple[scan.ResourceType, ...],
    final_host: str,
) -> list[scan.Resource]:
    """Label captured URLs external/internal, one resource per URL.

    Types are visited in capture order so the first declared type wins
    when a URL was seen under two types.
    """
    resources: list[scan.Resource] = []
    seen: set[str] = set()
    for resource_type in capture_types:
        for resource_url in sorted(by_type.get(resource_type, ())):
            if resource_url in seen:
                continue
            external = url.is_external(resource_url, final_host)
            if external is None:
                continue
            seen.add(resource_url)
            resources.append(
                scan.Resource(url=resource_url, resource_type=resource_type, is_external=external)
            )
    return resources


async def _take_screenshot(page: async_api.Page, domain: str, options: scan.ScanOptions) -> str | None:
    try:
        png_bytes = await page.screenshot(type="png", full_page=options.screenshot_full_page)
        path = image.save_screenshot(
            png_bytes,
            pathlib.Path(options.screenshot_dir),
            url.safe_filename(domain),
            options.screenshot_format,
        )
    except (async_api.Error, OSError, ValueError) as exc:
        log.warn("Screenshot failed", {"domain": domain, "error": errors.get_error_message(exc)})
        return None
    return str(path)


async def _open_page(
    pool: context_pool.ContextPool,
    domain: str,
) -> tuple[context_pool.PooledContext, async_api.Page]:
    """Borrow a context and open a page in it.

    A context that cannot open a page died after its liveness probe; it
    is handed back as faulted (the pool replaces it) and the next one is
    tried, up to the pool's creation bound.
    """
    last_error: async_api.Error | None = None
    for attempt in range(1, pool.create_attempts + 1):
        pooled = await pool.acquire()
        try:
            page = await pooled.new_page()
        except async_api.Error as exc:
            last_error = exc
            log.warn(
                "Context faulted opening a page, replacing",
                {"domain": domain, "contextId": pooled.id, "attempt": attempt, "error": errors.get_error_message(exc)},
            )
            await pool.release(pooled, faulted=True)
            continue
        except BaseException:
            await pool.release(pooled)
            raise
        return pooled, page

    raise errors.ContextUnavailableError(
        f"Could not open a page after {pool.create_attempts} contexts: {errors.get_error_message(last_error)}"
    ) from last_error


async def capture(
    domain: str,
    pool: context_pool.ContextPool,
    options: scan.ScanOptions,
) -> scan.ScanResult:
    """Visit *domain* and return everything it loaded.

    Raises:
        NavigationError: The page could not be loaded (including timeouts).
        ContextUnavailableError: No browser context could open a page, even
            after faulted contexts were replaced.
    """
    try:
        target = url.to_navigable_url(domain)
    except ValueError as exc:
        raise errors.NavigationError(str(exc)) from exc

    pooled, page = await _open_page(pool, domain)
    try:
        recorder = _RequestRecorder(page, options.capture_types)
        try:
            if options.dependencies:
                await instrumentation.install(page)
            recorder.attach(track_timeline=options.dependencies)

            log.debug("Navigating", {"domain": domain, "url": target, "waitUntil": options.wait_until})
            recorder.mark_navigation_start()
            await _navigate(page, target, options)

            final_url = page.url
            final_host = url.extract_host(final_url)
            if final_host is None:
                raise errors.NavigationError(f"Navigation ended on a non-web URL: {final_url}", url=target)
            if final_url != target:
                log.debug("Redirected", {"from": target, "to": final_url})

            if "script" in recorder.by_type:
                recorder.by_type["script"].update(await _dom_urls(page, _DOM_SCRIPTS))
            if "stylesheet" in recorder.by_type:
                recorder.by_type["stylesheet"].update(await _dom_urls(page, _DOM_STYLESHEETS))

            resources = _build_resources(recorder.by_type, options.capture_types, final_host)

            sri_report: scan.SriReport | None = None
            if options.sri:
                sri_report = await sri.audit(page)
                resources = sri.annotate_resources(resources, sri_report, final_host, options.capture_types)

            if options.external_only:
                resources = [r for r in resources if r.is_external]

            screenshot_path = await _take_screenshot(page, domain, options) if options.screenshot else None

            tree: dependencies.DependencyTree | None = None
            if options.dependencies:
                creations = await instrumentation.collect_creation_records(page, recorder.navigation_epoch_ms)
                tree = dependency_analysis.build_dependency_tree(
                    final_url,
                    list(recorder.timeline),
                    creations,
                    options.thresholds,
                )
        finally:
            recorder.detach()
            try:
                await page.close()
            except async_api.Error as exc:
                log.debug("Page close error (non-fatal)", {"error": errors.get_error_message(exc)})
    finally:
        await pool.release(pooled)

    log.debug(
        "Capture complete",
        {"domain": domain, "finalUrl": final_url, "resources": len(resources), "contextId": pooled.id},
    )
    return scan.ScanResult(
        domain=domain,
        success=True,
        final_url=final_url,
        screenshot_path=screenshot_path,
        resources=tuple(resources),
        sri=sri_report,
        dependencies=tree,
    )
