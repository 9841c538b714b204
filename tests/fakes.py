"""In-memory fakes of the Playwright surface used by the scanner."""

from __future__ import annotations

import asyncio
import dataclasses
import io
from collections.abc import Callable

from PIL import Image
from playwright import async_api


@dataclasses.dataclass
class FakeRequest:
    url: str
    resource_type: str
    frame: object = None
    navigation: bool = False

    def is_navigation_request(self) -> bool:
        return self.navigation


class FakePage:
    """Page that replays scripted requests when navigated."""

    def __init__(
        self,
        *,
        final_url: str | None = None,
        requests: list[tuple[str, str]] | None = None,
        dom_scripts: list[str] | None = None,
        dom_stylesheets: list[str] | None = None,
        sri: dict[str, list[str]] | None = None,
        creations: dict[str, dict] | None = None,
        goto_error: Exception | None = None,
    ) -> None:
        self.url = "about:blank"
        self.main_frame = object()
        self.final_url = final_url
        self.requests = requests or []
        self.dom_scripts = dom_scripts or []
        self.dom_stylesheets = dom_stylesheets or []
        self.sri = sri
        self.creations = creations or {}
        self.goto_error = goto_error
        self.handlers: dict[str, list[Callable]] = {}
        self.init_scripts: list[str] = []
        self.goto_calls: list[tuple[str, str, int]] = []
        self.closed = False

    def on(self, event: str, handler: Callable) -> None:
        self.handlers.setdefault(event, []).append(handler)

    def remove_listener(self, event: str, handler: Callable) -> None:
        self.handlers[event].remove(handler)

    async def add_init_script(self, script: str) -> None:
        self.init_scripts.append(script)

    def _emit(self, event: str, request: FakeRequest) -> None:
        for handler in list(self.handlers.get(event, [])):
            handler(request)

    async def goto(self, url: str, wait_until: str = "load", timeout: int = 30000) -> None:
        self.goto_calls.append((url, wait_until, timeout))
        if self.goto_error is not None:
            raise self.goto_error
        self.url = self.final_url or url
        document = FakeRequest(self.url, "document", frame=self.main_frame, navigation=True)
        self._emit("request", document)
        self._emit("requestfinished", document)
        for resource_url, resource_type in self.requests:
            request = FakeRequest(resource_url, resource_type, frame=self.main_frame)
            self._emit("request", request)
            self._emit("requestfinished", request)

    async def evaluate(self, expression: str) -> object:
        if "__resourceScannerCreations" in expression:
            return self.creations
        if "scriptsWithSri" in expression:
            if self.sri is None:
                raise async_api.Error("Execution context was destroyed")
            return self.sri
        if "script[src]" in expression:
            return list(self.dom_scripts)
        if "stylesheet" in expression:
            return list(self.dom_stylesheets)
        return None

    async def screenshot(self, type: str = "png", full_page: bool = False) -> bytes:
        return make_png()

    async def close(self) -> None:
        self.closed = True


class FakeContext:
    """Browser context with switchable failure modes."""

    def __init__(self, page_factory: Callable[[], FakePage] | None = None) -> None:
        self.page_factory = page_factory or FakePage
        self.pages: list[FakePage] = []
        self.closed = False
        self.dead = False
        self.fail_clear = False
        self.fail_new_page = False
        self.cleared = 0
        self.routes: list[tuple[str, Callable]] = []

    async def new_page(self) -> FakePage:
        if self.dead or self.fail_new_page:
            raise async_api.Error("Target closed")
        page = self.page_factory()
        self.pages.append(page)
        return page

    async def route(self, pattern: str, handler: Callable) -> None:
        self.routes.append((pattern, handler))

    async def cookies(self) -> list[dict]:
        if self.dead or self.closed:
            raise async_api.Error("Target page, context or browser has been closed")
        return []

    async def clear_cookies(self) -> None:
        if self.fail_clear or self.dead:
            raise async_api.Error("Browser has disconnected")
        self.cleared += 1

    async def clear_permissions(self) -> None:
        if self.fail_clear or self.dead:
            raise async_api.Error("Browser has disconnected")

    async def close(self) -> None:
        self.closed = True


class FakeBrowser:
    """Browser handing out FakeContexts; can be told to fail creation."""

    def __init__(self, page_factory: Callable[[], FakePage] | None = None) -> None:
        self.page_factory = page_factory
        self.contexts: list[FakeContext] = []
        self.context_kwargs: list[dict] = []
        self.fail_creates = 0
        self.broken_pages = False
        self.create_gate: asyncio.Event | None = None
        self.closed = False

    async def new_context(self, **kwargs: object) -> FakeContext:
        if self.create_gate is not None:
            await self.create_gate.wait()
        if self.fail_creates:
            self.fail_creates -= 1
            raise async_api.Error("Failed to create context")
        self.context_kwargs.append(kwargs)
        context = FakeContext(self.page_factory)
        context.fail_new_page = self.broken_pages
        self.contexts.append(context)
        return context

    async def close(self) -> None:
        self.closed = True


def make_png(width: int = 40, height: int = 20) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), (200, 30, 30)).save(buffer, format="PNG")
    return buffer.getvalue()
