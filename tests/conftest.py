"""Shared fixtures for the test suite."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from resource_scanner.browser import pool as context_pool
from resource_scanner.models import dependencies, scan
from tests.fakes import FakeBrowser

# ── Fixtures ────────────────────────────────────────────────────


@pytest.fixture()
def fake_browser() -> FakeBrowser:
    return FakeBrowser()


@pytest.fixture()
def make_pool(fake_browser: FakeBrowser) -> Callable[..., context_pool.ContextPool]:
    """Factory for pools backed by ``fake_browser`` (no retry delay)."""

    def factory(size: int = 2, **kwargs: object) -> context_pool.ContextPool:
        kwargs.setdefault("retry_delay_ms", 0)
        return context_pool.ContextPool(size, browser=fake_browser, **kwargs)

    return factory


@pytest.fixture()
def sample_resources() -> list[scan.Resource]:
    return [
        scan.Resource(url="https://cdn.other.net/lib.js", resource_type="script", is_external=True),
        scan.Resource(url="https://example.com/app.js", resource_type="script", is_external=False),
        scan.Resource(url="https://fonts.other.net/site.css", resource_type="stylesheet", is_external=True),
    ]


@pytest.fixture()
def success_result(sample_resources: list[scan.Resource]) -> scan.ScanResult:
    return scan.ScanResult(
        domain="example.com",
        success=True,
        final_url="https://example.com/",
        resources=tuple(sample_resources),
    )


@pytest.fixture()
def failed_result() -> scan.ScanResult:
    return scan.ScanResult.failure("broken.example", "Navigation timeout of 10000ms exceeded", attempts=3)


@pytest.fixture()
def thresholds() -> dependencies.ClassifierThresholds:
    return dependencies.ClassifierThresholds()
