"""Tests for resource_scanner.analysis.sri: integrity audit and merge."""

from __future__ import annotations

import pytest

from resource_scanner.analysis import sri
from resource_scanner.models import scan
from tests.fakes import FakePage


def _report(**lists: list[str]) -> scan.SriReport:
    return scan.SriReport(checked=True, **lists)


class TestAnnotateResources:
    def test_marks_without_and_with(self, sample_resources: list[scan.Resource]) -> None:
        report = _report(
            scripts_without_sri=["https://cdn.other.net/lib.js"],
            stylesheets_with_sri=["https://fonts.other.net/site.css"],
        )
        annotated = {r.url: r for r in sri.annotate_resources(sample_resources, report, "example.com")}
        assert annotated["https://cdn.other.net/lib.js"].has_sri is False
        assert annotated["https://fonts.other.net/site.css"].has_sri is True

    def test_unaudited_script_stays_unknown(self, sample_resources: list[scan.Resource]) -> None:
        annotated = {r.url: r for r in sri.annotate_resources(sample_resources, _report(), "example.com")}
        assert annotated["https://example.com/app.js"].has_sri is None

    def test_non_script_types_untouched(self) -> None:
        image = scan.Resource(url="https://img.net/a.png", resource_type="image", is_external=True)
        report = _report(scripts_without_sri=["https://img.net/a.png"])
        [result, *_] = sri.annotate_resources([image], report, "example.com", capture_types=("image",))
        assert result.has_sri is None

    def test_extras_added_with_external_flag(self) -> None:
        report = _report(
            scripts_without_sri=["https://cdn.net/late.js", "https://example.com/local.js"],
        )
        added = {r.url: r for r in sri.annotate_resources([], report, "example.com")}
        assert added["https://cdn.net/late.js"].is_external is True
        assert added["https://cdn.net/late.js"].has_sri is False
        assert added["https://example.com/local.js"].is_external is False

    def test_extras_respect_capture_types(self) -> None:
        report = _report(stylesheets_without_sri=["https://cdn.net/a.css"])
        assert sri.annotate_resources([], report, "example.com", capture_types=("script",)) == []

    def test_extras_not_duplicated(self, sample_resources: list[scan.Resource]) -> None:
        report = _report(scripts_without_sri=["https://cdn.other.net/lib.js"])
        urls = [r.url for r in sri.annotate_resources(sample_resources, report, "example.com")]
        assert urls.count("https://cdn.other.net/lib.js") == 1

    def test_unchecked_report_is_noop(self, sample_resources: list[scan.Resource]) -> None:
        report = scan.SriReport(checked=False, scripts_without_sri=["https://cdn.other.net/lib.js"])
        assert sri.annotate_resources(sample_resources, report, "example.com") == sample_resources


class TestAudit:
    @pytest.mark.asyncio
    async def test_reads_page_lists(self) -> None:
        page = FakePage(
            sri={
                "scriptsWithSri": ["https://cdn.net/a.js"],
                "scriptsWithoutSri": [],
                "stylesheetsWithSri": [],
                "stylesheetsWithoutSri": ["https://cdn.net/a.css"],
            }
        )
        report = await sri.audit(page)
        assert report.checked is True
        assert report.scripts_with_sri == ["https://cdn.net/a.js"]
        assert report.stylesheets_without_sri == ["https://cdn.net/a.css"]

    @pytest.mark.asyncio
    async def test_evaluation_failure_is_unchecked(self) -> None:
        report = await sri.audit(FakePage(sri=None))
        assert report.checked is False
