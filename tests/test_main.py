"""Tests for resource_scanner.main: CLI parsing, exit codes and a full run on fakes."""

from __future__ import annotations

import json
import pathlib
from collections.abc import Iterator
from unittest import mock

import pytest

from resource_scanner import config, main
from resource_scanner.browser import pool as context_pool
from resource_scanner.pipeline import process
from tests.fakes import FakeBrowser, FakePage


@pytest.fixture(autouse=True)
def isolated_env() -> Iterator[None]:
    """No ``SCANNER_*`` variables and no ``.env`` file leak into a test."""
    with mock.patch.dict("os.environ", {}, clear=True), mock.patch.object(main.dotenv, "load_dotenv"):
        yield


@pytest.fixture()
def domains_file(tmp_path: pathlib.Path) -> pathlib.Path:
    path = tmp_path / "domains.txt"
    path.write_text("example.com\n\n# skipped\nother.org\n")
    return path


def _pool_factory(browser: FakeBrowser):
    real_pool = context_pool.ContextPool

    def factory(size: int, **kwargs: object) -> context_pool.ContextPool:
        return real_pool(size, browser=browser, retry_delay_ms=0, **kwargs)

    return factory


# ── Argument parsing ────────────────────────────────────────────


class TestParser:
    def test_unset_flags_are_none(self) -> None:
        args = main.build_parser().parse_args(["--input", "d.txt"])
        assert all(getattr(args, flag) is None for flag in main._SETTING_FLAGS)

    def test_boolean_pairs(self) -> None:
        args = main.build_parser().parse_args(["-d", "a.com", "--no-headless", "--no-external-only", "--resume"])
        assert args.headless is False
        assert args.external_only is False
        assert args.resume is True

    def test_flags_map_to_settings(self, domains_file: pathlib.Path) -> None:
        args = main.build_parser().parse_args(
            ["-i", str(domains_file), "--concurrency", "40", "--capture-types", "script,xhr", "--timeout", "5000"]
        )
        settings = main.settings_from_args(args)
        assert settings.concurrency == 40
        assert settings.pool_size == 40
        assert settings.capture_types == ("script", "xhr")
        assert settings.navigation_timeout_ms == 5000


class TestOpenDomains:
    def test_single_domain(self) -> None:
        with main.open_domains(None, "example.com") as domains:
            assert list(domains) == ["example.com"]

    def test_file_lines(self, domains_file: pathlib.Path) -> None:
        with main.open_domains(str(domains_file), None) as domains:
            assert [line.strip() for line in domains] == ["example.com", "", "# skipped", "other.org"]


# ── Exit codes ──────────────────────────────────────────────────


class TestMainExitCodes:
    def test_missing_input(self) -> None:
        assert main.main([]) == process.EXIT_CONFIG

    def test_unreadable_input(self, tmp_path: pathlib.Path) -> None:
        assert main.main(["--input", str(tmp_path / "nope.txt")]) == process.EXIT_CONFIG

    def test_invalid_value(self) -> None:
        assert main.main(["--domain", "a.com", "--concurrency", "0"]) == process.EXIT_CONFIG

    def test_returns_run_code(self) -> None:
        with mock.patch.object(main, "run", new=mock.AsyncMock(return_value=process.EXIT_TERMINATED)) as run:
            assert main.main(["--domain", "a.com"]) == process.EXIT_TERMINATED
        settings = run.call_args.args[0]
        assert isinstance(settings, config.ScannerSettings)
        assert run.call_args.kwargs["domain"] == "a.com"


# ── Full run on a fake browser ──────────────────────────────────


class TestRun:
    @pytest.mark.asyncio
    async def test_json_output(self, tmp_path: pathlib.Path, domains_file: pathlib.Path) -> None:
        browser = FakeBrowser(lambda: FakePage(requests=[("https://cdn.net/x.js", "script")]))
        output = tmp_path / "results.jsonl"
        settings = config.load_settings(output="json", output_file=str(output), concurrency=2)

        with mock.patch.object(main.context_pool, "ContextPool", _pool_factory(browser)):
            code = await main.run(settings, input_path=str(domains_file))

        assert code == process.EXIT_OK
        records = {r["domain"]: r for r in map(json.loads, output.read_text().splitlines())}
        assert set(records) == {"example.com", "other.org"}
        assert records["example.com"]["resources"][0]["url"] == "https://cdn.net/x.js"
        assert browser.closed is True

    @pytest.mark.asyncio
    async def test_db_output_and_checkpoint(self, tmp_path: pathlib.Path) -> None:
        settings = config.load_settings(
            db_path=str(tmp_path / "scan.db"), checkpoint_path=str(tmp_path / "checkpoint.json")
        )
        with mock.patch.object(main.context_pool, "ContextPool", _pool_factory(FakeBrowser())):
            code = await main.run(settings, domain="example.com")

        assert code == process.EXIT_OK
        assert json.loads((tmp_path / "checkpoint.json").read_text())["processed"] == ["example.com"]

    @pytest.mark.asyncio
    async def test_pool_failure_is_fatal(self, tmp_path: pathlib.Path) -> None:
        browser = FakeBrowser()
        browser.fail_creates = 100
        settings = config.load_settings(output="json", output_file=str(tmp_path / "out.jsonl"))

        with mock.patch.object(main.context_pool, "ContextPool", _pool_factory(browser)):
            code = await main.run(settings, domain="example.com")

        assert code == process.EXIT_FATAL

    @pytest.mark.asyncio
    async def test_signal_code_wins(self, tmp_path: pathlib.Path) -> None:
        ctx = process.ProcessContext()
        ctx.cancel("SIGTERM")
        settings = config.load_settings(output="json", output_file=str(tmp_path / "out.jsonl"))

        with mock.patch.object(main.context_pool, "ContextPool", _pool_factory(FakeBrowser())):
            code = await main.run(settings, domain="example.com", process_context=ctx)

        assert code == process.EXIT_TERMINATED
