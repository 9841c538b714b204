"""
Command line entry point: scan a domain list and store what each page loads.

    resource-scanner --input domains.txt --db results.db --resume

Exit codes: 0 normal, 1 fatal runtime error, 2 configuration error,
124 terminated by SIGTERM, 130 interrupted by SIGINT.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import os
import pathlib
import sys
from collections.abc import Iterator

import dotenv
from playwright import async_api

from resource_scanner import config
from resource_scanner.browser import pool as context_pool
from resource_scanner.models import scan
from resource_scanner.pipeline import checkpoint as checkpoint_store
from resource_scanner.pipeline import orchestrator, process
from resource_scanner.storage import sinks
from resource_scanner.utils import errors, logger

log = logger.create_logger("Scanner")


def build_parser() -> argparse.ArgumentParser:
    """CLI flags.  Unset flags fall through to ``SCANNER_*`` env vars and defaults."""
    parser = argparse.ArgumentParser(
        prog="resource-scanner",
        description="Visit domains in a real browser and catalogue the resources each page loads",
    )
    source = parser.add_argument_group("input")
    source.add_argument("-i", "--input", help="File containing domains, one per line")
    source.add_argument("-d", "--domain", help="Single domain to scan (ignores --input)")

    store = parser.add_argument_group("storage")
    store.add_argument("--db", dest="db_path", help=f"SQLite DB file (default: {config.DEFAULT_DB_PATH})")
    store.add_argument(
        "-c", "--checkpoint", dest="checkpoint_path", help=f"Checkpoint file (default: {config.DEFAULT_CHECKPOINT_PATH})"
    )
    store.add_argument("--resume", action="store_true", default=None, help="Resume from an existing checkpoint")
    store.add_argument("--checkpoint-every", type=int, help="Flush the checkpoint every N committed domains")

    run = parser.add_argument_group("pipeline")
    run.add_argument("--concurrency", type=int, help="Number of concurrent scan workers (default: 5)")
    run.add_argument("--pool-size", type=int, help="Number of browser contexts to reuse (default: concurrency)")
    run.add_argument("--max-retries", type=int, help="Attempts per domain before recording a failure (default: 3)")
    run.add_argument("--max-context-uses", type=int, help="Recycle a browser context after N visits (default: 50)")
    run.add_argument("--drain-timeout", dest="drain_timeout_s", type=float, help="Seconds in-flight scans get on shutdown")
    run.add_argument("--headless", action=argparse.BooleanOptionalAction, default=None, help="Run Chromium headless")

    capture = parser.add_argument_group("capture")
    capture.add_argument(
        "--capture-types",
        help=f"Comma-separated resource types to capture ({','.join(scan.RESOURCE_TYPES)})",
    )
    capture.add_argument("--capture-all", action="store_true", default=None, help="Capture all resource types")
    capture.add_argument(
        "--external-only",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Only keep resources from other hosts (default: on)",
    )
    capture.add_argument("--block-types", help="Comma-separated resource types to block (default: image,font,media)")
    capture.add_argument("--wait-until", choices=("domcontentloaded", "load", "networkidle"))
    capture.add_argument("--timeout", dest="navigation_timeout_ms", type=int, help="Navigation timeout in ms")

    extras = parser.add_argument_group("extras")
    extras.add_argument("--screenshot", action="store_true", default=None, help="Save a screenshot of each page")
    extras.add_argument("--screenshot-dir", help="Directory for screenshots (default: screenshots)")
    extras.add_argument("--screenshot-format", choices=("png", "jpeg"))
    extras.add_argument("--full-page", dest="screenshot_full_page", action="store_true", default=None)
    extras.add_argument("--sri", action="store_true", default=None, help="Audit subresource integrity")
    extras.add_argument(
        "--dependencies", action="store_true", default=None, help="Classify first/third/fourth-party resources"
    )

    output = parser.add_argument_group("output")
    output.add_argument("--output", choices=("db", "json", "csv", "text"), help="Result sink (default: db)")
    output.add_argument("--output-file", help="File for json/csv/text output (default: stdout)")
    output.add_argument("--log-level", choices=config.LOG_LEVELS)
    output.add_argument("--log-file", help="Also write log lines to this file")
    return parser


_SETTING_FLAGS = (
    "db_path",
    "checkpoint_path",
    "resume",
    "checkpoint_every",
    "concurrency",
    "pool_size",
    "max_retries",
    "max_context_uses",
    "drain_timeout_s",
    "headless",
    "capture_types",
    "capture_all",
    "external_only",
    "block_types",
    "wait_until",
    "navigation_timeout_ms",
    "screenshot",
    "screenshot_dir",
    "screenshot_format",
    "screenshot_full_page",
    "sri",
    "dependencies",
    "output",
    "output_file",
    "log_level",
    "log_file",
)


def settings_from_args(args: argparse.Namespace) -> config.ScannerSettings:
    """Merge CLI flags over the environment.

    Raises:
        ConfigurationError: Missing input or an invalid value.
    """
    if not args.input and not args.domain:
        raise errors.ConfigurationError("Provide --input <file> or --domain <domain>")
    if not args.domain:
        path = pathlib.Path(args.input)
        if not path.is_file() or not os.access(path, os.R_OK):
            raise errors.ConfigurationError(f"Input file not found or unreadable: {args.input}")
    return config.load_settings(**{flag: getattr(args, flag) for flag in _SETTING_FLAGS})


@contextlib.contextmanager
def open_domains(input_path: str | None, domain: str | None) -> Iterator[Iterator[str]]:
    """Yield the input domains, reading the file lazily."""
    if domain:
        yield iter([domain])
        return
    assert input_path is not None
    with open(input_path, encoding="utf-8", errors="replace") as fh:
        yield iter(fh)


def _print_summary(
    summary: orchestrator.RunSummary,
    settings: config.ScannerSettings,
    checkpoint: checkpoint_store.Checkpoint | None,
) -> None:
    log.section("Scan complete")
    log.info("Domains", {"read": summary.read, "skipped": summary.skipped, "dropped": summary.dropped})
    log.info("Scans", {"succeeded": summary.succeeded, "failed": summary.failed})
    log.info("Writes", {"persisted": summary.persisted, "errors": summary.write_errors})
    if settings.output == "db":
        log.info(
            "Storage",
            {
                "database": settings.db_path,
                "checkpoint": settings.checkpoint_path,
                "inCheckpoint": len(checkpoint) if checkpoint is not None else 0,
            },
        )
    elif settings.output_file:
        log.info("Output", {"file": settings.output_file})


async def run(
    settings: config.ScannerSettings,
    *,
    input_path: str | None = None,
    domain: str | None = None,
    process_context: process.ProcessContext | None = None,
) -> int:
    """Run one scan session and return the process exit code."""
    ctx = process_context or process.ProcessContext()
    ctx.install_signal_handlers()

    sink = sinks.create_sink(settings.output, db_path=settings.db_path, output_file=settings.output_file)
    checkpoint = (
        checkpoint_store.Checkpoint(settings.checkpoint_path, flush_every=settings.checkpoint_every)
        if sink.persistent
        else None
    )
    pool = context_pool.ContextPool(
        settings.effective_pool_size,
        block_types=settings.block_types,
        max_uses=settings.max_context_uses,
        headless=settings.headless,
    )

    log.section("Resource Scanner")
    log.info(
        "Configuration",
        {
            "source": domain or input_path,
            "concurrency": settings.concurrency,
            "poolSize": settings.effective_pool_size,
            "captureTypes": list(settings.capture_types),
            "blockTypes": list(settings.block_types),
            "externalOnly": settings.external_only,
            "output": settings.output,
        },
    )

    exit_code = process.EXIT_OK
    try:
        sink.open()
        ctx.add_cleanup("sink", sink.close)
        if checkpoint is not None:
            checkpoint.load(settings.resume)

        ctx.add_cleanup("browser pool", pool.close)
        await pool.init()

        with open_domains(input_path, domain) as domains:
            pipeline = orchestrator.Pipeline(
                domains,
                pool=pool,
                sink=sink,
                process_context=ctx,
                options=settings.to_scan_options(),
                concurrency=settings.concurrency,
                max_retries=settings.max_retries,
                retry_delay_ms=settings.retry_delay_ms,
                checkpoint=checkpoint,
                drain_timeout_s=settings.drain_timeout_s,
            )
            summary = await pipeline.run()
        _print_summary(summary, settings, checkpoint)
    except (errors.ScannerError, async_api.Error, OSError) as exc:
        log.error("Run aborted", {"error": errors.get_error_message(exc), "type": type(exc).__name__})
        exit_code = process.EXIT_FATAL
    finally:
        await ctx.run_cleanup()
        ctx.remove_signal_handlers()

    if ctx.signal_name is not None:
        return ctx.exit_code
    return exit_code


def main(argv: list[str] | None = None) -> int:
    dotenv.load_dotenv()
    args = build_parser().parse_args(argv)

    try:
        settings = settings_from_args(args)
    except errors.ConfigurationError as exc:
        log.error("Configuration error", {"error": str(exc)})
        return process.EXIT_CONFIG

    logger.configure(settings.log_level, settings.log_file)
    try:
        return asyncio.run(run(settings, input_path=args.input, domain=args.domain))
    finally:
        logger.close_log_file()


if __name__ == "__main__":
    sys.exit(main())
