"""
Scanner configuration.

Centralises every tunable of a run: pool sizing, capture options,
classifier thresholds, output and checkpoint locations.

Uses ``pydantic_settings.BaseSettings`` for environment variable
binding (``SCANNER_`` prefix, ``.env`` loaded by the entry point
through ``python-dotenv``), type coercion and validation.  Command
line flags are passed as init arguments and override the environment.
"""

from __future__ import annotations

from typing import Annotated, Any

import pydantic
import pydantic_settings

from resource_scanner.models import dependencies, scan
from resource_scanner.storage import sinks
from resource_scanner.utils import errors, logger

log = logger.create_logger("Config")

DEFAULT_DB_PATH = "results.db"
DEFAULT_CHECKPOINT_PATH = "checkpoint.json"

LOG_LEVELS = ("debug", "info", "warn", "error")


def _split_list(value: Any) -> Any:
    """Accept ``"a, b"`` strings as well as sequences for list fields."""
    if isinstance(value, str):
        return tuple(part.strip().lower() for part in value.split(",") if part.strip())
    return value


class ScannerSettings(pydantic_settings.BaseSettings):
    """All settings of one scanner run.

    Attributes:
        concurrency: Number of scan workers.
        pool_size: Number of browser contexts (defaults to ``concurrency``).
        max_retries: Total attempts per domain.
        capture_types: Resource types to record.
        capture_all: Record every resource type (overrides ``capture_types``).
        block_types: Resource types aborted at the network layer.
        checkpoint_every: Checkpoint flush interval, in committed domains.
        drain_timeout_s: Grace period for in-flight scans on shutdown.
    """

    model_config = pydantic_settings.SettingsConfigDict(
        env_prefix="SCANNER_",
        extra="ignore",
        validate_default=True,
    )

    # ── Pipeline ────────────────────────────────────────────────
    concurrency: int = pydantic.Field(default=5, ge=1)
    pool_size: int | None = pydantic.Field(default=None, ge=1)
    max_retries: int = pydantic.Field(default=3, ge=1)
    retry_delay_ms: int = pydantic.Field(default=250, ge=0)
    drain_timeout_s: float = pydantic.Field(default=5.0, ge=0)

    # ── Capture ─────────────────────────────────────────────────
    capture_types: Annotated[tuple[scan.ResourceType, ...], pydantic_settings.NoDecode] = ("script",)
    capture_all: bool = False
    external_only: bool = True
    block_types: Annotated[tuple[scan.ResourceType, ...], pydantic_settings.NoDecode] = ("image", "font", "media")
    wait_until: scan.WaitUntil = "domcontentloaded"
    navigation_timeout_ms: int = pydantic.Field(default=10000, gt=0)
    max_context_uses: int = pydantic.Field(default=50, ge=1)
    headless: bool = True

    # ── Extras ──────────────────────────────────────────────────
    screenshot: bool = False
    screenshot_dir: str = "screenshots"
    screenshot_format: scan.ScreenshotFormat = "png"
    screenshot_full_page: bool = False
    sri: bool = False
    dependencies: bool = False
    min_gap_ms: float = pydantic.Field(default=5.0, ge=0)
    max_gap_ms: float = pydantic.Field(default=300.0, gt=0)

    # ── Output ──────────────────────────────────────────────────
    output: sinks.OutputFormat = "db"
    output_file: str | None = None
    db_path: str = DEFAULT_DB_PATH
    checkpoint_path: str = DEFAULT_CHECKPOINT_PATH
    resume: bool = False
    checkpoint_every: int = pydantic.Field(default=10, ge=1)

    # ── Logging ─────────────────────────────────────────────────
    log_level: str = "info"
    log_file: str | None = None

    @pydantic.field_validator("capture_types", "block_types", mode="before")
    @classmethod
    def _parse_type_list(cls, value: Any) -> Any:
        return _split_list(value)

    @pydantic.field_validator("log_level", mode="before")
    @classmethod
    def _check_log_level(cls, value: Any) -> Any:
        level = str(value).strip().lower()
        if level not in LOG_LEVELS:
            raise ValueError(f"log level must be one of {', '.join(LOG_LEVELS)}")
        return level

    @pydantic.model_validator(mode="after")
    def _check_consistency(self) -> ScannerSettings:
        if self.capture_all:
            self.capture_types = scan.RESOURCE_TYPES
        if not self.capture_types:
            raise ValueError("capture_types must name at least one resource type")
        if self.max_gap_ms <= self.min_gap_ms:
            raise ValueError("max_gap_ms must be greater than min_gap_ms")
        if self.pool_size is None:
            self.pool_size = self.concurrency
        return self

    @property
    def effective_pool_size(self) -> int:
        return self.pool_size or self.concurrency

    def to_scan_options(self) -> scan.ScanOptions:
        """Snapshot the per-visit options handed to every scan task."""
        return scan.ScanOptions(
            capture_types=self.capture_types,
            external_only=self.external_only,
            wait_until=self.wait_until,
            timeout_ms=self.navigation_timeout_ms,
            screenshot=self.screenshot,
            screenshot_dir=self.screenshot_dir,
            screenshot_format=self.screenshot_format,
            screenshot_full_page=self.screenshot_full_page,
            sri=self.sri,
            dependencies=self.dependencies,
            thresholds=dependencies.ClassifierThresholds(
                min_gap_ms=self.min_gap_ms,
                max_gap_ms=self.max_gap_ms,
            ),
        )


def load_settings(**overrides: Any) -> ScannerSettings:
    """Build settings from the environment plus explicit *overrides*.

    ``None`` overrides are ignored so unset CLI flags fall through to the
    environment and defaults.

    Raises:
        ConfigurationError: A value is missing or invalid.
    """
    values = {key: value for key, value in overrides.items() if value is not None}
    try:
        settings = ScannerSettings(**values)
    except (pydantic.ValidationError, pydantic_settings.SettingsError) as exc:
        raise errors.ConfigurationError(_describe_validation_error(exc)) from exc
    log.debug(
        "Settings loaded",
        {
            "concurrency": settings.concurrency,
            "poolSize": settings.effective_pool_size,
            "captureTypes": list(settings.capture_types),
            "output": settings.output,
        },
    )
    return settings


def _describe_validation_error(exc: Exception) -> str:
    if isinstance(exc, pydantic.ValidationError):
        problems = []
        for err in exc.errors():
            location = ".".join(str(part) for part in err["loc"]) or "settings"
            problems.append(f"{location}: {err['msg']}")
        return "Invalid configuration: " + "; ".join(problems)
    return f"Invalid configuration: {exc}"
