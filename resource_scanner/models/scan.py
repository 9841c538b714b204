"""Pydantic models for scan tasks, captured resources and scan results."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal

import pydantic

from resource_scanner.models import dependencies as dependency_models
from resource_scanner.utils.serialization import snake_to_camel

ResourceType = Literal[
    "script",
    "stylesheet",
    "fetch",
    "xhr",
    "image",
    "font",
    "media",
    "websocket",
    "manifest",
    "other",
]

RESOURCE_TYPES: tuple[ResourceType, ...] = (
    "script",
    "stylesheet",
    "fetch",
    "xhr",
    "image",
    "font",
    "media",
    "websocket",
    "manifest",
    "other",
)

# Navigation completion policies: DOM-ready, full load, network idle.
WaitUntil = Literal["domcontentloaded", "load", "networkidle"]

ScreenshotFormat = Literal["png", "jpeg"]


class _CamelModel(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(
        alias_generator=snake_to_camel, populate_by_name=True, frozen=True
    )


class ScanOptions(_CamelModel):
    """Configuration snapshot applied to a single visit."""

    capture_types: tuple[ResourceType, ...] = ("script",)
    external_only: bool = True
    wait_until: WaitUntil = "domcontentloaded"
    timeout_ms: int = pydantic.Field(default=10000, gt=0)
    screenshot: bool = False
    screenshot_dir: str = "screenshots"
    screenshot_format: ScreenshotFormat = "png"
    screenshot_full_page: bool = False
    sri: bool = False
    dependencies: bool = False
    thresholds: dependency_models.ClassifierThresholds = pydantic.Field(
        default_factory=dependency_models.ClassifierThresholds
    )


class ScanTask(_CamelModel):
    """A domain queued for scanning together with its options."""

    domain: str
    options: ScanOptions = pydantic.Field(default_factory=ScanOptions)


class Resource(_CamelModel):
    """One captured resource load."""

    url: str
    resource_type: ResourceType
    is_external: bool
    has_sri: bool | None = None


class SriReport(_CamelModel):
    """Subresource-integrity audit of script and stylesheet elements."""

    checked: bool = True
    scripts_without_sri: list[str] = pydantic.Field(default_factory=list)
    stylesheets_without_sri: list[str] = pydantic.Field(default_factory=list)
    scripts_with_sri: list[str] = pydantic.Field(default_factory=list)
    stylesheets_with_sri: list[str] = pydantic.Field(default_factory=list)


class ScanResult(_CamelModel):
    """Outcome of one scan task.  Never modified after creation."""

    domain: str
    success: bool
    error: str | None = None
    final_url: str | None = None
    screenshot_path: str | None = None
    resources: tuple[Resource, ...] = ()
    sri: SriReport | None = None
    dependencies: dependency_models.DependencyTree | None = None
    attempts: int = 1
    scanned_at: datetime = pydantic.Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def failure(cls, domain: str, error: str, attempts: int = 1) -> ScanResult:
        """Build the record for a domain that could not be scanned."""
        return cls(domain=domain, success=False, error=error, attempts=attempts)


class CheckpointSnapshot(pydantic.BaseModel):
    """On-disk checkpoint: the domains already durably processed."""

    processed: list[str]
    timestamp: str
