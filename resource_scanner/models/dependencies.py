"""Pydantic models for the first/third/fourth-party dependency tree."""

from __future__ import annotations

from typing import Literal

import pydantic

from resource_scanner.utils.serialization import snake_to_camel

# high = confirmed by DOM-creation instrumentation,
# medium = inferred from request timing.
ConfidenceLevel = Literal["high", "medium"]

CreationSource = Literal["element", "attribute", "document.write"]


class _CamelModel(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(alias_generator=snake_to_camel, populate_by_name=True)


class ClassifierThresholds(_CamelModel):
    """Tunable constants for the timing heuristic.

    Calibrated empirically; they do not generalise to every site,
    which is why they are configurable.
    """

    model_config = pydantic.ConfigDict(
        alias_generator=snake_to_camel, populate_by_name=True, frozen=True
    )

    min_gap_ms: float = pydantic.Field(default=5.0, ge=0)
    max_gap_ms: float = pydantic.Field(default=300.0, gt=0)
    parent_types: tuple[str, ...] = ("script", "document", "iframe", "xhr", "fetch")
    leaf_extensions: tuple[str, ...] = (
        ".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".ico", ".bmp", ".avif",
        ".woff", ".woff2", ".ttf", ".otf", ".eot",
        ".mp4", ".webm", ".mp3", ".ogg", ".wav", ".m4a",
    )

    @pydantic.model_validator(mode="after")
    def _check_window(self) -> ClassifierThresholds:
        if self.max_gap_ms <= self.min_gap_ms:
            raise ValueError("max_gap_ms must be greater than min_gap_ms")
        return self


class RequestEvent(_CamelModel):
    """A network request observed during navigation."""

    url: str
    resource_type: str
    timestamp_ms: float
    is_main_document: bool = False


class CreationRecord(_CamelModel):
    """A resource URL observed being attached to the DOM by page script."""

    creators: list[str] = pydantic.Field(default_factory=list)
    timestamp_ms: float = 0.0
    resource_type: str | None = None
    source: CreationSource = "element"


class TreeResource(_CamelModel):
    """A resource placed in the first- or third-party tier."""

    url: str
    resource_type: str
    timestamp_ms: float | None = None


class FourthPartyResource(TreeResource):
    """A resource attributed to a third party, with how sure we are."""

    confidence: ConfidenceLevel
    parent_url: str | None = None


class DependencyTree(_CamelModel):
    """Ownership tiers reconstructed from one page visit."""

    page_url: str
    first_party_host: str
    first_party: list[TreeResource] = pydantic.Field(default_factory=list)
    third_party: dict[str, list[TreeResource]] = pydantic.Field(default_factory=dict)
    fourth_party: dict[str, dict[str, list[FourthPartyResource]]] = pydantic.Field(
        default_factory=dict
    )
    dynamic_creation: dict[str, CreationRecord] = pydantic.Field(default_factory=dict)

    def first_party_urls(self) -> set[str]:
        """URLs in the first-party tier."""
        return {r.url for r in self.first_party}

    def external_urls(self) -> set[str]:
        """URLs in any third- or fourth-party bucket."""
        urls = {r.url for bucket in self.third_party.values() for r in bucket}
        for children in self.fourth_party.values():
            urls.update(r.url for bucket in children.values() for r in bucket)
        return urls
