"""Shared serialization helpers for camelCase output.

Provides the ``snake_to_camel`` alias generator used by the
Pydantic models, so JSON output matches the column naming of
the SQLite schema (``finalUrl``, ``isExternal``, ``hasSri``).
"""

from __future__ import annotations

import pydantic


def snake_to_camel(name: str) -> str:
    """Convert a snake_case string to camelCase.

    Args:
        name: A snake_case identifier such as ``"final_url"``.

    Returns:
        The camelCase equivalent, e.g. ``"finalUrl"``.
    """
    parts = name.split("_")
    return parts[0] + "".join(w.capitalize() for w in parts[1:])


def to_output_dict(model: pydantic.BaseModel) -> dict[str, object]:
    """Dump a model to a JSON-compatible dict keyed by camelCase aliases."""
    return model.model_dump(mode="json", by_alias=True)
