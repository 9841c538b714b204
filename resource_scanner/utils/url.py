"""
URL and host utility functions for resource capture and classification.
"""

from __future__ import annotations

import re
from urllib import parse

_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)


def to_navigable_url(domain: str) -> str:
    """Turn an input domain (or URL) into a URL the browser can open.

    Prefixes ``https://`` when no http(s) scheme is present.

    Raises:
        ValueError: If the input is empty or has no hostname.
    """
    raw = domain.strip()
    if not raw:
        raise ValueError("Empty domain")
    if not _SCHEME_RE.match(raw):
        raw = "https://" + raw
    parsed = parse.urlsplit(raw)
    if not parsed.hostname:
        raise ValueError(f"Invalid domain: {domain!r}")
    return parse.urlunsplit(parsed._replace(path=parsed.path or "/"))


def extract_host(url: str) -> str | None:
    """Return the lower-cased hostname of an http(s) URL.

    ``None`` for malformed URLs and for non-network schemes such as
    ``data:``, ``blob:`` or ``about:``.
    """
    try:
        parsed = parse.urlsplit(url)
    except ValueError:
        return None
    if parsed.scheme.lower() not in ("http", "https"):
        return None
    try:
        host = parsed.hostname
    except ValueError:
        return None
    return host.lower() if host else None


def strip_www(host: str) -> str:
    """Strip a single leading ``www.`` label."""
    return host.lower().removeprefix("www.")


def is_external(resource_url: str, page_host: str) -> bool | None:
    """Whether *resource_url* is served from a host other than *page_host*.

    Returns ``None`` when the resource URL cannot be resolved.
    """
    host = extract_host(resource_url)
    if host is None:
        return None
    return host != page_host.lower()


def path_extension(url: str) -> str:
    """Return the lower-cased file extension of the URL path (``""`` if none)."""
    try:
        path = parse.urlsplit(url).path
    except ValueError:
        return ""
    last = path.rsplit("/", 1)[-1]
    if "." not in last:
        return ""
    return "." + last.rsplit(".", 1)[-1].lower()


def safe_filename(domain: str, limit: int = 100) -> str:
    """Build a filesystem-safe name from a domain string."""
    safe = domain.strip().lower()
    safe = _SCHEME_RE.sub("", safe).removeprefix("www.")
    return "".join(c if c.isalnum() or c in ".-" else "_" for c in safe)[:limit] or "unnamed"
