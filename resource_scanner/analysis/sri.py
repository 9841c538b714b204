"""Subresource-integrity audit of script and stylesheet elements.

The audit only inspects the live DOM: an element "has SRI" when it
carries a non-empty ``integrity`` attribute.  Results are merged into
the captured resource list so that every persisted script/stylesheet
row knows whether it was integrity-protected.
"""

from __future__ import annotations

from collections.abc import Collection

from playwright import async_api

from resource_scanner.models import scan
from resource_scanner.utils import errors, logger, url

log = logger.create_logger("SRI")

SRI_AUDIT_SCRIPT = """() => {
    const split = (elements, attr) => {
        const withSri = [];
        const withoutSri = [];
        for (const el of elements) {
            const target = el[attr];
            if (!target) continue;
            const integrity = (el.getAttribute('integrity') || '').trim();
            (integrity ? withSri : withoutSri).push(target);
        }
        return { withSri, withoutSri };
    };
    const scripts = split(document.querySelectorAll('script[src]'), 'src');
    const styles = split(document.querySelectorAll('link[rel~="stylesheet"][href]'), 'href');
    return {
        scriptsWithSri: scripts.withSri,
        scriptsWithoutSri: scripts.withoutSri,
        stylesheetsWithSri: styles.withSri,
        stylesheetsWithoutSri: styles.withoutSri,
    };
}"""


async def audit(page: async_api.Page) -> scan.SriReport:
    """Run the integrity audit against the current page.

    A page that cannot be evaluated yields ``checked=False`` rather than
    failing the whole visit.
    """
    try:
        raw = await page.evaluate(SRI_AUDIT_SCRIPT)
        return scan.SriReport.model_validate({"checked": True, **raw})
    except (async_api.Error, ValueError, TypeError) as exc:
        log.warn("SRI audit failed", {"error": errors.get_error_message(exc)})
        return scan.SriReport(checked=False)


def annotate_resources(
    resources: list[scan.Resource],
    report: scan.SriReport | None,
    page_host: str,
    capture_types: Collection[str] | None = None,
) -> list[scan.Resource]:
    """Attach ``has_sri`` to scripts/stylesheets and add audited extras.

    Scripts and stylesheets listed by the audit without an integrity
    attribute are marked ``has_sri=False``, those with one ``True``;
    resources the audit never saw in the DOM keep ``None``.
    Audited elements the network capture never saw are appended with
    their external flag derived from *page_host*, limited to
    *capture_types* when given.
    """
    if report is None or not report.checked:
        return list(resources)

    without = set(report.scripts_without_sri) | set(report.stylesheets_without_sri)
    protected = set(report.scripts_with_sri) | set(report.stylesheets_with_sri)
    annotated: list[scan.Resource] = []
    for resource in resources:
        if resource.resource_type in ("script", "stylesheet"):
            if resource.url in without:
                resource = resource.model_copy(update={"has_sri": False})
            elif resource.url in protected:
                resource = resource.model_copy(update={"has_sri": True})
        annotated.append(resource)

    seen = {r.url for r in annotated}
    extras: list[tuple[str, scan.ResourceType, bool]] = [
        *((u, "script", False) for u in report.scripts_without_sri),
        *((u, "stylesheet", False) for u in report.stylesheets_without_sri),
        *((u, "script", True) for u in report.scripts_with_sri),
        *((u, "stylesheet", True) for u in report.stylesheets_with_sri),
    ]
    for resource_url, resource_type, has_sri in extras:
        if resource_url in seen:
            continue
        if capture_types is not None and resource_type not in capture_types:
            continue
        external = url.is_external(resource_url, page_host)
        if external is None:
            continue
        seen.add(resource_url)
        annotated.append(
            scan.Resource(
                url=resource_url,
                resource_type=resource_type,
                is_external=external,
                has_sri=has_sri,
            )
        )
    return annotated
