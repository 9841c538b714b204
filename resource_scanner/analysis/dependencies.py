"""
First/third/fourth-party classification of the resources a page loaded.

Rebuilds an ownership tree from an unordered request timeline and the
DOM-creation records produced by the page instrumentation:

1. Every resource whose host matches the page host (ignoring ``www.``)
   is first-party; every other host gets a provisional third-party
   bucket.
2. **High confidence** - a creation record whose first resolvable
   creator URL is on another external host turns the created resource
   into a fourth party of that creator's host.  A first-party creator
   makes the resource first-party, whatever its host.
3. **Medium confidence** - for resources without a high-confidence
   edge, a third-party script/document/iframe/xhr/fetch "parent" adopts
   requests on other external hosts that start shortly after it
   (``min_gap_ms`` < delta < ``max_gap_ms``).

This is a best-effort inference.  Every fourth-party entry carries its
confidence level, and without creation records only ``medium`` edges
can be produced.
"""

from __future__ import annotations

import collections
import dataclasses
from collections.abc import Iterable, Mapping

from resource_scanner.models import dependencies
from resource_scanner.utils import logger, url

log = logger.create_logger("Dependencies")


@dataclasses.dataclass
class _Edge:
    """Attribution of a resource to the third party that loaded it."""

    parent_host: str
    confidence: dependencies.ConfidenceLevel
    parent_url: str | None


def _first_resolvable_creator(creators: Iterable[str]) -> tuple[str, str] | None:
    """Return ``(url, host)`` of the first creator URL with a usable host."""
    for creator in creators:
        host = url.extract_host(creator)
        if host is not None:
            return creator, host
    return None


def _is_parent_candidate(
    resource: dependencies.TreeResource,
    thresholds: dependencies.ClassifierThresholds,
) -> bool:
    if resource.timestamp_ms is None:
        return False
    if resource.resource_type not in thresholds.parent_types:
        return False
    # Declared types can be wrong; a media/font/image extension means a leaf.
    return url.path_extension(resource.url) not in thresholds.leaf_extensions


def build_dependency_tree(
    page_url: str,
    requests: Iterable[dependencies.RequestEvent],
    creations: Mapping[str, dependencies.CreationRecord] | None = None,
    thresholds: dependencies.ClassifierThresholds | None = None,
) -> dependencies.DependencyTree:
    """Classify the resources observed during one page visit.

    Args:
        page_url: Final page URL after redirects (the first-party anchor).
        requests: Network requests with timestamps from navigation start.
        creations: DOM-creation records keyed by resource URL, or
            ``None`` when instrumentation was unavailable.
        thresholds: Timing-heuristic constants.

    Returns:
        The populated dependency tree.

    Raises:
        ValueError: If *page_url* has no resolvable host.
    """
    thresholds = thresholds or dependencies.ClassifierThresholds()
    page_host = url.extract_host(page_url)
    if page_host is None:
        raise ValueError(f"Cannot classify resources for page URL {page_url!r}")
    anchor = url.strip_www(page_host)

    def is_anchor(host: str) -> bool:
        return url.strip_www(host) == anchor

    # ── Collect resources (dedupe by URL, earliest request wins) ──
    resources: dict[str, dependencies.TreeResource] = {}
    hosts: dict[str, str] = {}

    for event in sorted(requests, key=lambda e: e.timestamp_ms):
        if event.is_main_document or event.url in resources:
            continue
        host = url.extract_host(event.url)
        if host is None:
            continue
        resources[event.url] = dependencies.TreeResource(
            url=event.url,
            resource_type=event.resource_type,
            timestamp_ms=event.timestamp_ms,
        )
        hosts[event.url] = host

    creation_records: dict[str, dependencies.CreationRecord] = {}
    for resource_url, record in (creations or {}).items():
        host = url.extract_host(resource_url)
        if host is None:
            continue
        creation_records[resource_url] = record
        if resource_url not in resources:
            # Created in the DOM but never seen on the wire (blocked,
            # still pending, or served from cache).
            resources[resource_url] = dependencies.TreeResource(
                url=resource_url,
                resource_type=record.resource_type or "other",
                timestamp_ms=None,
            )
            hosts[resource_url] = host

    forced_first: set[str] = set()
    edges: dict[str, _Edge] = {}

    # ── High-confidence pass: creation records ──
    for resource_url, record in creation_records.items():
        creator = _first_resolvable_creator(record.creators)
        if creator is None:
            continue
        creator_url, creator_host = creator
        resource_host = hosts[resource_url]

        if is_anchor(creator_host):
            forced_first.add(resource_url)
            continue
        if creator_host == resource_host or is_anchor(resource_host):
            continue
        edges[resource_url] = _Edge(creator_host, "high", creator_url)

    # ── Timing pass: medium confidence where no high edge exists ──
    timed = sorted(
        (r for r in resources.values() if r.timestamp_ms is not None),
        key=lambda r: r.timestamp_ms or 0.0,
    )

    def is_third_party(resource_url: str) -> bool:
        return (
            resource_url not in forced_first
            and resource_url not in edges
            and not is_anchor(hosts[resource_url])
        )

    for parent in timed:
        if not is_third_party(parent.url) or not _is_parent_candidate(parent, thresholds):
            continue
        parent_host = hosts[parent.url]
        start = (parent.timestamp_ms or 0.0) + thresholds.min_gap_ms
        end = (parent.timestamp_ms or 0.0) + thresholds.max_gap_ms

        for child in timed:
            child_ts = child.timestamp_ms or 0.0
            if child_ts <= start:
                continue
            if child_ts >= end:
                break
            if child.url == parent.url or not is_third_party(child.url):
                continue
            if hosts[child.url] == parent_host:
                continue
            edges[child.url] = _Edge(parent_host, "medium", parent.url)

    # ── Assemble the tree ──
    tree = dependencies.DependencyTree(page_url=page_url, first_party_host=anchor)
    third: dict[str, list[dependencies.TreeResource]] = collections.defaultdict(list)
    fourth: dict[str, dict[str, list[dependencies.FourthPartyResource]]] = collections.defaultdict(
        lambda: collections.defaultdict(list)
    )

    for resource_url, resource in resources.items():
        host = hosts[resource_url]
        if resource_url in forced_first or is_anchor(host):
            tree.first_party.append(resource)
        elif resource_url in edges:
            edge = edges[resource_url]
            fourth[edge.parent_host][host].append(
                dependencies.FourthPartyResource(
                    url=resource.url,
                    resource_type=resource.resource_type,
                    timestamp_ms=resource.timestamp_ms,
                    confidence=edge.confidence,
                    parent_url=edge.parent_url,
                )
            )
        else:
            third[host].append(resource)

    tree.third_party = {host: bucket for host, bucket in third.items() if bucket}
    tree.fourth_party = {
        parent: {child: bucket for child, bucket in children.items() if bucket}
        for parent, children in fourth.items()
        if any(children.values())
    }
    tree.dynamic_creation = creation_records

    log.debug(
        "Dependency tree built",
        {
            "page": page_host,
            "firstParty": len(tree.first_party),
            "thirdPartyHosts": len(tree.third_party),
            "fourthPartyParents": len(tree.fourth_party),
            "highEdges": sum(1 for e in edges.values() if e.confidence == "high"),
            "mediumEdges": sum(1 for e in edges.values() if e.confidence == "medium"),
            "reclassifiedFirstParty": len(forced_first),
        },
    )
    return tree
