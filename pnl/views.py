"""Read-only filtered and sorted views over a node list."""

from dataclasses import dataclass
from typing import Literal

from pnl.models import Node

HealthFilter = Literal["all", "healthy", "unhealthy", "unknown"]
SortKey = Literal["key", "latency", "health", "version", "kind", "country"]
SortOrder = Literal["asc", "desc"]

SORT_KEYS: tuple[str, ...] = ("key", "latency", "health", "version", "kind", "country")
HEALTH_FILTERS: tuple[str, ...] = ("all", "healthy", "unhealthy", "unknown")

# Lower rank sorts first in ascending order.
_HEALTH_RANK = {"healthy": 0, "unknown": 1, "unhealthy": 2}


@dataclass(frozen=True)
class FilterCriteria:
    """Which nodes a view shows.

    Attributes:
        search: Case-insensitive substring matched against key, version,
            city and IP.
        health: Keep only nodes with this health (``"all"`` keeps all).
        version: Substring the version must contain.
        target_only: Keep only target nodes.
        min_latency: Lower latency bound in ms; excludes unknown latency.
        max_latency: Upper latency bound in ms; excludes unknown latency.
    """

    search: str = ""
    health: HealthFilter = "all"
    version: str = ""
    target_only: bool = False
    min_latency: int | None = None
    max_latency: int | None = None


@dataclass(frozen=True)
class SortSpec:
    key: SortKey = "health"
    order: SortOrder = "asc"


def matches(node: Node, criteria: FilterCriteria) -> bool:
    """Return ``True`` if *node* passes every filter in *criteria*."""
    if criteria.search:
        needle = criteria.search.lower()
        haystack = [
            node.key.lower(),
            (node.version or "").lower(),
            (node.location.city or "").lower() if node.location else "",
            node.ip or "",
        ]
        if not any(needle in field for field in haystack):
            return False

    if criteria.health != "all" and node.health != criteria.health:
        return False

    if criteria.target_only and not node.is_target:
        return False

    if criteria.version and criteria.version not in (node.version or ""):
        return False

    if criteria.min_latency is not None or criteria.max_latency is not None:
        if node.latency_ms is None:
            return False
        if criteria.min_latency is not None and node.latency_ms < criteria.min_latency:
            return False
        if criteria.max_latency is not None and node.latency_ms > criteria.max_latency:
            return False

    return True


def _sort_value(node: Node, key: str) -> object:
    if key == "key":
        return node.key
    if key == "latency":
        return node.latency_ms
    if key == "health":
        return _HEALTH_RANK[node.health]
    if key == "version":
        return node.version
    if key == "kind":
        return 0 if node.is_target else 1
    if key == "country":
        return node.location.country_code if node.location else None
    raise ValueError(f"Unknown sort key: {key!r}")


def sort_nodes(nodes: list[Node], sort: SortSpec) -> list[Node]:
    """Return *nodes* sorted by *sort*; missing values always sort last."""
    present = [n for n in nodes if _sort_value(n, sort.key) is not None]
    missing = [n for n in nodes if _sort_value(n, sort.key) is None]
    present.sort(key=lambda n: _sort_value(n, sort.key), reverse=sort.order == "desc")
    return present + missing


def default_order(nodes: list[Node]) -> list[Node]:
    """Target nodes first, then healthy, unknown, unhealthy (stable)."""
    return sorted(nodes, key=lambda n: (0 if n.is_target else 1, _HEALTH_RANK[n.health]))


def apply_view(
    nodes: list[Node],
    criteria: FilterCriteria | None = None,
    sort: SortSpec | None = None,
) -> list[Node]:
    """Filter then sort *nodes* without touching the records themselves."""
    criteria = criteria or FilterCriteria()
    selected = [n for n in nodes if matches(n, criteria)]
    if sort is None:
        return selected
    return sort_nodes(selected, sort)
