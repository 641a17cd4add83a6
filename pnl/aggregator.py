"""Aggregator: node counts, mean latency, version and country distribution."""

import logging

from pnl.models import NetworkStats, Node

logger = logging.getLogger(__name__)


def aggregate(nodes: list[Node]) -> NetworkStats:
    """Compute aggregate statistics from a list of nodes.

    Args:
        nodes: Published nodes; location fields may still be empty.

    Returns:
        A ``NetworkStats`` with counts, the rounded mean latency over
        nodes that have one, and version / country distributions.
    """
    healthy = 0
    target = 0
    latencies: list[int] = []
    version_counts: dict[str, int] = {}
    country_counts: dict[str, int] = {}

    for node in nodes:
        if node.health == "healthy":
            healthy += 1
        if node.is_target:
            target += 1
        if node.latency_ms is not None:
            latencies.append(node.latency_ms)

        # Version distribution
        version = node.version or "unknown"
        version_counts[version] = version_counts.get(version, 0) + 1

        # Country distribution
        if node.location and node.location.country_code:
            code = node.location.country_code
            country_counts[code] = country_counts.get(code, 0) + 1

    avg_latency = round(sum(latencies) / len(latencies)) if latencies else 0

    return NetworkStats(
        total=len(nodes),
        healthy=healthy,
        avg_latency_ms=avg_latency,
        target_count=target,
        version_distribution=_sorted_desc(version_counts),
        country_distribution=_sorted_desc(country_counts),
    )


def _sorted_desc(counts: dict[str, int]) -> list[tuple[str, int]]:
    return sorted(counts.items(), key=lambda item: item[1], reverse=True)
