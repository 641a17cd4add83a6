"""Merge/dedup engine: folds node lists into one record per identity key."""

import logging
from dataclasses import replace

from pnl.models import Node, synthesize_key

logger = logging.getLogger(__name__)


def is_more_informative(incoming: Node, existing: Node) -> bool:
    """Return ``True`` if *incoming* should replace *existing*.

    Only two things count: a healthy status the existing record lacks, or a
    measured latency the existing record lacks.
    """
    if incoming.health == "healthy" and existing.health != "healthy":
        return True
    return incoming.latency_ms is not None and existing.latency_ms is None


def merge(nodes: list[Node]) -> list[Node]:
    """Collapse *nodes* to one record per identity key.

    Records are folded in list order; a later record wins only when
    ``is_more_informative`` says so.  The output keeps the position at
    which each key was first seen.

    Records with an empty key get a synthesized, non-authoritative key
    first (from the address, or ``unidentified-<n>`` without one) so they
    are never collapsed into each other.
    """
    merged: dict[str, Node] = {}
    unidentified = 0

    for node in nodes:
        if not node.key:
            if node.ip:
                key = synthesize_key(node.ip, node.port)
            else:
                unidentified += 1
                key = f"unidentified-{unidentified}"
            node = replace(node, key=key, authoritative=False)

        existing = merged.get(node.key)
        if existing is None or is_more_informative(node, existing):
            merged[node.key] = node

    if len(merged) != len(nodes):
        logger.debug("Merged %d record(s) into %d node(s)", len(nodes), len(merged))
    return list(merged.values())


def merge_all(*node_lists: list[Node]) -> list[Node]:
    """Merge several lists in the given order (cluster before direct)."""
    combined: list[Node] = []
    for nodes in node_lists:
        combined.extend(nodes)
    return merge(combined)
