"""In-memory table of the published nodes, keyed by identity."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import UTC, datetime

from pnl.models import Location, Node

logger = logging.getLogger(__name__)


class NodeTable:
    """Published node set of the current snapshot.

    ``publish()`` replaces the whole set at the start of a cycle; every
    later change goes through ``update()``, which swaps a single entry by
    key so that concurrent writers never drop each other's entries.
    """

    def __init__(self) -> None:
        self._nodes: dict[str, Node] = {}
        self.generation = 0

    def publish(self, nodes: list[Node]) -> int:
        """Replace the table with *nodes* and return the new generation."""
        self._nodes = {node.key: node for node in nodes}
        self.generation += 1
        return self.generation

    def update(self, key: str, **changes: object) -> Node | None:
        """Replace the entry for *key* with a copy carrying *changes*.

        Returns the new record, or ``None`` if *key* is no longer published
        (e.g. a newer cycle replaced the table).
        """
        existing = self._nodes.get(key)
        if existing is None:
            logger.debug("Dropping update for unpublished node %s", key)
            return None
        updated = replace(existing, last_update=datetime.now(UTC), **changes)
        self._nodes[key] = updated
        return updated

    def set_location(self, key: str, location: Location) -> Node | None:
        return self.update(key, location=location)

    def get(self, key: str) -> Node | None:
        return self._nodes.get(key)

    def nodes(self) -> list[Node]:
        """Snapshot of the published nodes, in publish order."""
        return list(self._nodes.values())

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, key: object) -> bool:
        return key in self._nodes
