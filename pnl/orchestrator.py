"""Refresh orchestrator: runs discovery cycles and publishes snapshots."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import UTC, datetime
from typing import Literal

from pnl.aggregator import aggregate
from pnl.config import CLUSTER_ENDPOINTS, PnlConfig
from pnl.geoip import GeoEnricher
from pnl.merge import merge
from pnl.models import DiscoverySnapshot, Node, ProbeResult
from pnl.probes import get_probe
from pnl.rpc import RpcClient
from pnl.state import (
    DiscoveryState,
    StateStore,
    with_active_endpoint,
    with_custom_address,
    without_custom_address,
)
from pnl.store import NodeTable
from pnl.views import FilterCriteria, SortSpec, apply_view, default_order

logger = logging.getLogger(__name__)

Phase = Literal["idle", "discovering", "enriching", "settled_ok", "settled_error"]
STRATEGIES = ("auto", "cluster", "direct")

Listener = Callable[[DiscoverySnapshot], None]


class RefreshOrchestrator:
    """Owns the published snapshot and drives discovery cycles.

    A cycle runs cluster discovery, falls back to direct queries when that
    yields nothing, merges and publishes the nodes, computes statistics and
    then starts geo enrichment in the background.  ``refresh()`` returns as
    soon as the statistics are published.

    Discovery passes are single-flight: a ``refresh()`` issued while one is
    running waits for that pass instead of starting another.  A refresh
    issued during enrichment starts a new pass right away; the geo
    enricher keeps its requests serialized across cycles.

    Args:
        config: Application configuration.
        client: Open RPC client.
        state: Initial discovery state.
        store: Where endpoint and address changes are persisted; ``None``
            keeps them in memory only.
        enricher: Geo enricher; built from *config* when omitted.
        enrich: Run geo enrichment after discovery.
        strategy: ``"auto"`` (cluster, then direct), ``"cluster"`` or
            ``"direct"``.
        sleep: Coroutine used by the periodic timer (patched in tests).
    """

    def __init__(
        self,
        config: PnlConfig,
        client: RpcClient,
        state: DiscoveryState | None = None,
        store: StateStore | None = None,
        *,
        enricher: GeoEnricher | None = None,
        enrich: bool = True,
        strategy: str = "auto",
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown strategy {strategy!r}")
        self.config = config
        self.client = client
        self.state = state or DiscoveryState()
        self.store = store
        self.enricher = enricher or GeoEnricher(config, client.http)
        self.enrich_enabled = enrich
        self.strategy = strategy
        self.table = NodeTable()
        self.snapshot = DiscoverySnapshot()
        self.phase: Phase = "idle"
        self._sleep = sleep
        self._cycle = 0
        self._listeners: list[Listener] = []
        self._discovery: asyncio.Task[DiscoverySnapshot] | None = None
        self._enrichment: asyncio.Task[None] | None = None
        self._timer: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Listeners and views
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> None:
        """Call *listener* with the snapshot after every published change.

        Listeners also hear when a cycle settles after enrichment.  An
        exception raised by a listener is logged and does not reach the
        refresh loop.
        """
        self._listeners.append(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.snapshot)
            except Exception:
                logger.exception("Snapshot listener %r failed", listener)

    def view(
        self,
        criteria: FilterCriteria | None = None,
        sort: SortSpec | None = None,
    ) -> list[Node]:
        """Filtered, sorted copy of the published nodes."""
        return apply_view(self.snapshot.nodes, criteria, sort)

    # ------------------------------------------------------------------
    # User-controlled state
    # ------------------------------------------------------------------

    def set_endpoint(self, endpoint: str | None) -> None:
        self._apply_state(with_active_endpoint(self.state, endpoint))

    def add_custom_address(self, address: str) -> None:
        self._apply_state(with_custom_address(self.state, address))

    def remove_custom_address(self, address: str) -> None:
        self._apply_state(without_custom_address(self.state, address))

    def _apply_state(self, state: DiscoveryState) -> None:
        if state == self.state:
            return
        self.state = state
        if self.store is not None:
            self.store.save(state)

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def refresh(self) -> DiscoverySnapshot:
        """Run one discovery cycle, or join the one already running."""
        if self._discovery is None or self._discovery.done():
            self._discovery = asyncio.create_task(self._run_cycle())
        else:
            logger.debug("Discovery already in progress; joining it")
        return await asyncio.shield(self._discovery)

    async def wait_for_enrichment(self) -> None:
        """Wait until the latest background enrichment has finished."""
        if self._enrichment is not None:
            await self._enrichment

    async def _run_cycle(self) -> DiscoverySnapshot:
        self._cycle += 1
        cycle = self._cycle
        self.phase = "discovering"
        self.snapshot = replace(self.snapshot, connection_state="connecting", error=None)
        self._notify()
        logger.info("Starting discovery cycle %d", cycle)

        try:
            result = await self._discover()
        except Exception:
            logger.exception("Discovery cycle %d failed", cycle)
            return self._settle_error(cycle, "Discovery failed unexpectedly; see log")

        if result is None or not result.nodes:
            message = (result.error if result else None) or (
                "No nodes found: cluster endpoints failed and no known address responded"
            )
            return self._settle_error(cycle, message)

        nodes = default_order(merge(result.nodes))
        self.table.publish(nodes)
        self.snapshot = DiscoverySnapshot(
            nodes=self.table.nodes(),
            source=result.source,
            connection_state="connected",
            error=result.error,
            stats=aggregate(nodes),
            reachable_count=result.reachable_count,
            cycle=cycle,
            refreshed_at=datetime.now(UTC),
        )
        logger.info(
            "Cycle %d: %d node(s) from %s (%d healthy)",
            cycle,
            len(nodes),
            result.source,
            self.snapshot.stats.healthy,
        )

        if self.enrich_enabled:
            self.phase = "enriching"
            self._enrichment = asyncio.create_task(self._enrich(cycle))
        else:
            self.phase = "settled_ok"
        self._notify()
        return self.snapshot

    async def _discover(self) -> ProbeResult | None:
        result: ProbeResult | None = None

        if self.strategy in ("auto", "cluster"):
            result = await get_probe("cluster", self.client, self.config).run(self.state)
            if result is not None and result.endpoint:
                self.set_endpoint(result.endpoint)
            if result is not None and result.nodes:
                return result
            if self.strategy == "cluster":
                return result

        logger.info("Falling back to direct queries of known addresses")
        return await get_probe("direct", self.client, self.config).run(self.state)

    def _settle_error(self, cycle: int, message: str) -> DiscoverySnapshot:
        self.table.publish([])
        self.snapshot = DiscoverySnapshot(
            nodes=[],
            source=self.state.active_endpoint or f"{len(CLUSTER_ENDPOINTS)} endpoints",
            connection_state="error",
            error=message,
            cycle=cycle,
            refreshed_at=datetime.now(UTC),
        )
        self.phase = "settled_error"
        logger.warning("Cycle %d failed: %s", cycle, message)
        self._notify()
        return self.snapshot

    async def _enrich(self, cycle: int) -> None:
        try:
            await self.enricher.enrich(self.table, on_update=self._on_enriched)
        except Exception:
            logger.exception("Geo enrichment for cycle %d failed", cycle)
        if cycle == self._cycle and self.phase == "enriching":
            self.phase = "settled_ok"
            self._notify()

    def _on_enriched(self, node: Node) -> None:
        nodes = self.table.nodes()
        self.snapshot = replace(self.snapshot, nodes=nodes, stats=aggregate(nodes))
        self._notify()

    # ------------------------------------------------------------------
    # Periodic refresh
    # ------------------------------------------------------------------

    def start(self) -> asyncio.Task[None]:
        """Start the refresh loop: one refresh now, then every interval."""
        if self._timer is None or self._timer.done():
            self._timer = asyncio.create_task(self._run_periodic())
        return self._timer

    async def stop(self) -> None:
        """Cancel the running tasks, then release the geo backend."""
        for task in (self._timer, self._discovery, self._enrichment):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._timer = None
        self.enricher.close()

    async def _run_periodic(self) -> None:
        interval = self.config.refresh_interval
        await self.refresh()
        if interval <= 0:
            logger.info("Periodic refresh disabled")
            return
        while True:
            await self._sleep(interval)
            await self.refresh()
