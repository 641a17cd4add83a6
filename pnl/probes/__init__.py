"""Probe registry and abstract Probe base class."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pnl.config import PnlConfig
    from pnl.models import ProbeResult
    from pnl.rpc import RpcClient
    from pnl.state import DiscoveryState


class Probe(ABC):
    """Abstract base class for discovery strategies.

    Args:
        client: Open RPC client shared by all probes of a cycle.
        config: Loaded application configuration.
    """

    name: str = "probe"

    def __init__(self, client: RpcClient, config: PnlConfig) -> None:
        self.client = client
        self.config = config

    @abstractmethod
    async def run(self, state: DiscoveryState) -> ProbeResult | None:
        """Execute the probe and return results.

        Args:
            state: Current discovery state (active endpoint, custom
                addresses).

        Returns:
            A ``ProbeResult``, or ``None`` when the strategy could not
            produce any answer at all.
        """


def _build_registry() -> dict[str, type[Probe]]:
    """Build the strategy-name → Probe-class mapping.

    Imports are deferred to avoid circular imports and to keep the
    registry definition in one place.
    """
    from pnl.probes.cluster import ClusterProbe
    from pnl.probes.direct import DirectProbe

    return {
        "cluster": ClusterProbe,
        "direct": DirectProbe,
    }


def get_probe(strategy: str, client: RpcClient, config: PnlConfig) -> Probe:
    """Look up and instantiate the probe for *strategy*.

    Raises:
        ValueError: If *strategy* is not in the registry.
    """
    registry = _build_registry()
    probe_cls = registry.get(strategy)
    if probe_cls is None:
        known = ", ".join(sorted(registry))
        raise ValueError(f"Unknown strategy {strategy!r}. Known strategies: {known}")
    return probe_cls(client, config)


def registered_strategies() -> list[str]:
    """Return a sorted list of all registered strategy names."""
    return sorted(_build_registry())
