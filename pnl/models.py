"""Data models: Node, Location, ProbeResult, NetworkStats, DiscoverySnapshot."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal

Health = Literal["healthy", "unhealthy", "unknown"]
NodeKind = Literal["target", "generic"]
ConnectionState = Literal["connecting", "connected", "error"]

DEFAULT_RPC_PORT = 9001


@dataclass(frozen=True)
class Location:
    """Result of a geo lookup for one IP address.

    Attributes:
        country: Country name.
        country_code: ISO 3166-1 alpha-2 country code.
        city: City name.
        latitude: Latitude in degrees.
        longitude: Longitude in degrees.
    """

    country: str | None = None
    country_code: str | None = None
    city: str | None = None
    latitude: float | None = None
    longitude: float | None = None


@dataclass
class Node:
    """One discovered network participant.

    Probes populate the discovery fields. The geo pipeline fills in
    ``location`` later, one node at a time.

    Attributes:
        key: Identity key (node pubkey, or a synthesized address key).
            Never changes once the record is stored.
        authoritative: ``False`` when ``key`` was synthesized from the
            address rather than reported by the node.
        version: Raw version string, if known.
        kind: ``"target"`` or ``"generic"``, derived from ``version`` only.
        health: ``"healthy"``, ``"unhealthy"`` or ``"unknown"``.
        latency_ms: Round-trip time of the call that determined ``health``.
        ip: Address used for direct queries and geo lookup.
        port: Port paired with ``ip`` (gossip port for cluster records).
        tpu_port: TPU port from the cluster record, if any.
        rpc_port: RPC port from the cluster record.
        feature_set: Feature-set identifier reported by the node.
        shred_version: Shred version reported by the node.
        location: Geo enrichment result; ``None`` until enriched.
        last_update: When the record was last mutated (UTC).
    """

    key: str
    authoritative: bool = True
    version: str | None = None
    kind: NodeKind = "generic"
    health: Health = "unknown"
    latency_ms: int | None = None
    ip: str | None = None
    port: int | None = None
    tpu_port: int | None = None
    rpc_port: int = DEFAULT_RPC_PORT
    feature_set: int | None = None
    shred_version: int | None = None
    location: Location | None = None
    last_update: datetime = field(
        default_factory=lambda: datetime.now(UTC),
    )

    @property
    def address(self) -> str | None:
        """``"ip:port"`` string, or ``None`` when either part is missing."""
        if not self.ip or not self.port:
            return None
        return f"{self.ip}:{self.port}"

    @property
    def is_target(self) -> bool:
        return self.kind == "target"


def synthesize_key(ip: str, port: int | None) -> str:
    """Build a non-authoritative identity key such as ``pnode-1-2-3-4-9001``."""
    return f"pnode-{ip.replace('.', '-')}-{port if port is not None else 0}"


def split_host_port(value: str | None) -> tuple[str | None, int | None]:
    """Split ``"ip:port"`` (or ``"[v6]:port"``) into its parts.

    Missing or unparseable parts come back as ``None``.
    """
    if not value:
        return None, None
    host, sep, port_text = value.rpartition(":")
    if not sep:
        return value, None
    host = host.strip("[]") or None
    try:
        port = int(port_text)
    except ValueError:
        port = None
    return host, port


@dataclass
class ProbeResult:
    """Result returned by every probe's ``run()`` method.

    Attributes:
        strategy: Name of the probe that produced the result
            (``"cluster"`` or ``"direct"``).
        nodes: Discovered nodes, in encounter order.
        source: Human-readable description of where the nodes came from.
        endpoint: Cluster endpoint that answered, if any.
        reachable_count: Number of queried addresses that answered at all.
        error: Diagnostic message when the probe degraded.
        meta: Optional extra information about the probe run.
    """

    strategy: str
    nodes: list[Node]
    source: str
    endpoint: str | None = None
    reachable_count: int = 0
    error: str | None = None
    meta: dict = field(default_factory=dict)


@dataclass
class NetworkStats:
    """Aggregate statistics over one snapshot.

    Attributes:
        total: Number of nodes.
        healthy: Number of healthy nodes.
        avg_latency_ms: Rounded mean latency over nodes with known latency,
            ``0`` when no node has one.
        target_count: Number of nodes classified as target nodes.
        version_distribution: ``(version, count)`` pairs sorted by count
            descending.
        country_distribution: ``(country_code, count)`` pairs sorted by count
            descending.
    """

    total: int = 0
    healthy: int = 0
    avg_latency_ms: int = 0
    target_count: int = 0
    version_distribution: list[tuple[str, int]] = field(default_factory=list)
    country_distribution: list[tuple[str, int]] = field(default_factory=list)

    @property
    def health_rate(self) -> float:
        """Percentage of healthy nodes (0 for an empty snapshot)."""
        if not self.total:
            return 0.0
        return self.healthy / self.total * 100


@dataclass
class DiscoverySnapshot:
    """The published state of one refresh cycle.

    Attributes:
        nodes: Node records in display order.
        source: Where the nodes came from (endpoint URL or address count).
        connection_state: ``"connecting"``, ``"connected"`` or ``"error"``.
        error: Diagnostic string, if the cycle degraded or failed.
        stats: Aggregate statistics.
        reachable_count: Direct-query addresses that answered.
        cycle: Monotonic cycle number assigned by the orchestrator.
        refreshed_at: When discovery for this cycle finished (UTC).
    """

    nodes: list[Node] = field(default_factory=list)
    source: str = ""
    connection_state: ConnectionState = "connecting"
    error: str | None = None
    stats: NetworkStats = field(default_factory=NetworkStats)
    reachable_count: int = 0
    cycle: int = 0
    refreshed_at: datetime | None = None
