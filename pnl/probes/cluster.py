"""Cluster discovery probe: getClusterNodes against aggregator endpoints."""

import logging

from pnl.config import CLUSTER_ENDPOINTS, KNOWN_ADDRESSES
from pnl.models import DEFAULT_RPC_PORT, Health, Node, ProbeResult, split_host_port
from pnl.probes import Probe
from pnl.state import DiscoveryState
from pnl.version import classify, is_target_version

logger = logging.getLogger(__name__)

LIST_NODES_METHOD = "getClusterNodes"


def record_ip(entry: dict) -> str | None:
    """IP of a cluster record, from ``gossip`` or else ``rpc``."""
    ip, _ = split_host_port(entry.get("gossip"))
    if ip:
        return ip
    ip, _ = split_host_port(entry.get("rpc"))
    return ip


def node_from_record(entry: dict, health: Health = "healthy") -> Node:
    """Map one ``getClusterNodes`` entry to a ``Node``.

    The key is the entry's ``pubkey``, or ``""`` when absent; the merge
    engine assigns a synthesized key to such records.
    """
    gossip_ip, gossip_port = split_host_port(entry.get("gossip"))
    rpc_ip, rpc_port = split_host_port(entry.get("rpc"))
    _, tpu_port = split_host_port(entry.get("tpu"))
    version = entry.get("version") or None

    return Node(
        key=entry.get("pubkey") or "",
        version=version,
        kind=classify(version),
        health=health,
        latency_ms=None,
        ip=gossip_ip or rpc_ip,
        port=gossip_port if gossip_ip else rpc_port,
        tpu_port=tpu_port,
        rpc_port=rpc_port or DEFAULT_RPC_PORT,
        feature_set=entry.get("featureSet"),
        shred_version=entry.get("shredVersion"),
    )


class ClusterProbe(Probe):
    """Fetches the full node list from the first cluster endpoint that answers.

    Endpoints are tried one at a time: the active endpoint first, then the
    built-in list.  Entries are kept when their version has a target
    signature or their IP is one of the reference addresses.
    """

    name = "cluster"

    def endpoints(self, state: DiscoveryState) -> list[str]:
        """Endpoints in the order they are tried, without duplicates."""
        ordered: list[str] = []
        for endpoint in (state.active_endpoint, *CLUSTER_ENDPOINTS):
            if endpoint and endpoint not in ordered:
                ordered.append(endpoint)
        return ordered

    async def run(self, state: DiscoveryState) -> ProbeResult | None:
        """Query endpoints in order until one returns a node list.

        Returns:
            A ``ProbeResult`` naming the endpoint that answered, or
            ``None`` if every endpoint failed.
        """
        for endpoint in self.endpoints(state):
            result, elapsed = await self.client.call(
                endpoint,
                LIST_NODES_METHOD,
                timeout=self.config.cluster_timeout,
                use_relay=False,
            )
            if not isinstance(result, list):
                logger.debug("No usable node list from %s (%d ms)", endpoint, elapsed)
                continue

            logger.info("Got %d total nodes from %s", len(result), endpoint)
            entries = [e for e in result if isinstance(e, dict)]
            return ProbeResult(
                strategy=self.name,
                nodes=self.select(entries),
                source=endpoint,
                endpoint=endpoint,
                meta={"total_nodes": len(entries)},
            )

        logger.info("All %d cluster endpoints failed", len(self.endpoints(state)))
        return None

    def select(self, entries: list[dict]) -> list[Node]:
        """Pick target-version and known-IP entries, or all of them if none match."""
        known_ips = {address.split(":")[0] for address in KNOWN_ADDRESSES}
        by_version = [e for e in entries if is_target_version(e.get("version"))]
        by_address = [e for e in entries if record_ip(e) in known_ips]

        combined: dict[str, dict] = {}
        for entry in (*by_version, *by_address):
            pubkey = entry.get("pubkey")
            if pubkey:
                combined[pubkey] = entry

        logger.info(
            "Found %d target node(s) (%d by version, %d by known IP)",
            len(combined),
            len(by_version),
            len(by_address),
        )

        if not combined:
            # No signature or address matched; show the whole cluster
            # instead of an empty table.
            logger.info("No target nodes matched; returning all cluster nodes")
            return [node_from_record(e) for e in entries]

        return [node_from_record(e) for e in combined.values()]
