"""Direct-query probe: polls known pNode addresses in bounded batches."""

import asyncio
import logging
from dataclasses import dataclass, field

from pnl.models import DEFAULT_RPC_PORT, Health, Node, ProbeResult, split_host_port, synthesize_key
from pnl.probes import Probe
from pnl.probes.cluster import LIST_NODES_METHOD, node_from_record
from pnl.rpc import RpcReply
from pnl.state import DiscoveryState
from pnl.version import classify

logger = logging.getLogger(__name__)


def health_from_result(result: object) -> Health:
    """Interpret a non-null ``getHealth`` result."""
    if result == "ok":
        return "healthy"
    if isinstance(result, dict) and result.get("status") == "ok":
        return "healthy"
    return "unhealthy"


def version_from_result(result: object) -> str | None:
    if not isinstance(result, dict):
        return None
    return result.get("solana-core") or result.get("version") or None


def identity_from_result(result: object) -> str | None:
    if not isinstance(result, dict):
        return None
    return result.get("identity") or result.get("pubkey") or None


@dataclass
class AddressReport:
    """Everything learned from one polled address.

    Attributes:
        node: Record for the polled address itself.
        neighbors: Raw ``getClusterNodes`` entries returned by the node.
        reachable: Whether any of the four calls returned a result.
    """

    node: Node
    neighbors: list[dict] = field(default_factory=list)
    reachable: bool = False


class DirectProbe(Probe):
    """Queries every known address with four RPC methods.

    Addresses are processed in batches of ``config.batch_size``; each batch
    finishes before the next one starts.  Neighbor lists returned by the
    nodes are added without any version filtering.
    """

    name = "direct"

    async def run(self, state: DiscoveryState) -> ProbeResult:
        """Poll all reference and custom addresses.

        Returns:
            A ``ProbeResult`` whose ``reachable_count`` counts addresses that
            answered at all, with ``error`` set when none did.
        """
        addresses = state.all_addresses()
        batch_size = self.config.batch_size
        nodes: list[Node] = []
        seen: set[str] = set()
        reachable = 0

        for start in range(0, len(addresses), batch_size):
            batch = addresses[start : start + batch_size]
            logger.debug("Polling batch of %d address(es) from #%d", len(batch), start)
            reports = await asyncio.gather(*(self.poll(address) for address in batch))

            for report in reports:
                if report.reachable:
                    reachable += 1
                nodes.append(report.node)
                seen.add(report.node.key)

                for entry in report.neighbors:
                    pubkey = entry.get("pubkey")
                    if pubkey and pubkey not in seen:
                        nodes.append(node_from_record(entry, health="unknown"))
                        seen.add(pubkey)

        error = None
        if reachable == 0 and nodes:
            error = (
                f"Unable to reach any of the {len(addresses)} known pNodes. "
                "The RPC ports may be firewalled or require authentication."
            )
            logger.warning(error)

        logger.info(
            "Direct queries: %d/%d address(es) reachable, %d node(s)",
            reachable,
            len(addresses),
            len(nodes),
        )
        return ProbeResult(
            strategy=self.name,
            nodes=nodes,
            source=f"{len(addresses)} known pNodes",
            reachable_count=reachable,
            error=error,
        )

    async def poll(self, address: str) -> AddressReport:
        """Query one address with getHealth, getVersion, getIdentity and getClusterNodes.

        The four calls run concurrently and fail independently.
        """
        ip, port = split_host_port(address)
        ip = ip or address
        port = port or DEFAULT_RPC_PORT

        health_reply, version_reply, identity_reply, cluster_reply = await asyncio.gather(
            self.client.call(address, "getHealth"),
            self.client.call(address, "getVersion"),
            self.client.call(address, "getIdentity"),
            self.client.call(address, LIST_NODES_METHOD),
        )

        health: Health = "unknown"
        if health_reply.result is not None:
            health = health_from_result(health_reply.result)

        version = version_from_result(version_reply.result)
        identity = identity_from_result(identity_reply.result)
        neighbors = cluster_reply.result if isinstance(cluster_reply.result, list) else None

        if health == "unknown" and (
            version_reply.result or identity_reply.result or neighbors is not None
        ):
            health = "healthy"

        node = Node(
            key=identity or synthesize_key(ip, port),
            authoritative=identity is not None,
            version=version,
            kind=classify(version),
            health=health,
            latency_ms=_first_latency(health_reply, version_reply, identity_reply),
            ip=ip,
            port=port,
            rpc_port=port,
            feature_set=_feature_set(version_reply.result),
        )
        replies = (health_reply, version_reply, identity_reply, cluster_reply)
        return AddressReport(
            node=node,
            neighbors=[e for e in neighbors or [] if isinstance(e, dict)],
            reachable=any(r.result is not None for r in replies),
        )


def _first_latency(*replies: RpcReply) -> int | None:
    for reply in replies:
        if reply.result is not None:
            return reply.elapsed_ms
    return None


def _feature_set(result: object) -> int | None:
    if isinstance(result, dict):
        return result.get("feature-set")
    return None
