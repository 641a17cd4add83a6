"""Ad hoc checks against a single node, outside the refresh cycle."""

import logging
from dataclasses import dataclass

from pnl.models import Health, Node
from pnl.probes.direct import health_from_result, identity_from_result, version_from_result
from pnl.rpc import RpcClient

logger = logging.getLogger(__name__)

HEALTH_CHECK_TIMEOUT = 3.0
LATENCY_TIMEOUT = 5.0


@dataclass
class NodeInfo:
    """Version details fetched from one node."""

    version: str | None = None
    feature_set: int | None = None
    identity: str | None = None


async def check_health(client: RpcClient, node: Node) -> Health:
    """Re-run ``getHealth`` for *node*.

    Nodes without an IP keep their current health.
    """
    if not node.ip or not node.rpc_port:
        return node.health

    result, _ = await client.call(
        f"{node.ip}:{node.rpc_port}", "getHealth", timeout=HEALTH_CHECK_TIMEOUT
    )
    if result is None:
        return "unknown"
    return health_from_result(result)


async def measure_latency(client: RpcClient, node: Node) -> int | None:
    """Round-trip time of one ``getHealth`` call, or ``None`` without an answer."""
    if not node.ip or not node.rpc_port:
        return None

    result, elapsed = await client.call(
        f"{node.ip}:{node.rpc_port}", "getHealth", timeout=LATENCY_TIMEOUT
    )
    return elapsed if result is not None else None


async def fetch_node_info(client: RpcClient, ip: str | None, port: int | None) -> NodeInfo | None:
    """Ask a node for its version and identity.

    Returns:
        ``None`` if neither call answered.
    """
    if not ip or not port:
        return None

    address = f"{ip}:{port}"
    version_result, _ = await client.call(address, "getVersion")
    identity_result, _ = await client.call(address, "getIdentity")

    if not version_result and not identity_result:
        return None

    feature_set = version_result.get("feature-set") if isinstance(version_result, dict) else None
    return NodeInfo(
        version=version_from_result(version_result),
        feature_set=feature_set,
        identity=identity_from_result(identity_result),
    )


async def probe_connection(client: RpcClient, addresses: list[str]) -> bool:
    """Return ``True`` if one of the first three addresses answers.

    Each address gets ``getHealth`` and then ``getVersion``, 3 s apiece.
    """
    for address in addresses[:3]:
        result, _ = await client.call(address, "getHealth", timeout=HEALTH_CHECK_TIMEOUT)
        if result is not None:
            return True

        result, _ = await client.call(address, "getVersion", timeout=HEALTH_CHECK_TIMEOUT)
        if result is not None:
            return True

    logger.info("None of %d address(es) answered", min(len(addresses), 3))
    return False
