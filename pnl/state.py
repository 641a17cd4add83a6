"""Persisted discovery state: active endpoint and custom addresses."""

import logging
from dataclasses import dataclass, replace
from pathlib import Path

import httpx
import yaml

from pnl.config import KNOWN_ADDRESSES, ConfigError, PnlConfig
from pnl.models import split_host_port

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiscoveryState:
    """User-controlled discovery state shared by the probes.

    Instances are immutable; the ``with_*`` helpers return updated copies.

    Attributes:
        active_endpoint: Most recently successful cluster endpoint, tried
            first on the next cycle.
        custom_addresses: User-added ``host:port`` addresses for direct
            queries, in insertion order.
    """

    active_endpoint: str | None = None
    custom_addresses: tuple[str, ...] = ()

    def all_addresses(self) -> list[str]:
        """Reference addresses followed by custom addresses."""
        return [*KNOWN_ADDRESSES, *self.custom_addresses]


def check_address(address: str) -> str:
    """Return *address* stripped of whitespace.

    Raises:
        ValueError: Unless *address* is ``host:port`` with a valid port.
    """
    address = address.strip()
    host, port = split_host_port(address)
    if not host or port is None or not 0 < port < 65536:
        raise ValueError(f"Invalid address {address!r}: expected host:port")
    return address


def check_endpoint(endpoint: str) -> str:
    """Return *endpoint* stripped; it must be an http(s) URL or ``host:port``.

    Raises:
        ValueError: If httpx cannot parse the URL or it has no host.
    """
    endpoint = endpoint.strip()
    if "://" not in endpoint:
        return check_address(endpoint)
    try:
        url = httpx.URL(endpoint)
    except httpx.InvalidURL as exc:
        raise ValueError(f"Invalid endpoint {endpoint!r}: {exc}") from exc
    if url.scheme not in ("http", "https") or not url.host:
        raise ValueError(f"Invalid endpoint {endpoint!r}: expected an http(s) URL")
    return endpoint


def with_active_endpoint(state: DiscoveryState, endpoint: str | None) -> DiscoveryState:
    """Set or, for an empty value, clear the active endpoint."""
    if not endpoint or not endpoint.strip():
        return replace(state, active_endpoint=None)
    return replace(state, active_endpoint=check_endpoint(endpoint))


def with_custom_address(state: DiscoveryState, address: str) -> DiscoveryState:
    """Add *address* unless it is already custom or a reference address.

    Raises:
        ValueError: If *address* is not ``host:port``.
    """
    address = check_address(address)
    if address in state.custom_addresses or address in KNOWN_ADDRESSES:
        return state
    return replace(state, custom_addresses=(*state.custom_addresses, address))


def without_custom_address(state: DiscoveryState, address: str) -> DiscoveryState:
    return replace(
        state,
        custom_addresses=tuple(a for a in state.custom_addresses if a != address),
    )


class StateStore:
    """YAML-file store for ``DiscoveryState``.

    The file holds two keys, ``active_endpoint`` and ``custom_addresses``.
    A missing file reads as an empty state. Writes go through ``save()``
    only, so the core never touches the file directly.

    Args:
        path: Location of the state file.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path).expanduser()

    def load(self) -> DiscoveryState:
        """Read the state file.

        Raises:
            ConfigError: If the file is not valid YAML or not a mapping.
        """
        if not self.path.is_file():
            logger.debug("No state file at %s; starting empty", self.path)
            return DiscoveryState()

        try:
            raw = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {self.path}: {exc}") from exc

        if raw is None:
            return DiscoveryState()
        if not isinstance(raw, dict):
            raise ConfigError(
                f"Expected a YAML mapping at the top level in {self.path}, "
                f"got {type(raw).__name__}"
            )

        endpoint = raw.get("active_endpoint")
        addresses = raw.get("custom_addresses") or []
        if not isinstance(addresses, list):
            raise ConfigError(f"custom_addresses must be a list in {self.path}")

        return DiscoveryState(
            active_endpoint=str(endpoint) if endpoint else None,
            custom_addresses=tuple(str(a) for a in addresses),
        )

    def save(self, state: DiscoveryState) -> None:
        """Write *state* to the state file, creating parent directories."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "active_endpoint": state.active_endpoint,
            "custom_addresses": list(state.custom_addresses),
        }
        self.path.write_text(
            yaml.safe_dump(payload, sort_keys=False), encoding="utf-8"
        )
        logger.debug("Saved discovery state to %s", self.path)


def initial_state(config: PnlConfig, store: StateStore) -> DiscoveryState:
    """Combine the persisted state with the static configuration.

    A stored active endpoint wins over ``config.rpc_endpoint``; custom
    addresses from the config file are appended to the stored ones.

    Raises:
        ConfigError: If the state file is malformed or the config names
            an invalid endpoint or address.
    """
    state = store.load()
    try:
        if state.active_endpoint is None and config.rpc_endpoint:
            state = with_active_endpoint(state, config.rpc_endpoint)
        for address in config.custom_addresses:
            state = with_custom_address(state, address)
    except ValueError as exc:
        raise ConfigError(f"Invalid config: {exc}") from exc
    return state
