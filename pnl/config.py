"""YAML configuration file loading."""

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".pnl"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_STATE_PATH = str(DEFAULT_CONFIG_DIR / "state.yaml")

# Reference pNode addresses. Direct RPC access to these is usually
# firewalled; they also seed the known-IP match in cluster discovery.
KNOWN_ADDRESSES: tuple[str, ...] = (
    "157.173.125.223:9001",
    "157.173.197.106:9001",
    "161.156.85.177:9001",
    "194.238.24.91:9001",
    "157.173.197.103:9001",
    "194.238.24.87:9001",
    "154.38.175.38:9001",
    "194.238.24.94:9001",
    "194.238.24.96:9001",
    "37.60.250.209:9001",
    "37.60.255.42:9001",
    "194.238.24.95:9001",
    "38.242.207.242:9001",
    "109.199.96.218:9001",
    "194.238.24.97:9001",
    "160.202.38.95:9001",
)

# Aggregator endpoints tried in order after the active endpoint.
CLUSTER_ENDPOINTS: tuple[str, ...] = (
    "http://xand-rpc2.devnet.xandeum.com:8899",
    "https://api.mainnet-beta.solana.com",
    "https://solana-mainnet.g.alchemy.com/v2/demo",
    "https://rpc.ankr.com/solana",
)


@dataclass
class PnlConfig:
    """Top-level configuration for the pnl tool.

    Every field has a default so the tool works without a config file.

    Attributes:
        rpc_endpoint: Cluster endpoint tried before the built-in list.
            Seeds the persisted active endpoint when none is stored yet.
        custom_addresses: Extra ``host:port`` addresses for direct queries,
            merged with the persisted custom addresses.
        refresh_interval: Seconds between periodic refreshes; ``0``
            disables periodic refresh.
        relay_url: Base URL of the local RPC relay (``/health`` and
            ``/proxy/<address>`` are appended).
        geo_url: Base URL of the IP-geolocation service.
        maxmind_city_db: Path to a GeoLite2-City.mmdb file.  When set, locations
            come from this local database instead of the HTTP service.
        geo_limit: Maximum nodes enriched per cycle.
        geo_delay: Seconds between consecutive geo requests.
        rpc_timeout: Default per-call RPC timeout in seconds.
        cluster_timeout: Timeout of the cluster-discovery call in seconds.
        relay_probe_timeout: Timeout of the one-off relay reachability probe.
        batch_size: Addresses queried concurrently by the direct probe.
        state_path: YAML file holding the persisted endpoint and addresses.
    """

    rpc_endpoint: str | None = None
    custom_addresses: list[str] = field(default_factory=list)
    refresh_interval: float = 30.0
    relay_url: str = "http://localhost:3002"
    geo_url: str = "http://ip-api.com/json"
    maxmind_city_db: str | None = None
    geo_limit: int = 17
    geo_delay: float = 1.5
    rpc_timeout: float = 12.0
    cluster_timeout: float = 15.0
    relay_probe_timeout: float = 2.0
    batch_size: int = 8
    state_path: str = DEFAULT_STATE_PATH


# Keys in the YAML file that map to PnlConfig fields, with accepted types.
_YAML_KEY_TO_FIELD: dict[str, tuple[str, tuple[type, ...]]] = {
    "rpc_endpoint": ("rpc_endpoint", (str, type(None))),
    "custom_addresses": ("custom_addresses", (list,)),
    "refresh_interval": ("refresh_interval", (int, float)),
    "relay_url": ("relay_url", (str,)),
    "geo_url": ("geo_url", (str,)),
    "maxmind_city_db": ("maxmind_city_db", (str, type(None))),
    "geo_limit": ("geo_limit", (int,)),
    "geo_delay": ("geo_delay", (int, float)),
    "rpc_timeout": ("rpc_timeout", (int, float)),
    "cluster_timeout": ("cluster_timeout", (int, float)),
    "relay_probe_timeout": ("relay_probe_timeout", (int, float)),
    "batch_size": ("batch_size", (int,)),
    "state_path": ("state_path", (str,)),
}


def load_config(path: Path | str | None = None) -> PnlConfig:
    """Load configuration from a YAML file.

    Args:
        path: Explicit path to a YAML config file.  If ``None``, the
            default location (``~/.pnl/config.yaml``) is tried.  If the
            default file doesn't exist, a ``PnlConfig`` with all defaults
            is returned silently.

    Returns:
        A populated ``PnlConfig`` instance.

    Raises:
        FileNotFoundError: If an explicit *path* was given but doesn't exist.
        ConfigError: If the file contains invalid YAML, has an unexpected
            top-level structure, or holds values of the wrong type.
    """
    resolved = _resolve_path(path)

    if resolved is None:
        logger.debug("No config file found; using defaults")
        return PnlConfig()

    logger.debug("Loading config from %s", resolved)
    text = resolved.read_text(encoding="utf-8")

    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {resolved}: {exc}") from exc

    if raw is None:
        # Empty file, all defaults.
        return PnlConfig()

    if not isinstance(raw, dict):
        raise ConfigError(
            f"Expected a YAML mapping at the top level in {resolved}, "
            f"got {type(raw).__name__}"
        )

    return _build_config(raw, source=resolved)


class ConfigError(Exception):
    """Raised when a configuration file is malformed or unreadable."""


# ------------------------------------------------------------------
# Internal helpers
# ------------------------------------------------------------------


def _resolve_path(path: Path | str | None) -> Path | None:
    """Return a concrete ``Path`` to read, or ``None`` if nothing to read.

    Raises:
        FileNotFoundError: If the caller supplied an explicit path that
            doesn't exist on disk.
    """
    if path is not None:
        p = Path(path).expanduser()
        if not p.is_file():
            raise FileNotFoundError(f"Config file not found: {p}")
        return p

    default = DEFAULT_CONFIG_PATH.expanduser()
    if default.is_file():
        return default
    return None


def _build_config(raw: dict, source: Path) -> PnlConfig:
    """Map raw YAML dict to a ``PnlConfig``, ignoring unknown keys."""
    kwargs: dict[str, object] = {}

    for yaml_key, (field_name, types) in _YAML_KEY_TO_FIELD.items():
        if yaml_key not in raw:
            continue
        value = raw[yaml_key]
        # bool is an int subclass; never accept it for numeric fields.
        if isinstance(value, bool) or not isinstance(value, types):
            raise ConfigError(
                f"Invalid value for {yaml_key!r} in {source}: {value!r}"
            )
        kwargs[field_name] = value

    unknown = set(raw) - set(_YAML_KEY_TO_FIELD)
    if unknown:
        logger.warning(
            "Ignoring unknown config keys in %s: %s",
            source,
            ", ".join(sorted(unknown)),
        )

    config = PnlConfig(**kwargs)
    _validate(config, source)
    return config


def _validate(config: PnlConfig, source: Path) -> None:
    if config.refresh_interval < 0:
        raise ConfigError(
            f"refresh_interval must be >= 0 in {source}, "
            f"got {config.refresh_interval}"
        )
    if config.batch_size < 1:
        raise ConfigError(f"batch_size must be >= 1 in {source}")
    if config.geo_limit < 0:
        raise ConfigError(f"geo_limit must be >= 0 in {source}")
    if not all(isinstance(a, str) for a in config.custom_addresses):
        raise ConfigError(f"custom_addresses must be a list of strings in {source}")
