"""CLI entry point for the pnl tool."""

import asyncio
import logging
import sys
from pathlib import Path

import click

from pnl.config import KNOWN_ADDRESSES, ConfigError, PnlConfig, load_config
from pnl.health import check_health, fetch_node_info, measure_latency, probe_connection
from pnl.models import DiscoverySnapshot, Node, split_host_port
from pnl.orchestrator import STRATEGIES, RefreshOrchestrator
from pnl.output import FORMATS, render
from pnl.rpc import RpcClient
from pnl.state import (
    DiscoveryState,
    StateStore,
    check_address,
    initial_state,
    with_active_endpoint,
    with_custom_address,
    without_custom_address,
)
from pnl.views import HEALTH_FILTERS, SORT_KEYS, FilterCriteria, SortSpec

logger = logging.getLogger(__name__)


@click.group()
@click.option(
    "--config",
    "-c",
    "config_path",
    default=None,
    type=click.Path(exists=False),
    help="Path to YAML config file (default: ~/.pnl/config.yaml).",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """Discover and locate pNodes on the Xandeum network."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    try:
        cfg = load_config(config_path)
    except (ConfigError, FileNotFoundError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    logger.debug("Config loaded: %s", cfg)
    ctx.obj = cfg


def _load_state(
    cfg: PnlConfig, *, with_config: bool = False
) -> tuple[StateStore, DiscoveryState]:
    """Open the state store; optionally fold in endpoint and addresses from *cfg*."""
    store = StateStore(cfg.state_path)
    try:
        state = initial_state(cfg, store) if with_config else store.load()
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    return store, state


def _view_options(func):
    """Filter and sort options shared by ``discover`` and ``watch``."""
    options = [
        click.option("--search", "-s", default="", help="Substring of key, version, city or IP."),
        click.option(
            "--health",
            default="all",
            type=click.Choice(HEALTH_FILTERS, case_sensitive=False),
            show_default=True,
            help="Show only nodes with this health.",
        ),
        click.option("--version-filter", default="", help="Substring the version must contain."),
        click.option("--target-only", is_flag=True, help="Show only pNodes."),
        click.option(
            "--sort",
            "sort_key",
            default=None,
            type=click.Choice(SORT_KEYS, case_sensitive=False),
            help="Sort key (default: pNodes first, then health).",
        ),
        click.option(
            "--order",
            default="asc",
            type=click.Choice(("asc", "desc"), case_sensitive=False),
            show_default=True,
        ),
        click.option(
            "--format",
            "-f",
            "output_format",
            default="table",
            type=click.Choice(FORMATS, case_sensitive=False),
            show_default=True,
            help="Output format.",
        ),
        click.option(
            "--strategy",
            default="auto",
            type=click.Choice(STRATEGIES, case_sensitive=False),
            show_default=True,
            help="Discovery strategy.",
        ),
        click.option("--no-geo", is_flag=True, help="Skip geo enrichment."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _criteria(search: str, health: str, version_filter: str, target_only: bool) -> FilterCriteria:
    return FilterCriteria(
        search=search,
        health=health,  # type: ignore[arg-type]
        version=version_filter,
        target_only=target_only,
    )


async def _discover_once(
    cfg: PnlConfig,
    state: DiscoveryState,
    store: StateStore,
    *,
    strategy: str,
    geo: bool,
) -> RefreshOrchestrator:
    """Run one refresh and wait for its geo enrichment to finish."""
    async with RpcClient(cfg) as client:
        orchestrator = RefreshOrchestrator(
            cfg, client, state, store, enrich=geo, strategy=strategy
        )
        try:
            await orchestrator.refresh()
            await orchestrator.wait_for_enrichment()
        finally:
            await orchestrator.stop()
        return orchestrator


async def _watch(
    cfg: PnlConfig,
    state: DiscoveryState,
    store: StateStore,
    *,
    strategy: str,
    geo: bool,
    cycles: int,
    show,
) -> RefreshOrchestrator:
    """Drive the orchestrator's refresh timer, calling *show* as results land.

    *show* runs when a cycle publishes its nodes and again when its geo
    enrichment settles.  Returns after *cycles* settled cycles (0 = run
    until interrupted); a zero refresh interval means a single cycle.
    """
    if cfg.refresh_interval <= 0:
        cycles = 1

    async with RpcClient(cfg) as client:
        orchestrator = RefreshOrchestrator(
            cfg, client, state, store, enrich=geo, strategy=strategy
        )
        finished = asyncio.Event()
        shown_cycle = 0
        settled = 0

        def on_change(snapshot: DiscoverySnapshot) -> None:
            nonlocal shown_cycle, settled
            if orchestrator.phase == "discovering":
                return
            settling = orchestrator.phase in ("settled_ok", "settled_error")
            if snapshot.cycle != shown_cycle or settling:
                shown_cycle = snapshot.cycle
                show(orchestrator)
            if settling:
                settled += 1
                if cycles and settled >= cycles:
                    finished.set()

        orchestrator.subscribe(on_change)
        orchestrator.start()
        try:
            await finished.wait()
        finally:
            await orchestrator.stop()
        return orchestrator


@main.command()
@_view_options
@click.option("--endpoint", "-e", default=None, help="Try this cluster endpoint first.")
@click.option(
    "--output",
    "-o",
    "output_path",
    default=None,
    type=click.Path(dir_okay=False, writable=True),
    help="Write the output to a file instead of stdout.",
)
@click.pass_obj
def discover(
    cfg: PnlConfig,
    search: str,
    health: str,
    version_filter: str,
    target_only: bool,
    sort_key: str | None,
    order: str,
    output_format: str,
    strategy: str,
    no_geo: bool,
    endpoint: str | None,
    output_path: str | None,
) -> None:
    """Run one discovery cycle and print the nodes."""
    store, state = _load_state(cfg, with_config=True)
    if endpoint:
        try:
            state = with_active_endpoint(state, endpoint)
        except ValueError as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)

    criteria = _criteria(search, health, version_filter, target_only)
    sort = SortSpec(key=sort_key, order=order) if sort_key else None  # type: ignore[arg-type]

    orchestrator = asyncio.run(
        _discover_once(cfg, state, store, strategy=strategy, geo=not no_geo)
    )
    nodes = orchestrator.view(criteria, sort)
    if output_path:
        with Path(output_path).open("w", encoding="utf-8", newline="") as fh:
            render(orchestrator.snapshot, output_format, nodes=nodes, file=fh)
        click.echo(f"Wrote {len(nodes)} node(s) to {output_path}")
    else:
        render(orchestrator.snapshot, output_format, nodes=nodes)
    if orchestrator.snapshot.connection_state == "error":
        sys.exit(1)


@main.command()
@_view_options
@click.option(
    "--interval",
    "-i",
    default=None,
    type=click.FloatRange(min=0),
    help="Seconds between refreshes (default: refresh_interval from config).",
)
@click.option("--cycles", default=0, type=click.IntRange(min=0), help="Stop after N cycles (0 = run forever).")
@click.pass_obj
def watch(
    cfg: PnlConfig,
    search: str,
    health: str,
    version_filter: str,
    target_only: bool,
    sort_key: str | None,
    order: str,
    output_format: str,
    strategy: str,
    no_geo: bool,
    interval: float | None,
    cycles: int,
) -> None:
    """Refresh on a timer and print the nodes as each cycle lands."""
    store, state = _load_state(cfg, with_config=True)
    if interval is not None:
        cfg.refresh_interval = interval

    criteria = _criteria(search, health, version_filter, target_only)
    sort = SortSpec(key=sort_key, order=order) if sort_key else None  # type: ignore[arg-type]

    def show(orchestrator: RefreshOrchestrator) -> None:
        render(orchestrator.snapshot, output_format, nodes=orchestrator.view(criteria, sort))

    try:
        asyncio.run(
            _watch(
                cfg, state, store, strategy=strategy, geo=not no_geo, cycles=cycles, show=show
            )
        )
    except KeyboardInterrupt:
        click.echo("Stopped.")


@main.command()
@click.argument("address", required=False)
@click.pass_obj
def check(cfg: PnlConfig, address: str | None) -> None:
    """Check one node (host:port), or test connectivity without ADDRESS.

    With no ADDRESS, the first three known addresses get getHealth and
    then getVersion; the command fails if none of them answers.
    """
    if address is None:
        _check_connection(cfg)
        return

    try:
        address = check_address(address)
    except ValueError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    ip, port = split_host_port(address)
    node = Node(key=address, ip=ip, port=port, rpc_port=port)

    async def _check():
        async with RpcClient(cfg) as client:
            return (
                await check_health(client, node),
                await measure_latency(client, node),
                await fetch_node_info(client, node.ip, node.rpc_port),
            )

    node_health, latency, info = asyncio.run(_check())
    click.echo(f"{address}: {node_health}")
    click.echo(f"  latency: {f'{latency} ms' if latency is not None else '—'}")
    if info is not None:
        click.echo(f"  version: {info.version or '—'}")
        click.echo(f"  identity: {info.identity or '—'}")
    if node_health != "healthy":
        sys.exit(1)


def _check_connection(cfg: PnlConfig) -> None:
    _, state = _load_state(cfg, with_config=True)
    addresses = state.all_addresses()

    async def _probe() -> bool:
        async with RpcClient(cfg) as client:
            return await probe_connection(client, addresses)

    if asyncio.run(_probe()):
        click.echo("Connected: a known pNode answered")
        return
    click.echo(f"Error: none of the first {min(len(addresses), 3)} known pNodes answered", err=True)
    sys.exit(1)


# ------------------------------------------------------------------
# Persisted state
# ------------------------------------------------------------------


@main.group()
def endpoint() -> None:
    """Show or change the preferred cluster endpoint."""


@endpoint.command("show")
@click.pass_obj
def endpoint_show(cfg: PnlConfig) -> None:
    _, state = _load_state(cfg)
    click.echo(state.active_endpoint or "(none)")


@endpoint.command("set")
@click.argument("url")
@click.pass_obj
def endpoint_set(cfg: PnlConfig, url: str) -> None:
    store, state = _load_state(cfg)
    try:
        updated = with_active_endpoint(state, url)
    except ValueError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    store.save(updated)
    click.echo(f"Endpoint set to {updated.active_endpoint}")


@endpoint.command("clear")
@click.pass_obj
def endpoint_clear(cfg: PnlConfig) -> None:
    store, state = _load_state(cfg)
    store.save(with_active_endpoint(state, None))
    click.echo("Endpoint cleared")


@main.group()
def address() -> None:
    """Manage custom pNode addresses for direct queries."""


@address.command("list")
@click.pass_obj
def address_list(cfg: PnlConfig) -> None:
    _, state = _load_state(cfg)
    for addr in KNOWN_ADDRESSES:
        click.echo(f"{addr}  (known)")
    for addr in state.custom_addresses:
        click.echo(f"{addr}  (custom)")


@address.command("add")
@click.argument("addr")
@click.pass_obj
def address_add(cfg: PnlConfig, addr: str) -> None:
    store, state = _load_state(cfg)
    try:
        updated = with_custom_address(state, addr)
    except ValueError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    if updated == state:
        click.echo(f"{addr} is already known")
        return
    store.save(updated)
    click.echo(f"Added {addr}")


@address.command("remove")
@click.argument("addr")
@click.pass_obj
def address_remove(cfg: PnlConfig, addr: str) -> None:
    store, state = _load_state(cfg)
    updated = without_custom_address(state, addr)
    if updated == state:
        click.echo(f"{addr} is not a custom address", err=True)
        sys.exit(1)
    store.save(updated)
    click.echo(f"Removed {addr}")
