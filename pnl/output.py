"""Output renderer: rich table formatter, JSON and CSV exporters."""

import csv
import dataclasses
import json
import logging
import sys
from io import StringIO

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from pnl.models import DiscoverySnapshot, Node

logger = logging.getLogger(__name__)

FORMATS = ("table", "json", "csv")

_CSV_HEADERS = ["pubkey", "health", "ip", "version", "isPNode"]

_HEALTH_STYLE = {"healthy": "green", "unhealthy": "red", "unknown": "yellow"}

# How many entries to show in the summary distributions.
_TOP_N = 4


def render(
    snapshot: DiscoverySnapshot,
    fmt: str,
    *,
    nodes: list[Node] | None = None,
    file: object | None = None,
    width: int | None = None,
) -> None:
    """Dispatch output to the appropriate formatter.

    Args:
        snapshot: Snapshot to render.
        fmt: Output format: ``"table"``, ``"json"`` or ``"csv"``.
        nodes: Filtered view to show instead of ``snapshot.nodes``.
        file: Writable file object for output (default: ``sys.stdout``).
        width: Explicit console width (default: auto-detect).

    Raises:
        ValueError: If *fmt* is not a known format.
    """
    shown = snapshot.nodes if nodes is None else nodes
    if fmt == "table":
        render_table(snapshot, shown, file=file, width=width)
    elif fmt == "json":
        render_json(shown, file=file)
    elif fmt == "csv":
        render_csv(shown, file=file)
    else:
        raise ValueError(f"Unknown output format: {fmt!r}")


# ---------------------------------------------------------------------------
# Table (rich) formatter
# ---------------------------------------------------------------------------


def render_table(
    snapshot: DiscoverySnapshot,
    nodes: list[Node],
    *,
    file: object | None = None,
    width: int | None = None,
) -> None:
    """Render *nodes* as a ``rich`` table followed by a status summary."""
    out = file or sys.stdout
    console = Console(file=out, highlight=False, width=width)

    table = Table(title=f"pNodes ({len(nodes)} of {len(snapshot.nodes)}) via {snapshot.source or '—'}")
    table.add_column("Identity", overflow="fold")
    table.add_column("Kind")
    table.add_column("Health")
    table.add_column("Latency", justify="right")
    table.add_column("Address")
    table.add_column("Version")
    table.add_column("Country")
    table.add_column("City")

    for node in nodes:
        style = _HEALTH_STYLE.get(node.health, "")
        location = node.location
        table.add_row(
            escape(node.key if node.authoritative else f"{node.key} *"),
            "pNode" if node.is_target else "node",
            f"[{style}]{node.health}[/{style}]",
            _fmt(node.latency_ms, suffix=" ms"),
            _fmt(node.address),
            escape(_fmt(node.version)),
            _fmt(location.country_code if location else None),
            _fmt(location.city if location else None),
        )

    console.print(table)
    _print_summary(console, snapshot)


def _print_summary(console: Console, snapshot: DiscoverySnapshot) -> None:
    """Print connection state and stats beneath the table."""
    stats = snapshot.stats
    console.print(
        f"  {snapshot.connection_state}: {stats.total} nodes, "
        f"{stats.target_count} pNodes, {stats.healthy} healthy "
        f"({stats.health_rate:.0f}%), avg latency {stats.avg_latency_ms} ms"
    )

    if stats.version_distribution:
        top = ", ".join(f"{v} ({c})" for v, c in stats.version_distribution[:_TOP_N])
        console.print(f"  top versions: {top}")
    if stats.country_distribution:
        top = ", ".join(f"{cc} ({c})" for cc, c in stats.country_distribution[:_TOP_N])
        console.print(f"  top countries: {top}")
    if snapshot.error:
        console.print(f"  [bold red]error:[/bold red] {escape(snapshot.error)}")


# ---------------------------------------------------------------------------
# JSON / CSV exporters
# ---------------------------------------------------------------------------


def render_json(nodes: list[Node], *, file: object | None = None) -> None:
    """Write *nodes* as a JSON array of node records."""
    out = file or sys.stdout
    payload = [dataclasses.asdict(n) for n in nodes]
    json.dump(payload, out, indent=2, default=str)
    out.write("\n")  # type: ignore[union-attr]


def render_csv(nodes: list[Node], *, file: object | None = None) -> None:
    """Write *nodes* as CSV with the columns pubkey, health, ip, version, isPNode."""
    out = file or sys.stdout
    writer = csv.writer(out, lineterminator="\n")  # type: ignore[arg-type]
    writer.writerow(_CSV_HEADERS)
    for n in nodes:
        writer.writerow([
            n.key,
            n.health,
            n.ip or "",
            n.version or "",
            "yes" if n.is_target else "no",
        ])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _fmt(value: object, suffix: str = "") -> str:
    """Format a field value for table display.

    ``None`` becomes ``"—"``, everything else is stringified.
    """
    if value is None:
        return "—"
    return f"{value}{suffix}"


def render_to_string(
    snapshot: DiscoverySnapshot,
    fmt: str,
    *,
    nodes: list[Node] | None = None,
    width: int = 200,
) -> str:
    """Render to a string instead of stdout; useful for testing."""
    buf = StringIO()
    render(snapshot, fmt, nodes=nodes, file=buf, width=width)
    return buf.getvalue()
