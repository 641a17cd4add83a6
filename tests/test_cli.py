"""Tests for the CLI entry point."""

import textwrap
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from pnl.cli import main
from pnl.config import CLUSTER_ENDPOINTS, KNOWN_ADDRESSES
from pnl.models import Location
from pnl.rpc import RpcReply
from pnl.state import StateStore

RECORD = {"pubkey": "abc", "gossip": "1.2.3.4:8001", "version": "0.806.30102"}


def _fake_client(answers: dict):
    """Build an ``RpcClient`` replacement class answering from *answers*."""

    class FakeRpcClient:
        def __init__(self, config, http=None) -> None:
            self.config = config
            self.http = None

        async def __aenter__(self):
            return self

        async def __aexit__(self, *exc_info):
            return None

        async def call(self, address, method, params=None, timeout=None, *, use_relay=True):
            return RpcReply(answers.get((address, method)), 9)

    return FakeRpcClient


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Config file whose state lives in *tmp_path*."""
    path = tmp_path / "config.yaml"
    path.write_text(
        textwrap.dedent(f"""\
            state_path: {tmp_path / "state.yaml"}
            refresh_interval: 0
        """),
        encoding="utf-8",
    )
    return path


def _invoke(config_file: Path, *args: str):
    return CliRunner().invoke(main, ["--config", str(config_file), *args])


class TestCliHelp:
    """--help flag produces usage information."""

    def test_help_exits_zero(self) -> None:
        result = CliRunner().invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "Discover and locate pNodes" in result.output

    def test_help_lists_commands(self) -> None:
        result = CliRunner().invoke(main, ["--help"])
        for command in ("discover", "watch", "check", "endpoint", "address"):
            assert command in result.output

    def test_discover_help_shows_options(self, config_file: Path) -> None:
        result = _invoke(config_file, "discover", "--help")
        assert result.exit_code == 0
        for option in ("--format", "--strategy", "--search", "--target-only", "--no-geo"):
            assert option in result.output


class TestConfigErrors:
    """Bad configuration exits with an error message."""

    def test_missing_config_file(self, tmp_path: Path) -> None:
        result = CliRunner().invoke(
            main, ["--config", str(tmp_path / "nope.yaml"), "endpoint", "show"]
        )
        assert result.exit_code == 1
        assert "Config file not found" in result.output

    def test_invalid_config(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("batch_size: many\n", encoding="utf-8")

        result = CliRunner().invoke(main, ["--config", str(path), "endpoint", "show"])

        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_invalid_format_rejected(self, config_file: Path) -> None:
        result = _invoke(config_file, "discover", "--format", "xml")
        assert result.exit_code != 0
        assert "Invalid value" in result.output


class TestEndpointCommands:
    """endpoint show / set / clear."""

    def test_show_empty(self, config_file: Path) -> None:
        result = _invoke(config_file, "endpoint", "show")
        assert result.exit_code == 0
        assert "(none)" in result.output

    def test_set_then_show(self, config_file: Path) -> None:
        assert _invoke(config_file, "endpoint", "set", "http://mine:8899").exit_code == 0

        result = _invoke(config_file, "endpoint", "show")

        assert "http://mine:8899" in result.output

    def test_clear(self, config_file: Path) -> None:
        _invoke(config_file, "endpoint", "set", "http://mine:8899")
        _invoke(config_file, "endpoint", "clear")

        assert "(none)" in _invoke(config_file, "endpoint", "show").output

    def test_set_invalid_rejected(self, config_file: Path, tmp_path: Path) -> None:
        result = _invoke(config_file, "endpoint", "set", "myhost:notaport")

        assert result.exit_code == 1
        assert "Error: Invalid" in result.output
        assert not (tmp_path / "state.yaml").exists()


class TestAddressCommands:
    """address list / add / remove."""

    def test_list_shows_known(self, config_file: Path) -> None:
        result = _invoke(config_file, "address", "list")
        assert result.exit_code == 0
        assert f"{KNOWN_ADDRESSES[0]}  (known)" in result.output

    def test_add_and_list(self, config_file: Path) -> None:
        result = _invoke(config_file, "address", "add", "5.6.7.8:9001")
        assert "Added 5.6.7.8:9001" in result.output

        assert "5.6.7.8:9001  (custom)" in _invoke(config_file, "address", "list").output

    def test_add_invalid_rejected(self, config_file: Path) -> None:
        result = _invoke(config_file, "address", "add", "1.2.3.4:abc")

        assert result.exit_code == 1
        assert "expected host:port" in result.output
        assert "(custom)" not in _invoke(config_file, "address", "list").output

    def test_add_known_is_noop(self, config_file: Path) -> None:
        result = _invoke(config_file, "address", "add", KNOWN_ADDRESSES[0])
        assert "already known" in result.output

    def test_remove(self, config_file: Path) -> None:
        _invoke(config_file, "address", "add", "5.6.7.8:9001")

        result = _invoke(config_file, "address", "remove", "5.6.7.8:9001")

        assert result.exit_code == 0
        assert "(custom)" not in _invoke(config_file, "address", "list").output

    def test_remove_unknown_fails(self, config_file: Path) -> None:
        result = _invoke(config_file, "address", "remove", "5.6.7.8:9001")
        assert result.exit_code == 1


class TestDiscoverCommand:
    """discover against a fake RPC client."""

    @patch("pnl.cli.RpcClient", _fake_client({(CLUSTER_ENDPOINTS[0], "getClusterNodes"): [RECORD]}))
    def test_csv(self, config_file: Path) -> None:
        result = _invoke(config_file, "discover", "--no-geo", "--format", "csv")

        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert "pubkey,health,ip,version,isPNode" in lines
        assert "abc,healthy,1.2.3.4,0.806.30102,yes" in lines

    @patch("pnl.cli.RpcClient", _fake_client({(CLUSTER_ENDPOINTS[0], "getClusterNodes"): [RECORD]}))
    def test_persists_active_endpoint(self, config_file: Path, tmp_path: Path) -> None:
        _invoke(config_file, "discover", "--no-geo", "--format", "csv")

        state = StateStore(tmp_path / "state.yaml").load()
        assert state.active_endpoint == CLUSTER_ENDPOINTS[0]

    @patch("pnl.cli.RpcClient", _fake_client({(CLUSTER_ENDPOINTS[0], "getClusterNodes"): [RECORD]}))
    def test_output_file(self, config_file: Path, tmp_path: Path) -> None:
        out = tmp_path / "nodes.csv"

        result = _invoke(config_file, "discover", "--no-geo", "-f", "csv", "-o", str(out))

        assert result.exit_code == 0
        assert "Wrote 1 node(s)" in result.output
        assert out.read_text(encoding="utf-8").startswith("pubkey,health,ip,version,isPNode")

    @patch("pnl.cli.RpcClient", _fake_client({(CLUSTER_ENDPOINTS[0], "getClusterNodes"): [RECORD]}))
    def test_filter_hides_everything(self, config_file: Path) -> None:
        result = _invoke(
            config_file, "discover", "--no-geo", "-f", "csv", "--health", "unhealthy"
        )

        assert result.exit_code == 0
        assert "abc,healthy" not in result.output

    @patch("pnl.cli.RpcClient", _fake_client({}))
    def test_error_state_exits_nonzero(self, config_file: Path) -> None:
        result = _invoke(config_file, "discover", "--no-geo", "--strategy", "cluster")

        assert result.exit_code == 1
        assert "error" in result.output

    def test_invalid_endpoint_option(self, config_file: Path) -> None:
        result = _invoke(config_file, "discover", "--endpoint", "http://myhost:notaport")

        assert result.exit_code == 1
        assert "Error: Invalid endpoint" in result.output

    @patch("pnl.cli.RpcClient", _fake_client({}))
    def test_direct_fallback_table(self, config_file: Path) -> None:
        result = _invoke(config_file, "discover", "--no-geo")

        assert result.exit_code == 0
        assert "16 known pNodes" in result.output


class FakeGeoEnricher:
    """Geo enricher replacement that puts every node in Germany."""

    def __init__(self, config, http) -> None:
        self.closed = False

    async def enrich(self, table, on_update=None) -> int:
        for node in table.nodes():
            updated = table.set_location(node.key, Location(country_code="DE"))
            if on_update is not None:
                on_update(updated)
        return len(table)

    def close(self) -> None:
        self.closed = True


class TestWatchCommand:
    """watch driven by the refresh timer."""

    @patch("pnl.cli.RpcClient", _fake_client({(CLUSTER_ENDPOINTS[0], "getClusterNodes"): [RECORD]}))
    def test_single_cycle(self, config_file: Path) -> None:
        result = _invoke(config_file, "watch", "--no-geo", "--cycles", "1", "-f", "csv")

        assert result.exit_code == 0
        assert result.output.count("pubkey,health,ip,version,isPNode") == 1

    @patch("pnl.cli.RpcClient", _fake_client({(CLUSTER_ENDPOINTS[0], "getClusterNodes"): [RECORD]}))
    def test_cycles_follow_interval(self, config_file: Path) -> None:
        result = _invoke(
            config_file, "watch", "--no-geo", "--interval", "0.01", "--cycles", "2", "-f", "csv"
        )

        assert result.exit_code == 0
        assert result.output.count("pubkey,health,ip,version,isPNode") == 2

    @patch("pnl.orchestrator.GeoEnricher", FakeGeoEnricher)
    @patch("pnl.cli.RpcClient", _fake_client({(CLUSTER_ENDPOINTS[0], "getClusterNodes"): [RECORD]}))
    def test_nodes_shown_before_and_after_enrichment(self, config_file: Path) -> None:
        result = _invoke(config_file, "watch", "--cycles", "1", "-f", "json")

        assert result.exit_code == 0
        assert result.output.count('"location": null') == 1
        assert result.output.count('"country_code": "DE"') == 1


class TestCheckCommand:
    """check ADDRESS."""

    @patch(
        "pnl.cli.RpcClient",
        _fake_client({
            ("5.6.7.8:9001", "getHealth"): "ok",
            ("5.6.7.8:9001", "getVersion"): {"solana-core": "0.806.30102"},
            ("5.6.7.8:9001", "getIdentity"): {"identity": "node-id"},
        }),
    )
    def test_healthy(self, config_file: Path) -> None:
        result = _invoke(config_file, "check", "5.6.7.8:9001")

        assert result.exit_code == 0
        assert "5.6.7.8:9001: healthy" in result.output
        assert "latency: 9 ms" in result.output
        assert "version: 0.806.30102" in result.output
        assert "identity: node-id" in result.output

    @patch("pnl.cli.RpcClient", _fake_client({}))
    def test_unreachable(self, config_file: Path) -> None:
        result = _invoke(config_file, "check", "5.6.7.8:9001")

        assert result.exit_code == 1
        assert "5.6.7.8:9001: unknown" in result.output

    def test_invalid_address(self, config_file: Path) -> None:
        result = _invoke(config_file, "check", "5.6.7.8:abc")

        assert result.exit_code == 1
        assert "expected host:port" in result.output

    @patch("pnl.cli.RpcClient", _fake_client({(KNOWN_ADDRESSES[2], "getVersion"): {"solana-core": "0.806.30102"}}))
    def test_connection_without_address(self, config_file: Path) -> None:
        result = _invoke(config_file, "check")

        assert result.exit_code == 0
        assert "Connected" in result.output

    @patch("pnl.cli.RpcClient", _fake_client({(KNOWN_ADDRESSES[3], "getHealth"): "ok"}))
    def test_connection_only_tries_three_addresses(self, config_file: Path) -> None:
        result = _invoke(config_file, "check")

        assert result.exit_code == 1
        assert "none of the first 3 known pNodes answered" in result.output
