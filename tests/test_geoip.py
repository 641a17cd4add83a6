"""Tests for the geo-IP pipeline (pnl.geoip)."""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import geoip2.errors
import httpx
import pytest

from pnl.config import PnlConfig
from pnl.geoip import (
    GeoClient,
    GeoEnricher,
    MaxMindLocator,
    is_public_ip,
    select_candidates,
)
from pnl.models import Location, Node
from pnl.store import NodeTable

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _success(ip: str) -> dict:
    return {
        "status": "success",
        "country": "Germany",
        "countryCode": "DE",
        "city": f"City of {ip}",
        "lat": 50.11,
        "lon": 8.68,
    }


class FakeGeoService:
    """``httpx.MockTransport`` handler for the ip-api style service.

    Args:
        failing: IPs answered with ``status: fail``.
        broken: IPs whose request raises a transport error.
    """

    def __init__(self, failing=(), broken=()) -> None:
        self.failing = set(failing)
        self.broken = set(broken)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        ip = request.url.path.rsplit("/", 1)[-1]
        if ip in self.broken:
            raise httpx.ConnectError("unreachable", request=request)
        if ip in self.failing:
            return httpx.Response(200, json={"status": "fail", "message": "reserved range"})
        return httpx.Response(200, json=_success(ip))


def _http(service: FakeGeoService) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(service))


def _public_nodes(count: int) -> list[Node]:
    return [Node(key=f"n{i}", ip=f"8.8.{i}.8", port=9001) for i in range(count)]


def _table(nodes: list[Node]) -> NodeTable:
    table = NodeTable()
    table.publish(nodes)
    return table


class RecordingSleep:
    """Async sleep replacement that only records the requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _fake_city_response() -> SimpleNamespace:
    """Build a minimal object mimicking ``geoip2.models.City``."""
    return SimpleNamespace(
        city=SimpleNamespace(name="Frankfurt"),
        country=SimpleNamespace(name="Germany", iso_code="DE"),
        location=SimpleNamespace(latitude=50.11, longitude=8.68),
    )


# ---------------------------------------------------------------------------
# Tests: candidate selection
# ---------------------------------------------------------------------------


class TestIsPublicIp:
    """Which addresses are worth a lookup."""

    @pytest.mark.parametrize("ip", ["8.8.8.8", "157.173.125.223", "2606:4700::1111"])
    def test_public(self, ip: str) -> None:
        assert is_public_ip(ip)

    @pytest.mark.parametrize(
        "ip",
        [None, "", "127.0.0.1", "10.0.0.1", "192.168.1.1", "172.16.0.5", "0.0.0.0", "169.254.1.1", "::1", "example.com"],
    )
    def test_not_public(self, ip: str | None) -> None:
        assert not is_public_ip(ip)


class TestSelectCandidates:
    """Bounded prefix of nodes needing a location."""

    def test_cap(self) -> None:
        assert len(select_candidates(_public_nodes(30), 17)) == 17

    def test_keeps_order(self) -> None:
        selected = select_candidates(_public_nodes(5), 3)
        assert [n.key for n in selected] == ["n0", "n1", "n2"]

    def test_skips_private_and_located(self) -> None:
        nodes = [
            Node(key="private", ip="10.0.0.1"),
            Node(key="located", ip="8.8.8.8", location=Location(country_code="US")),
            Node(key="no-ip"),
            Node(key="ok", ip="8.8.4.4"),
        ]
        assert [n.key for n in select_candidates(nodes, 17)] == ["ok"]


# ---------------------------------------------------------------------------
# Tests: HTTP client
# ---------------------------------------------------------------------------


class TestGeoClient:
    """Single lookups against the HTTP service."""

    async def test_success(self) -> None:
        service = FakeGeoService()
        client = GeoClient("http://ip-api.com/json/", _http(service))

        location = await client.lookup("8.8.8.8")

        assert location == Location(
            country="Germany",
            country_code="DE",
            city="City of 8.8.8.8",
            latitude=50.11,
            longitude=8.68,
        )
        request = service.requests[0]
        assert request.url.path == "/json/8.8.8.8"
        assert request.url.params["fields"] == "status,country,countryCode,city,lat,lon"

    async def test_status_fail(self) -> None:
        client = GeoClient("http://ip-api.com/json", _http(FakeGeoService(failing={"8.8.8.8"})))
        assert await client.lookup("8.8.8.8") is None

    async def test_transport_error(self) -> None:
        client = GeoClient("http://ip-api.com/json", _http(FakeGeoService(broken={"8.8.8.8"})))
        assert await client.lookup("8.8.8.8") is None

    async def test_http_error_status(self) -> None:
        http = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(429, text="slow down"))
        )
        assert await GeoClient("http://ip-api.com/json", http).lookup("8.8.8.8") is None

    async def test_non_json(self) -> None:
        http = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>"))
        )
        assert await GeoClient("http://ip-api.com/json", http).lookup("8.8.8.8") is None


# ---------------------------------------------------------------------------
# Tests: enricher
# ---------------------------------------------------------------------------


class TestGeoEnricher:
    """Rate-limited sequential enrichment."""

    async def test_cap_of_seventeen(self) -> None:
        service = FakeGeoService()
        table = _table(_public_nodes(30))
        enricher = GeoEnricher(PnlConfig(), _http(service), sleep=RecordingSleep())

        enriched = await enricher.enrich(table)

        assert enriched == 17
        assert len(service.requests) == 17
        assert sum(1 for n in table.nodes() if n.location is not None) == 17

    async def test_pauses_between_requests(self) -> None:
        sleep = RecordingSleep()
        enricher = GeoEnricher(PnlConfig(), _http(FakeGeoService()), sleep=sleep)

        await enricher.enrich(_table(_public_nodes(30)))

        # 17 requests, a pause between each pair and none after the last.
        assert sleep.delays == [1.5] * 16
        assert sum(sleep.delays) >= 24.0

    async def test_failures_are_skipped(self) -> None:
        service = FakeGeoService(failing={"8.8.1.8"}, broken={"8.8.2.8"})
        table = _table(_public_nodes(4))
        enricher = GeoEnricher(PnlConfig(), _http(service), sleep=RecordingSleep())

        enriched = await enricher.enrich(table)

        assert enriched == 2
        assert table.get("n1").location is None
        assert table.get("n2").location is None
        assert table.get("n3").location is not None
        assert len(service.requests) == 4

    async def test_updates_reported_incrementally(self) -> None:
        table = _table(_public_nodes(3))
        seen: list[tuple[str, int]] = []

        def on_update(node: Node) -> None:
            located = sum(1 for n in table.nodes() if n.location is not None)
            seen.append((node.key, located))

        enricher = GeoEnricher(PnlConfig(), _http(FakeGeoService()), sleep=RecordingSleep())
        await enricher.enrich(table, on_update=on_update)

        assert seen == [("n0", 1), ("n1", 2), ("n2", 3)]

    async def test_second_run_waits_for_spacing(self) -> None:
        sleep = RecordingSleep()
        enricher = GeoEnricher(
            PnlConfig(geo_limit=1),
            _http(FakeGeoService()),
            sleep=sleep,
            clock=lambda: 100.0,
        )
        table = _table(_public_nodes(2))

        await enricher.enrich(table)
        await enricher.enrich(table)

        assert sleep.delays == [1.5]
        assert all(n.location is not None for n in table.nodes())

    async def test_no_candidates(self) -> None:
        service = FakeGeoService()
        enricher = GeoEnricher(PnlConfig(), _http(service), sleep=RecordingSleep())

        assert await enricher.enrich(_table([Node(key="lan", ip="192.168.0.2")])) == 0
        assert service.requests == []

    async def test_republished_node_is_not_resurrected(self) -> None:
        table = _table(_public_nodes(2))

        async def sleep(seconds: float) -> None:
            # A new cycle publishes a different set mid-enrichment.
            table.publish([Node(key="fresh", ip="8.8.8.8")])

        enricher = GeoEnricher(PnlConfig(), _http(FakeGeoService()), sleep=sleep)
        enriched = await enricher.enrich(table)

        assert enriched == 1
        assert [n.key for n in table.nodes()] == ["fresh"]


# ---------------------------------------------------------------------------
# Tests: MaxMind backend
# ---------------------------------------------------------------------------


class TestMaxMindLocator:
    """Offline lookups through geoip2."""

    @patch("pnl.geoip.geoip2.database.Reader")
    async def test_lookup(self, mock_reader_cls: MagicMock) -> None:
        mock_reader_cls.return_value.city.return_value = _fake_city_response()

        location = await MaxMindLocator("/fake/GeoLite2-City.mmdb").lookup("8.8.8.8")

        assert location == Location(
            country="Germany",
            country_code="DE",
            city="Frankfurt",
            latitude=50.11,
            longitude=8.68,
        )

    @patch("pnl.geoip.geoip2.database.Reader")
    async def test_address_not_found(self, mock_reader_cls: MagicMock) -> None:
        mock_reader_cls.return_value.city.side_effect = geoip2.errors.AddressNotFoundError(
            "not found"
        )

        assert await MaxMindLocator("/fake.mmdb").lookup("8.8.8.8") is None

    @patch("pnl.geoip.geoip2.database.Reader", side_effect=FileNotFoundError)
    async def test_missing_database(self, mock_reader_cls: MagicMock) -> None:
        locator = MaxMindLocator("/missing.mmdb")

        assert await locator.lookup("8.8.8.8") is None
        locator.close()

    @patch("pnl.geoip.geoip2.database.Reader")
    async def test_enricher_uses_database_without_pauses(
        self, mock_reader_cls: MagicMock
    ) -> None:
        mock_reader_cls.return_value.city.return_value = _fake_city_response()
        service = FakeGeoService()
        sleep = RecordingSleep()
        enricher = GeoEnricher(
            PnlConfig(maxmind_city_db="/fake.mmdb"), _http(service), sleep=sleep
        )
        table = _table(_public_nodes(5))

        assert await enricher.enrich(table) == 5
        assert sleep.delays == []
        assert service.requests == []

        enricher.close()
        mock_reader_cls.return_value.close.assert_called_once()
