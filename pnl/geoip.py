"""Geo-IP pipeline: rate-limited, sequential location lookups for published nodes."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import time
from collections.abc import Awaitable, Callable

import geoip2.database
import geoip2.errors
import httpx

from pnl.config import PnlConfig
from pnl.models import Location, Node
from pnl.store import NodeTable

logger = logging.getLogger(__name__)

GEO_FIELDS = "status,country,countryCode,city,lat,lon"
GEO_TIMEOUT = 10.0


def is_public_ip(ip: str | None) -> bool:
    """Return ``True`` if *ip* is worth a geo lookup.

    Empty values, hostnames, unspecified, loopback, private and link-local
    addresses are rejected.
    """
    if not ip:
        return False
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return not (
        addr.is_unspecified or addr.is_loopback or addr.is_private or addr.is_link_local
    )


def select_candidates(nodes: list[Node], limit: int) -> list[Node]:
    """First *limit* nodes without a location that have a public IP."""
    candidates = [n for n in nodes if n.location is None and is_public_ip(n.ip)]
    return candidates[:limit]


class GeoClient:
    """Thin client for the IP-geolocation HTTP service.

    The service allows about 45 requests per minute, so the enricher
    spaces calls to it.

    Args:
        base_url: Service base URL; the IP is appended as a path segment.
        http: Shared ``httpx.AsyncClient``.
    """

    rate_limited = True

    def __init__(self, base_url: str, http: httpx.AsyncClient) -> None:
        self.base_url = base_url.rstrip("/")
        self._http = http

    async def lookup(self, ip: str) -> Location | None:
        """Look up *ip*.

        Returns:
            A ``Location``, or ``None`` for a non-2xx status, a transport
            error, an undecodable body, or ``status != "success"``.
        """
        try:
            response = await self._http.get(
                f"{self.base_url}/{ip}",
                params={"fields": GEO_FIELDS},
                timeout=GEO_TIMEOUT,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.warning("Geo lookup failed for %s: %r", ip, exc)
            return None

        if not response.is_success:
            logger.warning("Geo lookup for %s returned HTTP %d", ip, response.status_code)
            return None

        try:
            data = response.json()
        except ValueError:
            logger.warning("Geo lookup for %s returned a non-JSON body", ip)
            return None

        if not isinstance(data, dict) or data.get("status") != "success":
            logger.debug("No geo result for %s", ip)
            return None

        return Location(
            country=data.get("country"),
            country_code=data.get("countryCode"),
            city=data.get("city"),
            latitude=data.get("lat"),
            longitude=data.get("lon"),
        )


class MaxMindLocator:
    """Offline locator backed by a GeoLite2-City database.

    Tolerant of a missing database file: every lookup then returns ``None``.

    Args:
        city_db_path: Path to ``GeoLite2-City.mmdb``.
    """

    rate_limited = False

    def __init__(self, city_db_path: str) -> None:
        self._reader: geoip2.database.Reader | None = None
        try:
            self._reader = geoip2.database.Reader(city_db_path)
            logger.debug("Opened GeoLite2-City DB: %s", city_db_path)
        except FileNotFoundError:
            logger.warning(
                "GeoLite2-City DB not found at %s; geo enrichment disabled",
                city_db_path,
            )

    def close(self) -> None:
        if self._reader:
            self._reader.close()

    async def lookup(self, ip: str) -> Location | None:
        if not self._reader:
            return None
        try:
            resp = self._reader.city(ip)
        except (geoip2.errors.AddressNotFoundError, ValueError):
            logger.debug("City lookup failed for %s", ip)
            return None

        return Location(
            country=resp.country.name,
            country_code=resp.country.iso_code,
            city=resp.city.name,
            latitude=resp.location.latitude,
            longitude=resp.location.longitude,
        )


class GeoEnricher:
    """Enriches a bounded prefix of the published nodes, one request at a time.

    A single enricher serializes all of its runs behind one lock and keeps
    the time of its last request, so requests stay ``delay`` seconds apart
    even when refresh cycles overlap.

    When ``maxmind_city_db`` is configured the local database is used and
    no pause is taken between lookups.

    Args:
        config: Application configuration (``geo_url``, ``geo_limit``,
            ``geo_delay``, ``maxmind_city_db``).
        http: Shared ``httpx.AsyncClient``.
        sleep: Coroutine used for the enforced pause (patched in tests).
        clock: Monotonic clock used to space runs against each other.
    """

    def __init__(
        self,
        config: PnlConfig,
        http: httpx.AsyncClient,
        *,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if config.maxmind_city_db:
            self.client: GeoClient | MaxMindLocator = MaxMindLocator(config.maxmind_city_db)
        else:
            self.client = GeoClient(config.geo_url, http)
        self.limit = config.geo_limit
        self.delay = config.geo_delay if self.client.rate_limited else 0.0
        self._sleep = sleep
        self._clock = clock
        self._lock = asyncio.Lock()
        self._last_request: float | None = None

    async def enrich(
        self,
        table: NodeTable,
        on_update: Callable[[Node], None] | None = None,
    ) -> int:
        """Look up locations for up to ``limit`` published nodes.

        Each location is written to *table* as soon as it arrives and
        reported through *on_update*.  A failed lookup leaves that node
        without a location and moves on.

        Returns:
            Number of nodes that received a location.
        """
        async with self._lock:
            candidates = select_candidates(table.nodes(), self.limit)
            logger.info("Enriching %d node(s) with geo data", len(candidates))

            enriched = 0
            for index, node in enumerate(candidates):
                if index > 0:
                    await self._pause(self.delay)
                else:
                    await self._wait_since_last_request()

                self._last_request = self._clock()
                location = await self.client.lookup(node.ip)  # type: ignore[arg-type]
                if location is None:
                    continue

                updated = table.set_location(node.key, location)
                if updated is not None:
                    enriched += 1
                    if on_update is not None:
                        on_update(updated)

            logger.info("Geo enrichment done: %d/%d located", enriched, len(candidates))
            return enriched

    def close(self) -> None:
        if isinstance(self.client, MaxMindLocator):
            self.client.close()

    async def _wait_since_last_request(self) -> None:
        if self._last_request is None:
            return
        await self._pause(self.delay - (self._clock() - self._last_request))

    async def _pause(self, seconds: float) -> None:
        if seconds > 0:
            await self._sleep(seconds)
