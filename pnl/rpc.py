"""JSON-RPC client with a local relay transport and a direct fallback."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, NamedTuple

import httpx

from pnl.config import PnlConfig

logger = logging.getLogger(__name__)

METHOD_NOT_FOUND = -32601


class RpcReply(NamedTuple):
    """Outcome of one ``RpcClient.call``.

    ``result`` is ``None`` for every kind of failure; ``elapsed_ms`` is
    measured from the start of the call across all transport attempts.
    """

    result: Any
    elapsed_ms: int


@dataclass
class TransportReply:
    """What a transport got back for one request.

    Attributes:
        envelope: Decoded JSON-RPC response object, or ``None``.
        failed: ``True`` for transport-level failures (timeout, network
            error, malformed address, non-2xx status, undecodable
            body).  The client moves on to the next transport only in
            that case.
    """

    envelope: dict | None = None
    failed: bool = False


class Transport(ABC):
    """One way of delivering a JSON-RPC request body to an address."""

    name: str = "transport"

    def __init__(self, http: httpx.AsyncClient) -> None:
        self._http = http

    @abstractmethod
    def url_for(self, address: str) -> str:
        """Return the URL to POST to for *address*."""

    async def send(self, address: str, body: dict, timeout: float) -> TransportReply:
        url = self.url_for(address)
        try:
            response = await asyncio.wait_for(
                self._http.post(url, json=body, timeout=timeout),
                timeout,
            )
        except (httpx.HTTPError, httpx.InvalidURL, TimeoutError) as exc:
            logger.debug("%s request to %s failed: %r", self.name, url, exc)
            return TransportReply(failed=True)

        if not response.is_success:
            logger.debug("%s request to %s returned HTTP %d", self.name, url, response.status_code)
            return TransportReply(failed=True)

        try:
            data = response.json()
        except ValueError:
            logger.debug("%s response from %s is not JSON", self.name, url)
            return TransportReply(failed=True)

        if not isinstance(data, dict):
            return TransportReply(envelope=None)
        return TransportReply(envelope=data)


class RelayTransport(Transport):
    """Routes requests through the local relay at ``<relay_url>/proxy/<address>``."""

    name = "relay"

    def __init__(self, http: httpx.AsyncClient, relay_url: str) -> None:
        super().__init__(http)
        self.relay_url = relay_url.rstrip("/")

    def url_for(self, address: str) -> str:
        return f"{self.relay_url}/proxy/{address}"


class DirectTransport(Transport):
    """Posts straight to the node (``host:port``) or to a full endpoint URL."""

    name = "direct"

    def url_for(self, address: str) -> str:
        if "://" in address:
            return address
        return f"http://{address}"


class RpcClient:
    """JSON-RPC client used by every probe.

    Use as an async context manager; entering it runs the one-off relay
    reachability probe, whose result is kept for the client's lifetime::

        async with RpcClient(config) as client:
            result, elapsed = await client.call("1.2.3.4:9001", "getHealth")

    Args:
        config: Application configuration (timeouts, relay URL).
        http: Optional pre-built ``httpx.AsyncClient``.  When omitted the
            client creates and closes its own.
    """

    def __init__(self, config: PnlConfig, http: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient()
        self._relay = RelayTransport(self._http, config.relay_url)
        self._direct = DirectTransport(self._http)
        self._relay_available: bool | None = None
        self._ids = itertools.count(1)

    async def __aenter__(self) -> RpcClient:
        await self.probe_relay()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    @property
    def relay_available(self) -> bool:
        return self._relay_available is True

    @property
    def http(self) -> httpx.AsyncClient:
        """The underlying HTTP client, shared with the geo pipeline."""
        return self._http

    async def probe_relay(self) -> bool:
        """Check once whether the local relay answers ``GET /health``.

        The result is cached; later calls return it without a request.
        """
        if self._relay_available is not None:
            return self._relay_available

        url = f"{self._relay.relay_url}/health"
        timeout = self.config.relay_probe_timeout
        try:
            response = await asyncio.wait_for(self._http.get(url, timeout=timeout), timeout)
            self._relay_available = response.is_success
        except (httpx.HTTPError, httpx.InvalidURL, TimeoutError):
            self._relay_available = False

        logger.info("Local relay available: %s", self._relay_available)
        return self._relay_available

    def transports(self, use_relay: bool = True) -> list[Transport]:
        """Transports to try, best first."""
        if use_relay and self.relay_available:
            return [self._relay, self._direct]
        return [self._direct]

    async def call(
        self,
        address: str,
        method: str,
        params: list | None = None,
        timeout: float | None = None,
        *,
        use_relay: bool = True,
    ) -> RpcReply:
        """Issue one JSON-RPC request and never raise for network trouble.

        Args:
            address: ``host:port`` of a node, or a full endpoint URL.
            method: JSON-RPC method name.
            params: Positional parameters (default: none).
            timeout: Per-attempt timeout in seconds (default:
                ``config.rpc_timeout``).
            use_relay: Allow the relay transport for this call.

        Returns:
            ``RpcReply(result, elapsed_ms)``; ``result`` is ``None`` on
            timeout, network failure, malformed response or an error field.
        """
        timeout = self.config.rpc_timeout if timeout is None else timeout
        body = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }
        start = time.perf_counter()

        for transport in self.transports(use_relay):
            reply = await transport.send(address, body, timeout)
            if reply.failed:
                continue
            result = self._unwrap(address, method, reply.envelope)
            return RpcReply(result, _elapsed_ms(start))

        return RpcReply(None, _elapsed_ms(start))

    def _unwrap(self, address: str, method: str, envelope: dict | None) -> Any:
        if envelope is None:
            logger.debug("Malformed RPC response from %s for %s", address, method)
            return None

        error = envelope.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            if code == METHOD_NOT_FOUND:
                logger.debug("%s does not support %s", address, method)
            else:
                logger.warning("RPC error from %s for %s: %s", address, method, error)
            return None

        return envelope.get("result")


def _elapsed_ms(start: float) -> int:
    return round((time.perf_counter() - start) * 1000)
