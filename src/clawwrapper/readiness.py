from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional, Sequence

import httpx

from .config import GatewayEndpoint


logger = logging.getLogger(__name__)

# Control UI base path first, then root.
DEFAULT_PROBE_PATHS: tuple[str, ...] = ("/openclaw", "/")


class ReadinessProbe:
    """Reachability check for the internal gateway.

    Any HTTP response (whatever the status) counts as ready: the port accepts
    connections and speaks HTTP. Backend health is not interpreted.
    """

    def __init__(
        self,
        endpoint: GatewayEndpoint,
        *,
        paths: Sequence[str] = DEFAULT_PROBE_PATHS,
        interval_s: float = 0.25,
        timeout_s: float = 20.0,
        request_timeout_s: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._endpoint = endpoint
        self._paths = tuple(paths) or ("/",)
        self._interval_s = max(0.01, float(interval_s))
        self._timeout_s = float(timeout_s)
        self._request_timeout_s = float(request_timeout_s)
        self._transport = transport

    @property
    def endpoint(self) -> GatewayEndpoint:
        return self._endpoint

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._endpoint.base_url,
            timeout=self._request_timeout_s,
            transport=self._transport,
        )

    async def _attempt(self, client: httpx.AsyncClient) -> bool:
        for path in self._paths:
            try:
                await client.get(path)
                return True
            except httpx.HTTPError:
                continue
        return False

    async def probe_once(self) -> bool:
        async with self._client() as client:
            return await self._attempt(client)

    async def wait_ready(
        self,
        *,
        timeout_s: Optional[float] = None,
        alive: Optional[Callable[[], bool]] = None,
    ) -> bool:
        """Poll until any path answers or the deadline elapses.

        `alive` lets the caller abort early when the child process has already exited.
        """
        deadline = time.monotonic() + (self._timeout_s if timeout_s is None else float(timeout_s))
        async with self._client() as client:
            while time.monotonic() < deadline:
                if alive is not None and not alive():
                    logger.debug("Readiness polling aborted: process exited")
                    return False
                if await self._attempt(client):
                    return True
                await asyncio.sleep(self._interval_s)
        return False
