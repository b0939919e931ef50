"""Reverse proxy in front of the internal gateway (HTTP + WebSocket).

Routing order for every non-admin request:

1. not configured: HTTP is redirected to `/setup`, WebSocket handshakes are refused;
2. `ensure_running()` fails: 503 with a troubleshooting hint (WebSocket refused);
3. otherwise the request is tunneled to the loopback gateway with
   `X-Forwarded-*` headers; transport failures become 502.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, AsyncContextManager, Callable, Iterable, List, Optional, Tuple

import httpx
from fastapi import Request, WebSocket
from fastapi.responses import PlainTextResponse, RedirectResponse, Response, StreamingResponse
from starlette.background import BackgroundTask
from starlette.websockets import WebSocketDisconnect
from websockets.asyncio.client import connect as ws_client_connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from .config import GatewayEndpoint
from .config_store import ConfigStateStore
from .errors import ProxyUnreachableError, WrapperError


logger = logging.getLogger(__name__)

ADMIN_PATH_PREFIXES: Tuple[str, ...] = ("/setup", "/healthz")

# RFC 7230 hop-by-hop headers plus framing headers recomputed on each leg.
_HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

# Handshake headers owned by the websocket client library on the upstream leg.
_WS_HANDSHAKE = frozenset(
    {
        "host",
        "sec-websocket-key",
        "sec-websocket-version",
        "sec-websocket-extensions",
        "sec-websocket-protocol",
        "sec-websocket-accept",
    }
)

WS_CLOSE_NORMAL = 1000
WS_CLOSE_POLICY_VIOLATION = 1008
WS_CLOSE_INTERNAL_ERROR = 1011
WS_CLOSE_TRY_AGAIN_LATER = 1013

# Status-only codes that must never appear in a close frame (RFC 6455 7.4.1).
_WS_RESERVED_CLOSE_CODES = frozenset({1005, 1006, 1015})

WsConnect = Callable[..., AsyncContextManager[Any]]


def is_admin_path(path: str) -> bool:
    p = str(path or "")
    return any(p == prefix or p.startswith(prefix + "/") for prefix in ADMIN_PATH_PREFIXES)


def _sendable_close_code(code: Any, fallback: int) -> int:
    if not isinstance(code, int) or code < 1000 or code >= 5000 or code in _WS_RESERVED_CLOSE_CODES:
        return fallback
    return code


def _default_ws_connect(url: str, *, headers: List[Tuple[str, str]], subprotocols: Optional[List[str]] = None):
    return ws_client_connect(
        url,
        additional_headers=headers,
        subprotocols=subprotocols or None,
        open_timeout=10,
        max_size=None,
    )


def _filter_headers(items: Iterable[Tuple[str, str]], *, drop: frozenset = frozenset()) -> List[Tuple[str, str]]:
    out: List[Tuple[str, str]] = []
    for k, v in items:
        lk = k.lower()
        if lk in _HOP_BY_HOP or lk in drop:
            continue
        out.append((k, v))
    return out


def _forwarded_headers(
    headers: Iterable[Tuple[str, str]],
    *,
    client_host: Optional[str],
    scheme: str,
    host: Optional[str],
) -> List[Tuple[str, str]]:
    items = list(headers)
    prior_for = ", ".join(v for k, v in items if k.lower() == "x-forwarded-for")
    items = [(k, v) for k, v in items if not k.lower().startswith("x-forwarded-")]

    chain = [p for p in (prior_for, client_host or "") if p]
    if chain:
        items.append(("x-forwarded-for", ", ".join(chain)))
    proto = {"ws": "http", "wss": "https"}.get(scheme, scheme)
    items.append(("x-forwarded-proto", proto))
    if host:
        items.append(("x-forwarded-host", host))
    return items


class ReverseProxyRouter:
    def __init__(
        self,
        *,
        endpoint: GatewayEndpoint,
        supervisor: Any,
        store: ConfigStateStore,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        ws_connect: Optional[WsConnect] = None,
    ):
        self._endpoint = endpoint
        self._supervisor = supervisor
        self._store = store
        self._ws_connect = ws_connect or _default_ws_connect
        # No read timeout: upstream responses may be long-lived streams.
        self._client = httpx.AsyncClient(
            base_url=endpoint.base_url,
            timeout=httpx.Timeout(10.0, read=None),
            transport=transport,
            follow_redirects=False,
        )

    @property
    def endpoint(self) -> GatewayEndpoint:
        return self._endpoint

    async def aclose(self) -> None:
        await self._client.aclose()

    def not_ready_hint(self, err: BaseException) -> str:
        last = self._supervisor.last_error
        lines = [
            "Gateway not ready.",
            str(err),
            f"\n{last}" if last and last != str(err) else "",
            "\nTroubleshooting:",
            "- Visit /setup and check the Debug Console",
            "- Visit /setup/api/debug for config + gateway diagnostics",
        ]
        return "\n".join(lines) + "\n"

    # ----------------------------
    # HTTP
    # ----------------------------

    async def handle_http(self, request: Request) -> Response:
        path = request.url.path
        if is_admin_path(path):
            return PlainTextResponse("Not Found\n", status_code=404)

        if not self._store.exists():
            return RedirectResponse("/setup", status_code=302)

        try:
            await self._supervisor.ensure_running()
        except WrapperError as e:
            return PlainTextResponse(self.not_ready_hint(e), status_code=503)

        return await self._forward_http(request)

    async def _forward_http(self, request: Request) -> Response:
        headers = _forwarded_headers(
            _filter_headers(request.headers.items()),
            client_host=request.client.host if request.client else None,
            scheme=request.url.scheme,
            host=request.headers.get("host"),
        )
        has_body = "content-length" in request.headers or "transfer-encoding" in request.headers
        target = request.url.path + (f"?{request.url.query}" if request.url.query else "")

        upstream_req = self._client.build_request(
            request.method,
            target,
            headers=headers,
            content=request.stream() if has_body else None,
        )
        try:
            upstream = await self._client.send(upstream_req, stream=True)
        except httpx.HTTPError as e:
            logger.warning("[proxy] %s %s failed: %s", request.method, target, e)
            raise ProxyUnreachableError(f"Gateway unreachable: {e}") from e

        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        # Raw header list keeps repeated headers (e.g. Set-Cookie).
        response.raw_headers = [
            (k.lower().encode("latin-1"), v.encode("latin-1"))
            for k, v in _filter_headers(upstream.headers.multi_items())
        ]
        return response

    # ----------------------------
    # WebSocket
    # ----------------------------

    async def handle_websocket(self, websocket: WebSocket) -> None:
        path = websocket.url.path
        if is_admin_path(path) or not self._store.exists():
            await websocket.close(code=WS_CLOSE_POLICY_VIOLATION)
            return

        try:
            await self._supervisor.ensure_running()
        except WrapperError as e:
            logger.warning("[ws] gateway not ready for %s: %s", path, e)
            await websocket.close(code=WS_CLOSE_TRY_AGAIN_LATER)
            return

        target = self._endpoint.ws_base_url + path + (f"?{websocket.url.query}" if websocket.url.query else "")
        headers = _forwarded_headers(
            _filter_headers(websocket.headers.items(), drop=_WS_HANDSHAKE),
            client_host=websocket.client.host if websocket.client else None,
            scheme=websocket.url.scheme,
            host=websocket.headers.get("host"),
        )
        subprotocols = list(websocket.scope.get("subprotocols") or [])

        try:
            async with self._ws_connect(target, headers=headers, subprotocols=subprotocols) as upstream:
                await websocket.accept(subprotocol=getattr(upstream, "subprotocol", None))
                await self._relay(websocket, upstream)
        except (OSError, InvalidHandshake, asyncio.TimeoutError) as e:
            logger.warning("[ws] upstream connect failed for %s: %s", path, e)
            with contextlib.suppress(RuntimeError):
                await websocket.close(code=WS_CLOSE_INTERNAL_ERROR)

    async def _relay(self, websocket: WebSocket, upstream: Any) -> None:
        upstream_close: List[Tuple[int, str]] = []

        async def client_to_upstream() -> None:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    code = _sendable_close_code(message.get("code"), WS_CLOSE_NORMAL)
                    with contextlib.suppress(ConnectionClosed):
                        await upstream.close(code=code, reason=str(message.get("reason") or ""))
                    return
                if message.get("text") is not None:
                    await upstream.send(message["text"])
                elif message.get("bytes") is not None:
                    await upstream.send(message["bytes"])

        async def upstream_to_client() -> None:
            try:
                async for data in upstream:
                    if isinstance(data, str):
                        await websocket.send_text(data)
                    else:
                        await websocket.send_bytes(data)
            except ConnectionClosed as e:
                if e.rcvd is not None:
                    upstream_close.append((_sendable_close_code(e.rcvd.code, WS_CLOSE_NORMAL), e.rcvd.reason))
                else:
                    upstream_close.append((WS_CLOSE_INTERNAL_ERROR, ""))
                return
            # Clean close: the connection keeps the code/reason the gateway sent.
            code = _sendable_close_code(getattr(upstream, "close_code", None), WS_CLOSE_NORMAL)
            upstream_close.append((code, str(getattr(upstream, "close_reason", None) or "")))

        tasks = [
            asyncio.ensure_future(client_to_upstream()),
            asyncio.ensure_future(upstream_to_client()),
        ]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for t in tasks:
                if not t.done():
                    t.cancel()
            for t in tasks:
                with contextlib.suppress(asyncio.CancelledError, ConnectionClosed, WebSocketDisconnect, RuntimeError):
                    await t

        code, reason = upstream_close[0] if upstream_close else (WS_CLOSE_NORMAL, "")
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await websocket.close(code=code, reason=reason)
