from __future__ import annotations

import asyncio
import html

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException
from starlette.requests import Request
from starlette.responses import HTMLResponse, Response
from starlette.types import ASGIApp, Receive, Scope, Send
from starlette.websockets import WebSocket, WebSocketDisconnect

from orchestrator.config import Settings
from orchestrator.core.logging import get_logger
from orchestrator.preview.registry import PreviewRecord, PreviewRegistry

logger = get_logger(__name__)

_HOP_BY_HOP_HEADERS = {
    "host",
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
}
# httpx hands back decoded bodies, so length/encoding must be recomputed.
_BLOCKED_RESPONSE_HEADERS = _HOP_BY_HOP_HEADERS - {"host"} | {"content-encoding"}

NOT_READY_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Preview not ready</title>
<meta http-equiv="refresh" content="5"></head>
<body style="font-family: sans-serif; text-align: center; padding-top: 4rem;">
<h1>Preview not ready</h1>
<p>The preview for <strong>{site_id}</strong> is not running yet.</p>
<p>This page will refresh automatically.</p>
</body>
</html>
"""

BAD_GATEWAY_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Bad gateway</title></head>
<body style="font-family: sans-serif; text-align: center; padding-top: 4rem;">
<h1>Bad gateway</h1>
<p>The dev server for <strong>{site_id}</strong> did not respond.</p>
</body>
</html>
"""


def extract_site_id(host: str | None, preview_domain: str, reserved: set[str]) -> str | None:
    """Return the site id encoded in ``host`` or None if the request is not a preview.

    Only ``<label>.<preview_domain>`` with a single, non-reserved label counts.
    """
    if not host:
        return None
    hostname = host.strip().lower()
    if hostname.startswith("["):
        return None
    hostname = hostname.rsplit(":", 1)[0] if ":" in hostname else hostname
    hostname = hostname.rstrip(".")
    suffix = "." + preview_domain.strip().lower().rstrip(".")
    if not hostname.endswith(suffix):
        return None
    label = hostname[: -len(suffix)]
    if not label or "." in label or label in reserved:
        return None
    return label


def _proxy_request_headers(headers: list[tuple[str, str]], upstream_origin: str) -> dict[str, str]:
    forwarded: dict[str, str] = {}
    for key, value in headers:
        lowered = key.lower()
        if lowered in _HOP_BY_HOP_HEADERS:
            continue
        if lowered == "origin":
            value = upstream_origin
        forwarded[key] = value
    return forwarded


def _proxy_response_headers(headers: httpx.Headers) -> list[tuple[str, str]]:
    return [
        (key, value)
        for key, value in headers.multi_items()
        if key.lower() not in _BLOCKED_RESPONSE_HEADERS
    ]


class PreviewProxyMiddleware:
    """Routes ``<siteId>.<previewDomain>`` traffic to the site's dev server.

    Sits in front of the API app as raw ASGI middleware so request bodies and
    WebSocket handshakes reach the dev server untouched. Requests for any
    other host fall through to the wrapped application.
    """

    def __init__(
        self,
        app: ASGIApp,
        registry: PreviewRegistry,
        settings: Settings,
    ) -> None:
        self.app = app
        self._registry = registry
        self._settings = settings
        self._reserved = settings.reserved_subdomain_set

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] not in ("http", "websocket"):
            await self.app(scope, receive, send)
            return

        host = None
        for key, value in scope.get("headers") or []:
            if key == b"host":
                host = value.decode("latin-1")
                break
        site_id = extract_site_id(host, self._settings.preview_domain, self._reserved)
        if site_id is None:
            await self.app(scope, receive, send)
            return

        record = self._registry.get(site_id)
        if record is None or record.status != "running":
            if scope["type"] == "websocket":
                await WebSocket(scope, receive, send).close(code=1013)
                return
            response = HTMLResponse(
                NOT_READY_PAGE.format(site_id=html.escape(site_id)), status_code=503
            )
            await response(scope, receive, send)
            return

        record.touch()
        if scope["type"] == "websocket":
            await self._proxy_websocket(record, WebSocket(scope, receive, send))
            return
        response = await self._proxy_http(record, Request(scope, receive))
        await response(scope, receive, send)

    def _upstream_base(self, record: PreviewRecord, scheme: str = "http") -> str:
        return f"{scheme}://{self._settings.upstream_host}:{record.port}"

    def _upstream_url(self, record: PreviewRecord, scope: Scope, scheme: str) -> str:
        path = scope.get("raw_path") or scope["path"].encode("utf-8")
        if isinstance(path, bytes):
            path = path.decode("latin-1")
        url = f"{self._upstream_base(record, scheme)}{path}"
        query = scope.get("query_string") or b""
        if query:
            url = f"{url}?{query.decode('latin-1')}"
        return url

    async def _proxy_http(self, record: PreviewRecord, request: Request) -> Response:
        body = await request.body()
        upstream_url = self._upstream_url(record, request.scope, "http")
        headers = _proxy_request_headers(
            request.headers.items(), self._upstream_base(record)
        )
        timeout = httpx.Timeout(connect=2.0, read=30.0, write=30.0, pool=5.0)
        try:
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=False) as client:
                upstream_response = await client.request(
                    request.method, upstream_url, content=body or None, headers=headers
                )
        except httpx.HTTPError as exc:
            logger.warning(f"[{record.site_id}] Proxy to port {record.port} failed: {exc}")
            return HTMLResponse(
                BAD_GATEWAY_PAGE.format(site_id=html.escape(record.site_id)),
                status_code=502,
            )

        response = Response(
            content=upstream_response.content,
            status_code=upstream_response.status_code,
        )
        # Keep the content-length computed for the decoded body.
        response.raw_headers = [
            header for header in response.raw_headers if header[0] == b"content-length"
        ] + [
            (key.lower().encode("latin-1"), value.encode("latin-1"))
            for key, value in _proxy_response_headers(upstream_response.headers)
        ]
        return response

    async def _proxy_websocket(self, record: PreviewRecord, websocket: WebSocket) -> None:
        upstream_url = self._upstream_url(record, websocket.scope, "ws")
        subprotocols = websocket.scope.get("subprotocols") or []
        try:
            upstream = await websockets.connect(
                upstream_url,
                subprotocols=subprotocols or None,
                max_size=None,
                open_timeout=5,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            logger.warning(f"[{record.site_id}] WebSocket proxy to port {record.port} failed: {exc}")
            await websocket.close(code=1011)
            return

        try:
            await websocket.accept(subprotocol=upstream.subprotocol)

            async def downstream_to_upstream() -> None:
                while True:
                    message = await websocket.receive()
                    if message.get("type") == "websocket.disconnect":
                        break
                    text = message.get("text")
                    data = message.get("bytes")
                    if text is not None:
                        await upstream.send(text)
                    elif data is not None:
                        await upstream.send(data)

            async def upstream_to_downstream() -> None:
                async for message in upstream:
                    if isinstance(message, bytes):
                        await websocket.send_bytes(message)
                    else:
                        await websocket.send_text(str(message))

            down_task = asyncio.create_task(downstream_to_upstream())
            up_task = asyncio.create_task(upstream_to_downstream())
            done, pending = await asyncio.wait(
                {down_task, up_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            for task in pending:
                task.cancel()
            for task in done:
                task.result()
            if up_task in done:
                await websocket.close()
        except (WebSocketDisconnect, ConnectionClosed):
            return
        finally:
            await upstream.close()
