"""Forwarder: one inbound request → one backend call → one client response.

Pipeline for a single request:

  1. build_target_url()        <base>/<path>[?<query>]; on the mount, <path>
                               comes from raw_subpath(), still percent-encoded
  2. build_upstream_headers()  header policy + bearer credential
  3. has_request_body()        attach the inbound body (streamed) or nothing
  4. send                      shared httpx.AsyncClient, bounded timeout
  5. resolve_redirect()        PASSTHROUGH or REDIRECT_REWRITE
  6. normalize_response() / build_redirect_response()

Redirect state machine (ForwardState):

    FORWARDING ──upstream responds──► PASSTHROUGH ──────► DONE
                                 └──► REDIRECT_REWRITE ──► DONE

  RedirectMode.FOLLOW: httpx resolves 3xx server-side; the client only ever
  sees the final response, so the transition is always PASSTHROUGH.
  RedirectMode.MANUAL: a 3xx carrying ``Location`` becomes a 307 to that
  location (REDIRECT_REWRITE); a 3xx without one is passed through verbatim.

Failure taxonomy:
  - transport error (connect, DNS, timeout, protocol, invalid URL, a streamed
    body that cannot be replayed on redirect) → HTTP 500 {"error": "..."}
  - backend 4xx/5xx                          → passed through verbatim
  - client disconnect while the backend call is outstanding → backend call
    cancelled, 499 logged, nothing written to the client

Nothing is retried.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import AsyncIterator, Optional
from urllib.parse import quote

import httpx
from starlette.requests import ClientDisconnect, Request
from starlette.responses import Response

from gateway.constants import (
    BODYLESS_METHODS,
    CLIENT_CLOSED_REQUEST,
    DEFAULT_UPSTREAM_TIMEOUT_S,
)
from gateway.models.errors import build_upstream_failure_response
from gateway.proxy.headers import build_upstream_headers
from gateway.proxy.responses import build_redirect_response, normalize_response
from gateway.utils.logger import get_logger

logger = get_logger(__name__)


# ─── Redirect state machine ───────────────────────────────────────────────────


class RedirectMode(str, Enum):
    FOLLOW = "follow"
    MANUAL = "manual"


class ForwardState(str, Enum):
    FORWARDING = "forwarding"
    PASSTHROUGH = "passthrough"
    REDIRECT_REWRITE = "redirect_rewrite"
    DONE = "done"


def resolve_redirect(
    mode: RedirectMode,
    status_code: int,
    location: Optional[str],
) -> ForwardState:
    """Transition out of FORWARDING once the backend has answered."""
    if mode is RedirectMode.MANUAL and 300 <= status_code < 400 and location:
        return ForwardState.REDIRECT_REWRITE
    return ForwardState.PASSTHROUGH


# ─── Request shaping ──────────────────────────────────────────────────────────


def build_target_url(base_url: str, path: str, query: str = "") -> str:
    """Concatenate base, path and query.

    The path is not sanitized; ``..`` segments and encoded characters are
    carried as received. A single leading slash on ``path`` is absorbed so
    both ``"items/1"`` and ``"/items/1"`` join cleanly.
    """
    if path.startswith("/"):
        path = path[1:]
    url = f"{base_url.rstrip('/')}/{path}"
    if query:
        url = f"{url}?{query}"
    return url


def raw_subpath(request: Request, mount_path: str) -> str:
    """Sub-path below ``mount_path`` exactly as the client sent it.

    Taken from the ASGI ``raw_path`` so percent-encoded characters (``%2F``,
    ``%3F``, ``%23``) stay encoded. Falls back to re-quoting the decoded path
    when the raw bytes do not start with the mount literally (an encoded
    character inside the mount itself).
    """
    root_path = request.scope.get("root_path", "")
    raw = request.scope.get("raw_path")
    if raw is not None:
        path = raw.decode("latin-1").split("?", 1)[0]
        if root_path and path.startswith(root_path):
            path = path[len(root_path):]
        if path == mount_path or path.startswith(mount_path + "/"):
            return path[len(mount_path):].lstrip("/")

    decoded = request.path_params.get("path", "")
    return quote(decoded, safe="/:@!$&'()*+,;=-._~")


def has_request_body(request: Request) -> bool:
    """True when the inbound request carries a body worth forwarding.

    GET and HEAD never do. Other methods do when the client declared one,
    either with ``transfer-encoding`` or a positive ``content-length``.
    """
    if request.method.upper() in BODYLESS_METHODS:
        return False
    if "transfer-encoding" in request.headers:
        return True
    try:
        return int(request.headers.get("content-length", "0")) > 0
    except ValueError:
        return False


def _describe(exc: BaseException) -> str:
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


# ─── Forwarder ────────────────────────────────────────────────────────────────


class Forwarder:
    """Forwards requests to one backend through the shared httpx client.

    Args:
        http_client: Shared client from app.state.http_client.
        base_url:    Backend base URL, trailing slash already stripped.
        timeout_s:   Total timeout for one backend call.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str,
        timeout_s: float = DEFAULT_UPSTREAM_TIMEOUT_S,
    ) -> None:
        self._client = http_client
        self._base_url = base_url.rstrip("/")
        self._timeout = httpx.Timeout(timeout_s)

    @property
    def base_url(self) -> str:
        return self._base_url

    async def forward(
        self,
        request: Request,
        path: str,
        credential: Optional[str] = None,
        redirect_mode: RedirectMode = RedirectMode.FOLLOW,
    ) -> Response:
        """Forward ``request`` to ``<base>/<path>`` and build the client response."""
        upstream_url = build_target_url(self._base_url, path, request.url.query)
        headers = build_upstream_headers(request.headers.items(), credential)

        body_consumed = asyncio.Event()
        content: Optional[AsyncIterator[bytes]] = None
        if has_request_body(request):
            content = self._stream_body(request, body_consumed)
        else:
            body_consumed.set()

        send_task = asyncio.ensure_future(
            self._send(request.method, upstream_url, headers, content, redirect_mode)
        )
        watch_task = asyncio.ensure_future(
            self._wait_for_disconnect(request, body_consumed)
        )
        try:
            done, _ = await asyncio.wait(
                {send_task, watch_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if send_task not in done and watch_task.exception() is not None:
                # The watcher failed rather than saw a disconnect.
                await asyncio.wait({send_task})
        finally:
            watch_task.cancel()
            await asyncio.wait({watch_task})
            if not send_task.done():
                send_task.cancel()
                await asyncio.wait({send_task})

        if send_task.cancelled():
            return self._client_gone(request, upstream_url)

        exc = send_task.exception()
        if isinstance(exc, ClientDisconnect):
            return self._client_gone(request, upstream_url)
        if isinstance(exc, (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError)):
            logger.warning(
                "upstream_unavailable",
                method=request.method,
                upstream_url=upstream_url,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return build_upstream_failure_response(_describe(exc))
        if exc is not None:
            raise exc

        upstream_response: httpx.Response = send_task.result()
        location = upstream_response.headers.get("location")
        state = resolve_redirect(redirect_mode, upstream_response.status_code, location)

        if state is ForwardState.REDIRECT_REWRITE:
            response = build_redirect_response(location)
        else:
            response = normalize_response(
                upstream_response.status_code,
                upstream_response.headers.multi_items(),
                upstream_response.content,
            )

        logger.info(
            "request_proxied",
            method=request.method,
            path=request.url.path,
            upstream=upstream_url,
            status_code=upstream_response.status_code,
            client_status=response.status_code,
            redirect_mode=redirect_mode.value,
            state=state.value,
            authenticated=credential is not None,
        )
        return response

    async def _send(
        self,
        method: str,
        url: str,
        headers: list[tuple[str, str]],
        content: Optional[AsyncIterator[bytes]],
        redirect_mode: RedirectMode,
    ) -> httpx.Response:
        upstream_request = self._client.build_request(
            method=method,
            url=url,
            headers=headers,
            content=content,
            timeout=self._timeout,
        )
        upstream_response = await self._client.send(
            upstream_request,
            stream=True,
            follow_redirects=redirect_mode is RedirectMode.FOLLOW,
        )
        try:
            await upstream_response.aread()
        finally:
            await upstream_response.aclose()
        return upstream_response

    @staticmethod
    async def _stream_body(
        request: Request,
        body_consumed: asyncio.Event,
    ) -> AsyncIterator[bytes]:
        async for chunk in request.stream():
            if chunk:
                yield chunk
        body_consumed.set()

    @staticmethod
    async def _wait_for_disconnect(request: Request, body_consumed: asyncio.Event) -> None:
        # receive() belongs to the body stream until it has been drained.
        await body_consumed.wait()
        while True:
            message = await request.receive()
            if message["type"] == "http.disconnect":
                return

    @staticmethod
    def _client_gone(request: Request, upstream_url: str) -> Response:
        logger.info(
            "client_disconnected",
            method=request.method,
            path=request.url.path,
            upstream=upstream_url,
            status_code=CLIENT_CLOSED_REQUEST,
        )
        return Response(status_code=CLIENT_CLOSED_REQUEST)
