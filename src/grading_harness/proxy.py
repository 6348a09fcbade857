"""Intercepting proxy between the client under test and the real server.

The client talks to a well-known public port; the proxy relays to the real
server port and records what passed through into the capture store.

Two mutually exclusive modes:

1. HTTP: a FastAPI catch-all route served by an embedded uvicorn server.
   Each request is rebuilt and forwarded with httpx. The request body is
   stored under ``servers-req``, the response body under ``servers-resp``
   and {method, status, byte size} as HTTP metadata, all keyed by the run
   context's current question and stage. Console scopes are never touched.
2. TCP: raw bidirectional relay with two copy loops per connection that
   stop as soon as either direction finishes. Relayed bytes are appended to
   ``servers-req`` (client to server) and ``servers-resp`` (server to client).

Forwarding failures return a synthetic 502/504 to the caller instead of
crashing the proxy. A bind failure raises NetworkError.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import json
import logging
import os
import socket
from typing import Optional

import httpx
import uvicorn
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse, Response

from .capture import HttpMetadata, Scope
from .context import RunContext
from .errors import ErrorCode, NetworkError
from .models import Protocol

logger = logging.getLogger(__name__)

_RELAY_CHUNK = 8192
_STARTUP_TIMEOUT = 5.0

# Hop-by-hop headers (RFC 9110 section 7.6.1).
HOP_BY_HOP_HEADERS: frozenset[str] = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

# Recomputed by httpx / Starlette on each side of the relay.
STRIP_REQUEST_HEADERS: frozenset[str] = frozenset({
    "host",
    "content-length",
    "accept-encoding",
})

STRIP_RESPONSE_HEADERS: frozenset[str] = frozenset({
    "content-length",
    "content-encoding",
})

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def _forward_request_headers(headers) -> dict[str, str]:
    forwarded: dict[str, str] = {}
    for key, value in headers.items():
        lower_key = key.lower()
        if lower_key in HOP_BY_HOP_HEADERS or lower_key in STRIP_REQUEST_HEADERS:
            continue
        forwarded[key] = value
    return forwarded


def _relay_response_headers(headers: httpx.Headers) -> list[tuple[str, str]]:
    """Upstream headers to relay, repeated ones (Set-Cookie) kept apart."""
    return [
        (key, value)
        for key, value in headers.multi_items()
        if key.lower() not in HOP_BY_HOP_HEADERS
        and key.lower() not in STRIP_RESPONSE_HEADERS
    ]


def decode_payload(body: bytes) -> str:
    """Body as text, or a placeholder when it is not valid UTF-8."""
    try:
        return body.decode("utf-8")
    except UnicodeDecodeError:
        return f"<binary {len(body)} bytes>"


def measure_payload(body: bytes) -> int:
    """Byte size of a payload, measuring JSON in compact canonical form.

    Formatting differences in the real server's JSON (indentation, spaces
    after separators) must not leak into byte-size checks.
    """
    try:
        text = body.decode("utf-8").lstrip("\ufeff")
    except UnicodeDecodeError:
        return len(body)
    stripped = text.strip()
    if stripped[:1] in ("{", "["):
        try:
            value = json.loads(stripped)
        except ValueError:
            return len(body)
        compact = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
        return len(compact.encode("utf-8"))
    return len(body)


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the host."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def _bind_socket(host: str, port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        if os.name != "nt":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    sock.setblocking(False)
    return sock


class ProxyInterceptor:
    """Recording proxy from ``public_port`` to ``real_port``.

    Example:
        proxy = ProxyInterceptor(context, public_port=5000, real_port=5001)
        await proxy.start(Protocol.HTTP)
        ...
        await proxy.stop()
    """

    def __init__(
        self,
        context: RunContext,
        *,
        host: str = "127.0.0.1",
        public_port: int = 5000,
        real_port: int = 5001,
        upstream_host: Optional[str] = None,
        forward_timeout: float = 30.0,
        stop_grace: float = 2.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._context = context
        self._host = host
        self._public_port = public_port
        self._real_port = real_port
        self._upstream_host = upstream_host or host
        self._forward_timeout = forward_timeout
        self._stop_grace = stop_grace
        self._injected_client = client
        self._client: Optional[httpx.AsyncClient] = client

        self._mode: Optional[Protocol] = None
        self._bound_port: Optional[int] = None
        self._http_server: Optional[_EmbeddedServer] = None
        self._serve_task: Optional[asyncio.Task] = None
        self._socket: Optional[socket.socket] = None
        self._tcp_server: Optional[asyncio.Server] = None
        self._handlers: set[asyncio.Task] = set()

    @property
    def mode(self) -> Optional[Protocol]:
        return self._mode

    @property
    def running(self) -> bool:
        return self._mode is not None

    @property
    def bound_port(self) -> Optional[int]:
        """Port actually listened on (useful when public_port is 0)."""
        return self._bound_port

    @property
    def upstream_base_url(self) -> str:
        return f"http://{self._upstream_host}:{self._real_port}"

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self, mode: Protocol) -> None:
        """Start listening in ``mode``. Restarts if running in another mode."""
        if self._mode is mode:
            return
        if self._mode is not None:
            await self.stop()

        if mode is Protocol.HTTP:
            await self._start_http()
        else:
            await self._start_tcp()
        self._mode = mode
        logger.info(
            "Proxy started in %s mode on %s:%s -> %s",
            mode.value, self._host, self._bound_port, self.upstream_base_url,
        )

    async def stop(self) -> None:
        """Stop listening; wait up to the grace period for in-flight handlers."""
        if self._mode is None:
            return
        mode = self._mode
        self._mode = None
        try:
            if self._http_server is not None:
                await self._stop_http()
            if self._tcp_server is not None:
                await self._stop_tcp()
        finally:
            if self._client is not None and self._injected_client is None:
                await self._client.aclose()
                self._client = None
            self._bound_port = None
            logger.info("Proxy stopped (%s mode)", mode.value)

    # ── HTTP mode ──────────────────────────────────────────────────

    def build_app(self) -> FastAPI:
        """FastAPI app with a catch-all forwarding route."""
        router = APIRouter(tags=["intercept"])

        @router.api_route("/{path:path}", methods=PROXY_METHODS)
        async def intercept(path: str, request: Request) -> Response:
            return await self._forward(request)

        app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
        app.include_router(router)
        return app

    async def _start_http(self) -> None:
        try:
            sock = _bind_socket(self._host, self._public_port)
        except OSError as exc:
            raise NetworkError(
                f"Proxy could not bind {self._host}:{self._public_port}: {exc}",
                code=ErrorCode.PROXY_START_FAILED,
            ) from exc
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._forward_timeout, trust_env=False)

        config = uvicorn.Config(
            self.build_app(),
            lifespan="off",
            log_level="warning",
            access_log=False,
            log_config=None,
        )
        server = _EmbeddedServer(config)
        task = asyncio.create_task(server.serve(sockets=[sock]))
        self._socket = sock
        self._http_server = server
        self._serve_task = task
        self._bound_port = sock.getsockname()[1]

        loop = asyncio.get_running_loop()
        deadline = loop.time() + _STARTUP_TIMEOUT
        while not server.started:
            if task.done() or loop.time() > deadline:
                await self._stop_http()
                raise NetworkError(
                    f"Proxy failed to start on port {self._bound_port}",
                    code=ErrorCode.PROXY_START_FAILED,
                )
            await asyncio.sleep(0.01)

    async def _stop_http(self) -> None:
        server, task = self._http_server, self._serve_task
        self._http_server = None
        self._serve_task = None
        try:
            if server is not None and task is not None:
                server.should_exit = True
                _, pending = await asyncio.wait({task}, timeout=self._stop_grace)
                if pending:
                    logger.warning("Proxy handlers still busy after %.1fs; forcing exit", self._stop_grace)
                    server.force_exit = True
                    task.cancel()
                    await asyncio.gather(task, return_exceptions=True)
                elif not task.cancelled() and task.exception() is not None:
                    logger.warning("Proxy server exited with error: %s", task.exception())
        finally:
            if self._socket is not None:
                self._socket.close()
                self._socket = None

    async def _forward(self, request: Request) -> Response:
        body = await request.body()
        target_url = f"{self.upstream_base_url}{request.url.path}"
        if request.url.query:
            target_url = f"{target_url}?{request.url.query}"

        client = self._client
        if client is None:
            client = self._client = httpx.AsyncClient(timeout=self._forward_timeout, trust_env=False)

        try:
            upstream = await client.request(
                method=request.method,
                url=target_url,
                headers=_forward_request_headers(request.headers),
                content=body if body else None,
                timeout=self._forward_timeout,
            )
        except httpx.TimeoutException:
            logger.warning("Proxy timeout for %s %s", request.method, target_url)
            return JSONResponse(
                status_code=504,
                content={
                    "code": "UPSTREAM_TIMEOUT",
                    "message": "Server did not respond in time",
                },
            )
        except httpx.HTTPError as exc:
            logger.warning("Proxy forwarding failed for %s %s: %s", request.method, target_url, exc)
            return JSONResponse(
                status_code=502,
                content={
                    "code": "UPSTREAM_UNAVAILABLE",
                    "message": f"Could not reach server: {exc}",
                },
            )

        self.record_exchange(request.method, body, upstream.status_code, upstream.content)
        logger.debug(
            "Proxied %s %s -> %s (%d bytes)",
            request.method, request.url.path, upstream.status_code, len(upstream.content),
        )
        response = Response(content=upstream.content, status_code=upstream.status_code)
        for key, value in _relay_response_headers(upstream.headers):
            response.headers.append(key, value)
        return response

    def record_exchange(
        self,
        method: str,
        request_body: bytes,
        status_code: int,
        response_body: bytes,
    ) -> None:
        """Store one HTTP exchange under the current question and stage."""
        question, stage = self._context.question_code, self._context.stage
        store = self._context.store
        store.replace(Scope.SERVERS_REQUEST, question, stage, decode_payload(request_body))
        store.replace(Scope.SERVERS_RESPONSE, question, stage, decode_payload(response_body))
        store.set_metadata(
            question,
            stage,
            HttpMetadata(
                http_method=method.upper(),
                status_code=status_code,
                byte_size=measure_payload(response_body),
            ),
        )

    # ── TCP mode ───────────────────────────────────────────────────

    async def _start_tcp(self) -> None:
        try:
            self._tcp_server = await asyncio.start_server(
                self._handle_tcp, self._host, self._public_port
            )
        except OSError as exc:
            raise NetworkError(
                f"Proxy could not bind {self._host}:{self._public_port}: {exc}",
                code=ErrorCode.PROXY_START_FAILED,
            ) from exc
        self._bound_port = self._tcp_server.sockets[0].getsockname()[1]

    async def _stop_tcp(self) -> None:
        server = self._tcp_server
        self._tcp_server = None
        server.close()
        if self._handlers:
            _, pending = await asyncio.wait(set(self._handlers), timeout=self._stop_grace)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        try:
            await asyncio.wait_for(server.wait_closed(), self._stop_grace)
        except asyncio.TimeoutError:
            logger.warning("TCP listener did not close within %.1fs", self._stop_grace)

    async def _handle_tcp(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
    ) -> None:
        task = asyncio.current_task()
        self._handlers.add(task)
        try:
            try:
                upstream_reader, upstream_writer = await asyncio.open_connection(
                    self._upstream_host, self._real_port
                )
            except OSError as exc:
                logger.warning(
                    "TCP relay could not reach %s:%s: %s",
                    self._upstream_host, self._real_port, exc,
                )
                return
            try:
                await self._relay_pair(
                    client_reader, client_writer, upstream_reader, upstream_writer
                )
            finally:
                upstream_writer.close()
        finally:
            client_writer.close()
            self._handlers.discard(task)

    async def _relay_pair(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        upstream_reader: asyncio.StreamReader,
        upstream_writer: asyncio.StreamWriter,
    ) -> None:
        to_server = asyncio.create_task(
            self._copy(client_reader, upstream_writer, Scope.SERVERS_REQUEST)
        )
        to_client = asyncio.create_task(
            self._copy(upstream_reader, client_writer, Scope.SERVERS_RESPONSE)
        )
        tasks = {to_server, to_client}
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for t in tasks:
                if not t.done():
                    t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for t in done:
            if not t.cancelled() and t.exception() is not None:
                logger.warning("%s: %s", ErrorCode.TCP_RELAY_ERROR.value, t.exception())

    async def _copy(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        scope: Scope,
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await reader.read(_RELAY_CHUNK)
            if not chunk:
                return
            writer.write(chunk)
            await writer.drain()
            text = decoder.decode(chunk)
            if text:
                self._context.store.append(
                    scope, self._context.question_code, self._context.stage, text
                )
