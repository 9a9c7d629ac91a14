"""HTTP front of the backend process.

A small asyncio HTTP/1.1 server bound to loopback. It serves:
- GET /auth/callback   provider redirect target, stages the code
- GET /health          liveness probe
- POST /rpc/<method>   JSON RPC routes of the auth service
Every response closes the connection.
"""

import asyncio
import json
import logging
import signal
import sys
from http import HTTPStatus
from typing import Any
from urllib.parse import unquote, urlparse

from . import __version__
from .auth.callback import CALLBACK_PATH, handle_callback
from .auth.errors import ErrorCode
from .auth.manager import AuthService
from .rpc import dispatch, error_envelope

logger = logging.getLogger(__name__)

SERVICE_NAME = "noderef-backend"
RPC_PREFIX = "/rpc/"

# Largest request body accepted (bytes)
MAX_BODY_SIZE = 1024 * 1024


class ServerError(Exception):
    """The backend server could not start."""


class BackendServer:
    """Loopback HTTP server for the auth service.

    Usage:
        async with BackendServer(service) as server:
            redirect_uri = service.initiator.redirect_uri
            ...
    """

    def __init__(self, service: AuthService, host: str = "127.0.0.1", port: int = 0):
        """Initialize the server.

        Args:
            service: Auth service the routes call into
            host: Interface to bind
            port: Port to bind; 0 lets the OS assign one
        """
        self.service = service
        self.host = host
        self.port = port

        self._server: asyncio.Server | None = None
        self._stop_event: asyncio.Event | None = None

    async def start(self) -> int:
        """Start listening and tell the service its port.

        Returns:
            The bound port
        """
        self._stop_event = asyncio.Event()
        self._server = await asyncio.start_server(self._handle_connection, self.host, self.port)

        sockets = self._server.sockets
        if not sockets:
            raise ServerError("Failed to start backend server: no sockets created")

        self.port = sockets[0].getsockname()[1]
        self.service.bind_port(self.port)
        logger.info(f"Backend listening on http://{self.host}:{self.port}")
        return self.port

    async def stop(self) -> None:
        """Stop the server."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("Backend stopped")

    def request_stop(self) -> None:
        if self._stop_event:
            self._stop_event.set()

    async def serve_until_stopped(self) -> None:
        """Serve until SIGINT/SIGTERM or request_stop()."""
        if self._server is None:
            await self.start()
        self._setup_signal_handlers()
        assert self._stop_event is not None
        try:
            await self._stop_event.wait()
        finally:
            await self.stop()

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def handle_signal(sig: signal.Signals) -> None:
            logger.info(f"Received signal {sig.name}, initiating shutdown")
            self.request_stop()

        if sys.platform != "win32":
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, handle_signal, sig)
        else:
            for sig in (signal.SIGTERM, signal.SIGINT):
                signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(handle_signal, signal.Signals(s)))

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle one HTTP request."""
        try:
            request_line = await reader.readline()
            parts = request_line.decode("utf-8", errors="replace").strip().split(" ")
            if len(parts) < 2:
                await self._send(writer, HTTPStatus.BAD_REQUEST, "text/plain", b"Invalid request")
                return

            method, target = parts[0].upper(), parts[1]

            headers: dict[str, str] = {}
            while True:
                header_line = await reader.readline()
                if header_line in (b"\r\n", b"\n", b""):
                    break
                name, _, value = header_line.decode("latin-1").partition(":")
                headers[name.strip().lower()] = value.strip()

            path = urlparse(target).path

            if path == CALLBACK_PATH:
                if method != "GET":
                    await self._send_method_not_allowed(writer)
                    return
                status, page = handle_callback(target, self.service.slot)
                await self._send_html(writer, status, page)

            elif path == "/health":
                if method != "GET":
                    await self._send_method_not_allowed(writer)
                    return
                await self._send_json(
                    writer,
                    HTTPStatus.OK,
                    {"ok": True, "service": SERVICE_NAME, "version": __version__},
                )

            elif path.startswith(RPC_PREFIX):
                if method != "POST":
                    await self._send_method_not_allowed(writer)
                    return
                await self._handle_rpc(reader, writer, unquote(path[len(RPC_PREFIX):]), headers)

            else:
                await self._send(writer, HTTPStatus.NOT_FOUND, "text/plain", b"Not found")

        except Exception as e:
            logger.exception(f"Error handling request: {e}")
            try:
                await self._send(
                    writer, HTTPStatus.INTERNAL_SERVER_ERROR, "text/plain", b"Internal error"
                )
            except ConnectionError:
                pass

        finally:
            try:
                writer.close()
                await writer.wait_closed()
            except ConnectionError:
                pass

    async def _handle_rpc(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        rpc_method: str,
        headers: dict[str, str],
    ) -> None:
        try:
            length = int(headers.get("content-length", "0"))
        except ValueError:
            length = -1
        if length < 0 or length > MAX_BODY_SIZE:
            await self._send_json(
                writer,
                HTTPStatus.BAD_REQUEST,
                error_envelope(ErrorCode.INVALID_INPUT, "Invalid Content-Length"),
            )
            return

        body = await reader.readexactly(length) if length else b""
        try:
            params: Any = json.loads(body) if body.strip() else {}
        except ValueError:
            await self._send_json(
                writer,
                HTTPStatus.BAD_REQUEST,
                error_envelope(ErrorCode.INVALID_INPUT, "Request body is not valid JSON"),
            )
            return

        logger.debug(f"RPC {rpc_method}")
        envelope = await dispatch(self.service, rpc_method, params)
        await self._send_json(writer, HTTPStatus.OK, envelope)

    async def _send(
        self,
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        content_type: str,
        body: bytes,
        extra_headers: str = "",
    ) -> None:
        head = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: {content_type}\r\n"
            f"Content-Length: {len(body)}\r\n"
            f"Cache-Control: no-store\r\n"
            f"{extra_headers}"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(head.encode("utf-8") + body)
        await writer.drain()

    async def _send_method_not_allowed(self, writer: asyncio.StreamWriter) -> None:
        await self._send(writer, HTTPStatus.METHOD_NOT_ALLOWED, "text/plain", b"Method not allowed")

    async def _send_json(self, writer: asyncio.StreamWriter, status: HTTPStatus, data: Any) -> None:
        body = json.dumps(data, default=str).encode("utf-8")
        await self._send(writer, status, "application/json", body)

    async def _send_html(self, writer: asyncio.StreamWriter, status: HTTPStatus, page: str) -> None:
        """Send an HTML page with security headers."""
        await self._send(
            writer,
            status,
            "text/html; charset=utf-8",
            page.encode("utf-8"),
            extra_headers=(
                "X-Content-Type-Options: nosniff\r\n"
                "X-Frame-Options: DENY\r\n"
                "Content-Security-Policy: default-src 'none'; style-src 'unsafe-inline'\r\n"
            ),
        )

    async def __aenter__(self) -> "BackendServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()
