"""Agent connection server: WebSocket control plane plus HTTP status.

Each inbound WebSocket gets a Connection record and a ``welcome``
frame. Until the client authenticates with the shared secret, every
other message is answered with an ``error`` and never reaches a
handler. Authenticated messages are dispatched by kind to the handler
table; each handler runs as its own task so a long ``execute_command``
never blocks a later ``cancel`` on the same connection.
"""
from __future__ import annotations

import asyncio
import hmac
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from aiohttp import WSCloseCode, WSMsgType, web

from rdev import __version__
from rdev.engine.config import AgentConfig
from rdev.engine.errors import ProtocolError
from rdev.engine.orchestrator import ProcessOrchestrator

from . import protocol
from .handlers import Handler
from .protocol import Message

logger = logging.getLogger(__name__)

WELCOME_MESSAGE = "Connected to Remote Dev Server. Please authenticate."

_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": (
        "Origin, X-Requested-With, Content-Type, Accept, Authorization"
    ),
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
}


def secrets_match(provided: Any, expected: str | None) -> bool:
    """Constant-time shared-secret comparison."""
    if not expected or not isinstance(provided, str):
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


@dataclass
class Connection:
    """One inbound WebSocket. Authentication is a one-way transition."""
    id: str
    ws: web.WebSocketResponse = field(repr=False)
    remote: str | None = None
    authenticated: bool = False
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


class AgentServer:
    """aiohttp application serving the agent protocol and status routes."""

    def __init__(
        self,
        config: AgentConfig,
        handlers: dict[str, Handler],
        orchestrator: ProcessOrchestrator | None = None,
    ) -> None:
        self._config = config
        self._handlers = dict(handlers)
        self._orchestrator = orchestrator
        self._host = config.host
        self._port = config.port
        self._connections: dict[str, Connection] = {}
        self._tasks: set[asyncio.Task] = set()
        self._started_at = time.time()
        self._runner: web.AppRunner | None = None
        self._app = web.Application(
            middlewares=[self._cors_middleware, self._request_logging_middleware],
        )
        self._setup_routes()
        logger.info(
            "AgentServer init host=%s port=%s repos_dir=%s handlers=%s pid=%s",
            self._host, self._port, config.repos_dir,
            ",".join(sorted(self._handlers)), os.getpid(),
        )

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def port(self) -> int:
        return self._port

    @property
    def connections(self) -> list[Connection]:
        return list(self._connections.values())

    # ── Middleware ──

    @web.middleware
    async def _cors_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        if request.method == "OPTIONS":
            return web.Response(status=200, headers=_CORS_HEADERS)
        try:
            response = await handler(request)
        except web.HTTPException as exc:
            exc.headers.update(_CORS_HEADERS)
            raise
        if not response.prepared:
            response.headers.update(_CORS_HEADERS)
        return response

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-rdev-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except web.HTTPException:
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/info", self._handle_info)
        r.add_get("/ws", self._handle_ws)
        r.add_get("/", self._handle_ws)

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "version": __version__,
            "uptimeSeconds": round(max(0.0, time.time() - self._started_at), 3),
        })

    async def _handle_info(self, request: web.Request) -> web.Response:
        header = request.headers.get("Authorization", "")
        token = header[len("Bearer "):] if header.startswith("Bearer ") else None
        if not secrets_match(token, self._config.shared_secret):
            logger.warning("Unauthorized /info request req=%s", request.get("req_id"))
            return web.json_response({"error": "Unauthorized"}, status=401)

        available = False
        if self._orchestrator is not None:
            available = await self._orchestrator.is_available()
        return web.json_response({
            "toolAvailable": available,
            "geminiAvailable": available,
            "reposDir": self._config.repos_dir,
            "connections": len(self._connections),
        })

    # ── WebSocket ──

    async def _handle_ws(self, request: web.Request) -> web.StreamResponse:
        ws = web.WebSocketResponse(heartbeat=30.0)
        if not ws.can_prepare(request).ok:
            raise web.HTTPBadRequest(text="Expected a WebSocket upgrade")
        await ws.prepare(request)

        conn = Connection(id=uuid.uuid4().hex[:8], ws=ws, remote=request.remote)
        self._connections[conn.id] = conn
        logger.info(
            "Client connected conn=%s from=%s active=%d",
            conn.id, conn.remote, len(self._connections),
        )
        await self._send(conn, Message(protocol.WELCOME, {"message": WELCOME_MESSAGE}))

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._on_message(conn, msg.data)
                elif msg.type == WSMsgType.BINARY:
                    await self._send(conn, Message(
                        protocol.ERROR,
                        protocol.error_payload(
                            "Invalid message format: binary frames are not supported", None,
                        ),
                    ))
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("WebSocket error conn=%s: %s", conn.id, ws.exception())
        finally:
            self._connections.pop(conn.id, None)
            logger.info(
                "Client disconnected conn=%s active=%d",
                conn.id, len(self._connections),
            )
        return ws

    async def _on_message(self, conn: Connection, raw: str) -> None:
        try:
            message = protocol.decode(raw)
        except ProtocolError as exc:
            logger.warning("Malformed message conn=%s: %s", conn.id, exc)
            await self._send(conn, Message(protocol.ERROR, protocol.error_payload(str(exc), None)))
            return

        logger.debug("Received conn=%s kind=%s id=%s", conn.id, message.kind, message.id)

        if message.kind == protocol.AUTH:
            await self._authenticate(conn, message)
            return

        if not conn.authenticated:
            logger.warning("Rejected %s from unauthenticated conn=%s", message.kind, conn.id)
            await self._send(conn, message.error("Not authenticated"))
            return

        handler = self._handlers.get(message.kind)
        if handler is None:
            await self._send(conn, message.error(f"Unknown message type: {message.kind}"))
            return

        task = asyncio.create_task(self._dispatch(conn, message, handler))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _authenticate(self, conn: Connection, message: Message) -> None:
        if secrets_match(message.payload.get("secret"), self._config.shared_secret):
            conn.authenticated = True
            logger.info("Client authenticated conn=%s", conn.id)
            await self._send(conn, message.reply(protocol.AUTH_SUCCESS))
        else:
            logger.warning("Authentication failed conn=%s from=%s", conn.id, conn.remote)
            await self._send(conn, message.reply(protocol.AUTH_FAILED, {"message": "Invalid secret"}))

    async def _dispatch(self, conn: Connection, message: Message, handler: Handler) -> None:
        async def emit(event: dict[str, Any]) -> None:
            await self._send(conn, message.reply(protocol.PROGRESS, event))

        start = time.monotonic()
        logger.info("Dispatch conn=%s kind=%s id=%s", conn.id, message.kind, message.id)
        try:
            result = await handler(message.payload, emit)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(
                "Handler %s failed conn=%s id=%s", message.kind, conn.id, message.id,
            )
            await self._send(conn, message.error(str(exc) or type(exc).__name__))
            return
        logger.info(
            "Handler %s finished conn=%s id=%s duration_ms=%.1f",
            message.kind, conn.id, message.id, (time.monotonic() - start) * 1000,
        )
        await self._send(conn, message.result(result))

    async def _send(self, conn: Connection, message: Message) -> bool:
        """Send one frame. Frames to a closed transport are dropped."""
        if conn.ws.closed:
            logger.debug("Dropping %s for closed conn=%s", message.kind, conn.id)
            return False
        async with conn.send_lock:
            try:
                await conn.ws.send_str(message.encode())
            except (ConnectionError, RuntimeError) as exc:
                logger.debug("Send of %s to conn=%s failed: %s", message.kind, conn.id, exc)
                return False
        return True

    async def broadcast(self, message: Message) -> int:
        """Send *message* to every authenticated connection."""
        sent = 0
        for conn in list(self._connections.values()):
            if conn.authenticated and await self._send(conn, message):
                sent += 1
        return sent

    # ── Lifecycle ──

    async def start(self) -> None:
        """Bind and start listening."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()
        self._runner = runner

        actual_port = self._resolve_port(site, runner)
        if actual_port is not None:
            self._port = actual_port
        logger.info("Remote Dev server listening on %s:%d", self._host, self._port)

    async def stop(self) -> None:
        for conn in list(self._connections.values()):
            await conn.ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")
        for task in list(self._tasks):
            task.cancel()
        if self._orchestrator is not None:
            await self._orchestrator.shutdown()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Remote Dev server stopped")

    async def serve_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await self.stop()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None
