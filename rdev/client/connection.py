"""Client connection manager for the agent server.

Maintains one WebSocket to the agent, authenticates on open, fans
inbound frames out to subscribers, and correlates requests with their
``<kind>_result`` or ``error`` replies. An abnormal close triggers a
bounded exponential-backoff reconnect with jitter.

Usage:
    client = ClientConnection(ClientConfig.from_env())
    await client.connect()
    await client.wait_until_authenticated()
    commits = await client.request("get_commits", {"owner": "o", "repo": "r"})
"""
from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import aiohttp

from rdev.engine.config import ClientConfig
from rdev.engine.errors import (
    AuthenticationError,
    NotConnectedError,
    ProtocolError,
    RequestError,
    RequestTimeoutError,
    TransportError,
)
from rdev.server import protocol
from rdev.server.protocol import Message

logger = logging.getLogger(__name__)

# Subscriber signature: handler(payload) for exact kinds, handler(message_dict)
# for the "*" wildcard. Either may be a coroutine function.
MessageHandler = Callable[[Any], Any]

_JITTER_FRACTION = 0.25


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass(eq=False)
class _Subscription:
    handler: Callable[[Any], Any]
    # Internal subscriptions receive the decoded Message.
    raw: bool = False


def to_ws_url(url: str) -> str:
    """Accept http(s) server URLs and turn them into ws(s) URLs."""
    if url.startswith("http://") or url.startswith("https://"):
        return "ws" + url[len("http"):]
    return url


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before reconnect *attempt* (0-based), with random jitter."""
    delay = min(base * (2 ** attempt), cap)
    return delay + random.uniform(0, delay * _JITTER_FRACTION)


class ClientConnection:
    """Authenticated, auto-reconnecting WebSocket client."""

    def __init__(
        self,
        config: ClientConfig,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._config = config
        self._url = to_ws_url(config.url)
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._state = ConnectionState.DISCONNECTED
        self._closing = False
        self._attempts = 0
        self._authenticated = False
        self._auth_error: AuthenticationError | None = None
        self._auth_waiters: list[asyncio.Future] = []
        self._pending: set[asyncio.Future] = set()
        self._subscribers: dict[str, list[_Subscription]] = {}
        self._ids = itertools.count(1)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._ws.closed

    @property
    def authenticated(self) -> bool:
        return self._authenticated

    # ── Lifecycle ──

    async def connect(self) -> None:
        """Open the transport. A no-op while open, opening or reconnecting."""
        if self._state is not ConnectionState.DISCONNECTED:
            return
        self._closing = False
        self._attempts = 0
        self._state = ConnectionState.CONNECTING
        try:
            await self._open()
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            self._state = ConnectionState.DISCONNECTED
            logger.error("Failed to connect to %s: %s", self._url, exc)
            raise TransportError(f"Failed to connect to {self._url}: {exc}") from exc

    async def _open(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        ws = await self._session.ws_connect(self._url, heartbeat=30.0)
        self._ws = ws
        self._auth_error = None
        self._state = ConnectionState.CONNECTED
        self._attempts = 0
        logger.info("Connected to %s", self._url)
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        await self._send_message(Message(protocol.AUTH, {"secret": self._config.secret}))

    async def disconnect(self) -> None:
        """Close cleanly and suppress automatic reconnects."""
        self._closing = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
            self._reconnect_task = None
        if self._ws is not None:
            await self._ws.close()
        if self._reader_task is not None:
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        self._ws = None
        self._authenticated = False
        self._state = ConnectionState.DISCONNECTED
        logger.info("Disconnected from %s", self._url)

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for frame in ws:
                if frame.type == aiohttp.WSMsgType.TEXT:
                    try:
                        message = protocol.decode_reply(frame.data)
                    except ProtocolError as exc:
                        logger.warning("Dropping malformed frame from %s: %s", self._url, exc)
                        continue
                    await self._deliver(message)
                elif frame.type == aiohttp.WSMsgType.ERROR:
                    logger.warning("WebSocket error from %s: %s", self._url, ws.exception())
        finally:
            if self._ws is ws:
                self._ws = None
            self._authenticated = False
            self._fail_pending()
            self._on_closed()

    def _fail_pending(self) -> None:
        # Replies are bound to the socket that carried the request.
        pending, self._pending = self._pending, set()
        for fut in pending:
            if not fut.done():
                fut.set_exception(TransportError(f"Connection to {self._url} lost"))

    def _on_closed(self) -> None:
        if self._closing:
            self._state = ConnectionState.DISCONNECTED
            return
        logger.warning("Connection to %s closed unexpectedly", self._url)
        self._state = ConnectionState.RECONNECTING
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        max_attempts = self._config.max_reconnect_attempts
        while not self._closing and self._attempts < max_attempts:
            delay = backoff_delay(
                self._attempts,
                self._config.reconnect_delay_seconds,
                self._config.max_reconnect_delay_seconds,
            )
            self._attempts += 1
            logger.info(
                "Reconnecting to %s in %.1fs (attempt %d/%d)",
                self._url, delay, self._attempts, max_attempts,
            )
            await asyncio.sleep(delay)
            if self._closing:
                break
            try:
                await self._open()
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
                logger.debug("Reconnect attempt %d failed: %s", self._attempts, exc)
                continue
            self._clear_reconnect_task()
            return
        if not self._closing:
            logger.error(
                "Giving up on %s after %d reconnect attempts", self._url, self._attempts,
            )
        self._state = ConnectionState.DISCONNECTED
        self._clear_reconnect_task()

    def _clear_reconnect_task(self) -> None:
        # _on_closed may already have scheduled a newer loop.
        if self._reconnect_task is asyncio.current_task():
            self._reconnect_task = None

    # ── Inbound ──

    async def _deliver(self, message: Message) -> None:
        if message.kind == protocol.AUTH_SUCCESS:
            self._authenticated = True
            self._auth_error = None
            logger.info("Authenticated with %s", self._url)
            self._resolve_auth_waiters(None)
        elif message.kind == protocol.AUTH_FAILED:
            self._authenticated = False
            reason = (message.payload or {}).get("message", "Authentication failed")
            logger.error("Authentication with %s failed: %s", self._url, reason)
            self._auth_error = AuthenticationError(reason)
            self._resolve_auth_waiters(self._auth_error)

        for sub in list(self._subscribers.get(message.kind, ())):
            await self._invoke(sub, message.payload, message)
        for sub in list(self._subscribers.get(protocol.WILDCARD, ())):
            await self._invoke(sub, message.to_dict(), message)

    async def _invoke(self, sub: _Subscription, value: Any, message: Message) -> None:
        try:
            ret = sub.handler(message if sub.raw else value)
            if inspect.isawaitable(ret):
                await ret
        except Exception:
            logger.exception("Subscriber for %s failed", message.kind)

    def _resolve_auth_waiters(self, error: Exception | None) -> None:
        waiters, self._auth_waiters = self._auth_waiters, []
        for fut in waiters:
            if fut.done():
                continue
            if error is None:
                fut.set_result(True)
            else:
                fut.set_exception(error)

    # ── Subscriptions ──

    def _subscribe(self, kind: str, sub: _Subscription) -> Callable[[], None]:
        self._subscribers.setdefault(kind, []).append(sub)

        def unsubscribe() -> None:
            subs = self._subscribers.get(kind)
            if subs and sub in subs:
                subs.remove(sub)

        return unsubscribe

    def on_message(self, kind: str, handler: MessageHandler) -> Callable[[], None]:
        """Subscribe *handler* to *kind* (or ``"*"`` for every frame).

        Returns a function that removes exactly this subscription.
        """
        return self._subscribe(kind, _Subscription(handler))

    # ── Outbound ──

    async def _send_message(self, message: Message) -> bool:
        ws = self._ws
        if ws is None or ws.closed:
            return False
        try:
            await ws.send_str(message.encode())
        except (ConnectionError, RuntimeError) as exc:
            logger.debug("Send of %s failed: %s", message.kind, exc)
            return False
        return True

    async def send(self, kind: str, payload: Any = None) -> bool:
        """Send a frame. Returns False when the transport is not open."""
        return await self._send_message(Message(kind, payload if payload is not None else {}))

    async def wait_until_authenticated(self, timeout: float | None = None) -> None:
        """Wait for ``auth_success``; raise AuthenticationError on ``auth_failed``."""
        if self._authenticated:
            return
        if self._auth_error is not None:
            raise self._auth_error
        fut = asyncio.get_running_loop().create_future()
        self._auth_waiters.append(fut)
        wait = timeout if timeout is not None else self._config.request_timeout_seconds
        try:
            await asyncio.wait_for(fut, timeout=wait)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(protocol.AUTH, wait) from None
        finally:
            if fut in self._auth_waiters:
                self._auth_waiters.remove(fut)

    async def request(
        self,
        kind: str,
        payload: dict[str, Any] | None = None,
        timeout: float | None = None,
        on_progress: MessageHandler | None = None,
    ) -> Any:
        """Send *kind* and wait for its result.

        Raises NotConnectedError when the transport is closed,
        RequestError when the server replies with ``error``, and
        RequestTimeoutError when nothing arrives within *timeout*.
        TransportError when the connection drops while waiting.
        """
        if not self.is_open:
            raise NotConnectedError(kind)

        request_id = str(next(self._ids))
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending.add(future)

        def _matches(message: Message) -> bool:
            return message.id is None or message.id == request_id

        def _on_result(message: Message) -> None:
            if _matches(message) and not future.done():
                future.set_result(message.payload)

        def _on_error(message: Message) -> None:
            payload = message.payload if isinstance(message.payload, dict) else {}
            if payload.get("originalKind") != kind or not _matches(message):
                return
            if not future.done():
                future.set_exception(RequestError(kind, payload.get("message", "Request failed")))

        async def _on_progress(message: Message) -> None:
            if message.id == request_id and on_progress is not None:
                ret = on_progress(message.payload)
                if inspect.isawaitable(ret):
                    await ret

        unsubscribers = [
            self._subscribe(protocol.result_kind(kind), _Subscription(_on_result, raw=True)),
            self._subscribe(protocol.ERROR, _Subscription(_on_error, raw=True)),
        ]
        if on_progress is not None:
            unsubscribers.append(
                self._subscribe(protocol.PROGRESS, _Subscription(_on_progress, raw=True)),
            )

        wait = timeout if timeout is not None else self._config.request_timeout_seconds
        try:
            sent = await self._send_message(Message(kind, payload or {}, id=request_id))
            if not sent:
                raise NotConnectedError(kind)
            logger.debug("Sent request kind=%s id=%s", kind, request_id)
            try:
                return await asyncio.wait_for(future, timeout=wait)
            except asyncio.TimeoutError:
                logger.warning("Request kind=%s id=%s timed out after %.1fs", kind, request_id, wait)
                raise RequestTimeoutError(kind, wait) from None
        finally:
            self._pending.discard(future)
            for unsubscribe in unsubscribers:
                unsubscribe()
