"""RabbitMQ connection management and publishing.

This module wraps ``aio_pika`` to provide:
- A process-wide ``BrokerConnection``: constructed once at startup, passed to
  every channel session, closed at shutdown
- Robust connections with optional TLS/mTLS and a bounded initial retry loop
- Connect/disconnect lifecycle hooks and replay of session setup on reconnect
- A DNS reachability probe (``is_attached``)
- ``publish_to_queue`` for persistent JSON publishing via the default exchange

Example:
    >>> connection = BrokerConnection(Settings().queue_url)
    >>> await connection.connect()
    >>> producer = await open_producer(connection, "payments")
    >>> await producer.send_to_queue({"tx": "0xabc"})
    >>> await connection.close()
"""

from __future__ import annotations

import asyncio
import logging
import socket
import ssl
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Union
from urllib.parse import urlsplit

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractRobustConnection, HeadersType
from aio_pika.exceptions import AMQPConnectionError

from oracle_queue.codec import build_message
from oracle_queue.config import Settings
from oracle_queue.errors import NotAttachedError, TopologyError
from oracle_queue.metrics import CONNECTION_EVENTS_TOTAL, PUBLISHED_TOTAL

if TYPE_CHECKING:
    from oracle_queue.sessions import ChannelSession

logger = logging.getLogger(__name__)

STATE_CONNECTING = "connecting"
STATE_CONNECTED = "connected"
STATE_DISCONNECTED = "disconnected"

Hook = Callable[..., Union[None, Awaitable[None]]]


def _build_ssl_context(settings: Settings, url: str) -> Optional[ssl.SSLContext]:
    """Return an ``ssl.SSLContext`` for TLS/mTLS if configured, else ``None``.

    When verification is disabled (dev/local), hostname checks and certificate
    verification are relaxed.
    """
    scheme = urlsplit(url).scheme.lower()
    wants_tls = scheme == "amqps" or any(
        [
            bool(settings.rabbitmq_ssl_ca_path),
            bool(settings.rabbitmq_ssl_cert_path),
            bool(settings.rabbitmq_ssl_key_path),
        ]
    )
    if not wants_tls:
        return None

    context = ssl.create_default_context(cafile=settings.rabbitmq_ssl_ca_path or None)

    if settings.rabbitmq_ssl_cert_path and settings.rabbitmq_ssl_key_path:
        context.load_cert_chain(settings.rabbitmq_ssl_cert_path, settings.rabbitmq_ssl_key_path)

    if not settings.rabbitmq_ssl_verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    else:
        context.check_hostname = bool(settings.rabbitmq_ssl_check_hostname)
        context.verify_mode = ssl.CERT_REQUIRED

    return context


async def connect_robust(url: str, settings: Settings) -> AbstractRobustConnection:
    """Open a robust AMQP connection, retrying the first attempt with backoff.

    Once established, aio-pika's robust connection handles reconnects itself;
    this loop only covers a broker that is not up yet when the process starts.
    """
    ssl_context = _build_ssl_context(settings, url)
    delay_ms = settings.connect_base_delay_ms
    max_attempts = max(settings.connect_attempts, 1)

    last_exc: Exception | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            if ssl_context is not None:
                return await aio_pika.connect_robust(url, ssl=True, ssl_context=ssl_context)
            return await aio_pika.connect_robust(url)
        except (ConnectionError, OSError, AMQPConnectionError) as exc:
            last_exc = exc
            if attempt == max_attempts:
                break
            logger.warning("broker connect attempt %d/%d failed: %s", attempt, max_attempts, exc)
            await asyncio.sleep(delay_ms / 1000.0)
            delay_ms = min(int(delay_ms * 2), settings.connect_max_delay_ms)
    assert last_exc is not None
    raise last_exc


async def resolve_host(url: Optional[str]) -> bool:
    """Return True when the host of ``url`` resolves through DNS.

    Fails closed: a missing URL or a URL without a host is not reachable. This
    is a liveness probe only, no AMQP handshake is attempted.
    """
    if not url:
        return False
    host = urlsplit(url).hostname
    if not host:
        return False
    loop = asyncio.get_running_loop()
    try:
        await loop.getaddrinfo(host, None)
    except (socket.gaierror, OSError) as exc:
        logger.debug("DNS lookup for %s failed: %s", host, exc)
        return False
    return True


async def is_attached(url: Optional[str] = None) -> bool:
    """Return whether this process is attached to a broker.

    Uses ``ORACLE_QUEUE_URL`` from the environment when ``url`` is omitted.
    """
    if url is None:
        url = Settings().queue_url
    return await resolve_host(url)


def _default_on_connect() -> None:
    logger.info("Connected to amqp Broker")


def _default_on_disconnect(exc: Optional[BaseException] = None) -> None:
    if exc is not None:
        logger.error("Disconnected from amqp Broker: %s", exc)
    else:
        logger.error("Disconnected from amqp Broker")


async def _call_hook(hook: Hook, *args: Any) -> None:
    result = hook(*args)
    if asyncio.iscoroutine(result):
        await result


class BrokerConnection:
    """The single broker connection of a process.

    Owns one robust aio-pika connection shared by every channel session.
    Sessions register themselves so their setup routine re-runs after each
    reconnect. Construct at startup, ``await close()`` at shutdown, or use as
    an async context manager.

    Properties:
    - `url`: broker URL, ``None`` when the process is not attached
    - `state`: ``connecting`` | ``connected`` | ``disconnected``
    - `on_connect` / `on_disconnect`: lifecycle hooks (default: log)
    """

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        settings: Optional[Settings] = None,
        on_connect: Optional[Hook] = None,
        on_disconnect: Optional[Hook] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.url = url if url is not None else self.settings.queue_url
        self.on_connect = on_connect or _default_on_connect
        self.on_disconnect = on_disconnect or _default_on_disconnect
        self.state = STATE_DISCONNECTED
        self._connection: AbstractRobustConnection | None = None
        self._sessions: list["ChannelSession"] = []
        self._lock = asyncio.Lock()
        self._setup_retry_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    async def is_reachable(self) -> bool:
        return await resolve_host(self.url)

    async def connect(self) -> AbstractRobustConnection:
        """Establish the connection, or return the live one."""
        if not self.url:
            raise NotAttachedError()
        async with self._lock:
            if self._connection is not None and not self._connection.is_closed:
                return self._connection
            self.state = STATE_CONNECTING
            try:
                connection = await connect_robust(self.url, self.settings)
            except Exception:
                self.state = STATE_DISCONNECTED
                raise
            connection.reconnect_callbacks.add(self._handle_reconnect)
            connection.close_callbacks.add(self._handle_close)
            self._connection = connection
            self.state = STATE_CONNECTED
        CONNECTION_EVENTS_TOTAL.labels(event="connect").inc()
        await _call_hook(self.on_connect)
        return connection

    async def channel(self) -> AbstractChannel:
        connection = await self.connect()
        return await connection.channel()

    def register(self, session: "ChannelSession") -> None:
        if session not in self._sessions:
            self._sessions.append(session)

    def unregister(self, session: "ChannelSession") -> None:
        if session in self._sessions:
            self._sessions.remove(session)

    @property
    def setup_errors(self) -> list[TopologyError]:
        """Setup failures of registered sessions still waiting for a successful replay."""
        return [s.setup_error for s in self._sessions if s.setup_error is not None]

    async def _handle_reconnect(self, *_args: Any) -> None:
        # aio-pika gathers reconnect callbacks with return_exceptions=True, so a
        # failure raised here would be dropped; failed sessions are retried instead
        CONNECTION_EVENTS_TOTAL.labels(event="reconnect").inc()
        self.state = STATE_CONNECTING
        if self._setup_retry_task is not None and not self._setup_retry_task.done():
            self._setup_retry_task.cancel()
            self._setup_retry_task = None
        if await self._replay_setup(list(self._sessions)):
            await self._mark_ready()
        else:
            self._schedule_setup_retry()

    async def _replay_setup(self, sessions: list["ChannelSession"]) -> bool:
        """Re-run setup for ``sessions``; return True when every one succeeded.

        Declarations must be replayed before messages flow again. A failing
        session does not stop the replay of the others.
        """
        ok = True
        for session in sessions:
            if session not in self._sessions:
                continue
            try:
                await session.recover()
            except TopologyError as exc:
                ok = False
                CONNECTION_EVENTS_TOTAL.labels(event="setup_failed").inc()
                await _call_hook(self.on_disconnect, exc)
        return ok

    def _schedule_setup_retry(self) -> None:
        if self._setup_retry_task is None or self._setup_retry_task.done():
            self._setup_retry_task = asyncio.create_task(self._retry_failed_setup())

    async def _retry_failed_setup(self) -> None:
        """Retry failed session setups with capped backoff until all succeed."""
        delay_ms = self.settings.connect_base_delay_ms
        while self.is_connected:
            failed = [s for s in self._sessions if s.setup_error is not None]
            if not failed:
                if self.state != STATE_CONNECTED:
                    await self._mark_ready()
                return
            logger.warning("retrying setup of %d session(s) in %d ms", len(failed), delay_ms)
            await asyncio.sleep(delay_ms / 1000.0)
            delay_ms = min(int(delay_ms * 2), self.settings.connect_max_delay_ms)
            await self._replay_setup(failed)

    async def _mark_ready(self) -> None:
        self.state = STATE_CONNECTED
        CONNECTION_EVENTS_TOTAL.labels(event="connect").inc()
        await _call_hook(self.on_connect)

    async def _handle_close(self, _sender: Any = None, exc: Optional[BaseException] = None, *_args: Any) -> None:
        self.state = STATE_DISCONNECTED
        CONNECTION_EVENTS_TOTAL.labels(event="disconnect").inc()
        await _call_hook(self.on_disconnect, exc)

    async def close(self) -> None:
        """Close every registered session and the connection."""
        if self._setup_retry_task is not None:
            self._setup_retry_task.cancel()
            self._setup_retry_task = None
        for session in list(self._sessions):
            await session.close()
        if self._connection is not None and not self._connection.is_closed:
            await self._connection.close()
        self._connection = None
        self.state = STATE_DISCONNECTED

    async def __aenter__(self) -> "BrokerConnection":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


async def publish_to_queue(
    channel: AbstractChannel,
    queue_name: str,
    data: Any,
    headers: Optional[HeadersType] = None,
) -> None:
    """Publish ``data`` as a persistent JSON message straight to ``queue_name``."""
    message = build_message(data, headers=headers)
    await channel.default_exchange.publish(message, routing_key=queue_name)
    PUBLISHED_TOTAL.labels(queue=queue_name).inc()
