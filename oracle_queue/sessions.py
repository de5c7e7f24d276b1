"""Channel sessions for the three connection roles.

- watcher (``open_producer``): publishes to a work queue and optionally a worker queue
- sender (``open_consumer``): consumes a work queue; handler may ack, nack,
  schedule a retry or schedule a transaction resend
- worker (``open_worker``): consumes a work queue and forwards results to an
  upstream sender queue; handler may ack, nack or schedule a retry

Every session owns one channel on the shared ``BrokerConnection`` and a setup
routine that declares its topology. Setup runs before any message flows and
again after each reconnect; a failing setup raises ``TopologyError``.

Consumers run with prefetch 1, so a channel holds at most one unacknowledged
message and handler invocations never overlap.

Example:
    >>> async def handle(delivery: SenderDelivery) -> None:
    ...     try:
    ...         await submit(delivery.data)
    ...     except TemporaryFailure:
    ...         await delivery.schedule_retry()
    ...     else:
    ...         await delivery.ack()
    >>> consumer = await open_consumer(connection, "payments", handle)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Union

from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue

from oracle_queue.config import Settings
from oracle_queue.constants import CONSUMER_PREFETCH, ROLE_SENDER, ROLE_WATCHER, ROLE_WORKER
from oracle_queue.delivery import Delivery, SenderDelivery, WorkerDelivery
from oracle_queue.errors import QueueNotConfiguredError, TopologyError
from oracle_queue.metrics import HANDLER_FAILED_TOTAL, HANDLER_LATENCY_SECONDS
from oracle_queue.rabbit import BrokerConnection, publish_to_queue
from oracle_queue.retry import BackoffPolicy, RetryScheduler, RetrySequence, TransactionResendScheduler
from oracle_queue.topology import TTLDelayQueueProvisioner, declare_durable_queues, declare_work_topology
from oracle_queue.tracing import consume_span, get_tracer

logger = logging.getLogger(__name__)

SenderHandler = Callable[[SenderDelivery], Union[None, Awaitable[None]]]
WorkerHandler = Callable[[WorkerDelivery], Union[None, Awaitable[None]]]


class ChannelSession:
    """One role's channel and its idempotent setup routine."""

    role: str = ""

    def __init__(self, connection: BrokerConnection, queue_name: str) -> None:
        self.connection = connection
        self.queue_name = queue_name
        self.channel: Optional[AbstractChannel] = None
        self.setup_error: Optional[TopologyError] = None

    async def open(self) -> None:
        self.channel = await self.connection.channel()
        await self.run_setup()
        self.connection.register(self)

    async def run_setup(self) -> None:
        """Declare topology on the session channel; raise ``TopologyError`` on failure."""
        if self.channel is None:
            raise RuntimeError(f"{self.role} session for {self.queue_name!r} has no channel")
        try:
            await self.setup(self.channel)
        except Exception as exc:  # noqa: BLE001
            self.setup_error = TopologyError(self.role, self.queue_name, exc)
            logger.exception("%s setup failed for %s", self.role, self.queue_name)
            raise self.setup_error from exc
        self.setup_error = None
        logger.info("%s session ready on %s", self.role, self.queue_name)

    async def recover(self) -> None:
        """Re-run setup after a reconnect, on a fresh channel if the broker closed ours."""
        if self.channel is None or self.channel.is_closed:
            try:
                self.channel = await self.connection.channel()
            except Exception as exc:  # noqa: BLE001
                self.setup_error = TopologyError(self.role, self.queue_name, exc)
                raise self.setup_error from exc
        await self.run_setup()

    async def setup(self, channel: AbstractChannel) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        self.connection.unregister(self)
        if self.channel is not None and not self.channel.is_closed:
            await self.channel.close()


class Producer(ChannelSession):
    """Watcher role: publishes persistent messages, never consumes."""

    role = ROLE_WATCHER

    def __init__(self, connection: BrokerConnection, queue_name: str, worker_queue: Optional[str] = None) -> None:
        super().__init__(connection, queue_name)
        self.worker_queue = worker_queue

    @property
    def queue_names(self) -> list[str]:
        return [self.queue_name, self.worker_queue] if self.worker_queue else [self.queue_name]

    async def setup(self, channel: AbstractChannel) -> None:
        await declare_durable_queues(channel, self.queue_names)

    async def send_to_queue(self, data: Any) -> None:
        assert self.channel is not None
        await publish_to_queue(self.channel, self.queue_name, data)

    async def send_to_worker(self, data: Any) -> None:
        if not self.worker_queue:
            raise QueueNotConfiguredError(f"producer for {self.queue_name!r} was opened without a worker queue")
        assert self.channel is not None
        await publish_to_queue(self.channel, self.worker_queue, data)


class _ConsumingSession(ChannelSession):
    """Shared consumer loop for the sender and worker roles."""

    def __init__(
        self,
        connection: BrokerConnection,
        queue_name: str,
        handler: Callable[[Any], Union[None, Awaitable[None]]],
        backoff: Optional[BackoffPolicy] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        super().__init__(connection, queue_name)
        self.handler = handler
        self.settings = settings or connection.settings
        self.backoff: BackoffPolicy = backoff or RetrySequence(self.settings.retry_sequence_seconds)
        self.retry_scheduler: Optional[RetryScheduler] = None
        self._queue: Optional[AbstractQueue] = None
        self._consumer_tag: Optional[str] = None
        self._dispatch_lock = asyncio.Lock()
        self._tracer = get_tracer()

    async def declare_extra(self, channel: AbstractChannel) -> None:
        """Hook for role-specific declarations made before consuming starts."""

    async def setup(self, channel: AbstractChannel) -> None:
        topology = await declare_work_topology(channel, self.queue_name)
        await self.declare_extra(channel)
        await channel.set_qos(prefetch_count=CONSUMER_PREFETCH)

        provisioner = TTLDelayQueueProvisioner(channel, topology.dead_letter_exchange_name)
        self.retry_scheduler = RetryScheduler(channel, provisioner, self.queue_name, self.backoff)
        self.build_schedulers(channel, provisioner)

        self._queue = topology.queue
        self._consumer_tag = await topology.queue.consume(self._on_message, no_ack=False)

    def build_schedulers(self, channel: AbstractChannel, provisioner: TTLDelayQueueProvisioner) -> None:
        """Hook for role-specific schedulers."""

    def make_delivery(self, message: AbstractIncomingMessage) -> Delivery:
        raise NotImplementedError

    async def _on_message(self, message: AbstractIncomingMessage) -> None:
        """Dispatch one message to the handler.

        No disposition is taken on the handler's behalf: if it raises, the
        error is logged and re-raised and the message stays unacknowledged.
        """
        async with self._dispatch_lock:
            delivery = self.make_delivery(message)
            start_ts = time.perf_counter()
            with consume_span(self._tracer, self.queue_name, message.headers, delivery.retries) as span:
                try:
                    result = self.handler(delivery)
                    if inspect.isawaitable(result):
                        await result
                except Exception as exc:
                    HANDLER_FAILED_TOTAL.labels(queue=self.queue_name).inc()
                    span.record_exception(exc)
                    logger.exception(
                        "%s handler failed for message %s on %s", self.role, message.delivery_tag, self.queue_name
                    )
                    raise
                finally:
                    HANDLER_LATENCY_SECONDS.labels(queue=self.queue_name).observe(time.perf_counter() - start_ts)
            if not delivery.settled:
                logger.debug("message %s on %s left unsettled", message.delivery_tag, self.queue_name)

    async def close(self) -> None:
        if self._queue is not None and self._consumer_tag is not None:
            if self.channel is not None and not self.channel.is_closed:
                await self._queue.cancel(self._consumer_tag)
            self._consumer_tag = None
        await super().close()


class Consumer(_ConsumingSession):
    """Sender role: consumes the work queue with retry and transaction resend."""

    role = ROLE_SENDER

    def __init__(
        self,
        connection: BrokerConnection,
        queue_name: str,
        handler: SenderHandler,
        backoff: Optional[BackoffPolicy] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        super().__init__(connection, queue_name, handler, backoff=backoff, settings=settings)
        self.resend_scheduler: Optional[TransactionResendScheduler] = None

    def build_schedulers(self, channel: AbstractChannel, provisioner: TTLDelayQueueProvisioner) -> None:
        self.resend_scheduler = TransactionResendScheduler(
            channel, provisioner, self.queue_name, self.settings.transaction_resend_timeout_ms
        )

    def make_delivery(self, message: AbstractIncomingMessage) -> SenderDelivery:
        assert self.retry_scheduler is not None and self.resend_scheduler is not None
        return SenderDelivery(message, self.queue_name, self.retry_scheduler, self.resend_scheduler)


class Worker(_ConsumingSession):
    """Worker role: consumes the work queue and forwards results upstream."""

    role = ROLE_WORKER

    def __init__(
        self,
        connection: BrokerConnection,
        queue_name: str,
        sender_queue_name: str,
        handler: WorkerHandler,
        backoff: Optional[BackoffPolicy] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        super().__init__(connection, queue_name, handler, backoff=backoff, settings=settings)
        self.sender_queue_name = sender_queue_name

    async def declare_extra(self, channel: AbstractChannel) -> None:
        await declare_durable_queues(channel, [self.sender_queue_name])

    async def send_to_sender_queue(self, data: Any) -> None:
        assert self.channel is not None
        await publish_to_queue(self.channel, self.sender_queue_name, data)

    def make_delivery(self, message: AbstractIncomingMessage) -> WorkerDelivery:
        assert self.retry_scheduler is not None
        return WorkerDelivery(message, self.queue_name, self.retry_scheduler, self.send_to_sender_queue)


async def open_producer(
    connection: BrokerConnection, queue_name: str, worker_queue: Optional[str] = None
) -> Producer:
    """Open a watcher session declaring ``queue_name`` (and ``worker_queue``) durable."""
    producer = Producer(connection, queue_name, worker_queue)
    await producer.open()
    return producer


async def open_consumer(
    connection: BrokerConnection,
    queue_name: str,
    handler: SenderHandler,
    *,
    backoff: Optional[BackoffPolicy] = None,
    settings: Optional[Settings] = None,
) -> Consumer:
    """Open a sender session and start consuming ``queue_name``."""
    consumer = Consumer(connection, queue_name, handler, backoff=backoff, settings=settings)
    await consumer.open()
    return consumer


async def open_worker(
    connection: BrokerConnection,
    queue_name: str,
    sender_queue_name: str,
    handler: WorkerHandler,
    *,
    backoff: Optional[BackoffPolicy] = None,
    settings: Optional[Settings] = None,
) -> Worker:
    """Open a worker session consuming ``queue_name`` and forwarding to ``sender_queue_name``."""
    worker = Worker(connection, queue_name, sender_queue_name, handler, backoff=backoff, settings=settings)
    await worker.open()
    return worker
