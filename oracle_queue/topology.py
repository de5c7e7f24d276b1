"""Queue topology: naming, work-queue declaration and delay queues.

Each work queue ``q`` owns a fanout dead-letter exchange ``q-retry`` with ``q``
as its only bound queue. Delay queues have no consumers; their messages expire
after ``x-message-ttl`` and are dead-lettered into ``q-retry``, which fans them
straight back into ``q``.

All declarations are idempotent so they can be replayed after every reconnect.
Objects are declared with ``robust=False``: the session setup routine, not
aio-pika's restore logic, re-declares them.

Example:
    >>> topo = await declare_work_topology(channel, "payments")
    >>> provisioner = TTLDelayQueueProvisioner(channel, topo.dead_letter_exchange_name)
    >>> handle = await provisioner.ensure_delay_queue("payments-retry-5000", 5000, 50000)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Protocol

from aio_pika import ExchangeType
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractQueue

from oracle_queue.constants import (
    DEAD_LETTER_EXCHANGE_SUFFIX,
    QUEUE_EXPIRY_FACTOR,
    RESEND_QUEUE_SUFFIX,
    RETRY_QUEUE_INFIX,
)


def dead_letter_exchange_name(queue_name: str) -> str:
    """``payments`` -> ``payments-retry``"""
    return f"{queue_name}{DEAD_LETTER_EXCHANGE_SUFFIX}"


def retry_queue_name(queue_name: str, delay_ms: int) -> str:
    """``("payments", 5000)`` -> ``payments-retry-5000``"""
    return f"{queue_name}{RETRY_QUEUE_INFIX}{int(delay_ms)}"


def resend_queue_name(queue_name: str) -> str:
    """``payments`` -> ``payments-check-tx-status``"""
    return f"{queue_name}{RESEND_QUEUE_SUFFIX}"


def delay_queue_arguments(dead_letter_exchange: str, ttl_ms: int, expires_ms: int) -> Dict[str, Any]:
    """Broker arguments for a self-expiring delay queue."""
    return {
        "x-dead-letter-exchange": dead_letter_exchange,
        "x-message-ttl": int(ttl_ms),
        "x-expires": int(expires_ms),
    }


def expiry_for(ttl_ms: int) -> int:
    return int(ttl_ms) * QUEUE_EXPIRY_FACTOR


@dataclass
class WorkTopology:
    """Declared objects for one work queue."""

    queue: AbstractQueue
    dead_letter_exchange: AbstractExchange

    @property
    def queue_name(self) -> str:
        return self.queue.name

    @property
    def dead_letter_exchange_name(self) -> str:
        return self.dead_letter_exchange.name


async def declare_durable_queues(channel: AbstractChannel, names: Iterable[str]) -> list[AbstractQueue]:
    """Declare plain durable queues (watcher targets, worker sender queues)."""
    queues = []
    for name in names:
        queues.append(await channel.declare_queue(name, durable=True, robust=False))
    return queues


async def declare_work_topology(channel: AbstractChannel, queue_name: str) -> WorkTopology:
    """Declare the dead-letter exchange and work queue and bind them together."""
    exchange = await channel.declare_exchange(
        dead_letter_exchange_name(queue_name),
        ExchangeType.FANOUT,
        durable=True,
        robust=False,
    )
    queue = await channel.declare_queue(queue_name, durable=True, robust=False)
    await queue.bind(exchange)
    return WorkTopology(queue=queue, dead_letter_exchange=exchange)


@dataclass(frozen=True)
class QueueHandle:
    """A declared delay queue. Publish to it through the default exchange."""

    name: str
    ttl_ms: int
    expires_ms: int


class DelayQueueProvisioner(Protocol):
    """Provides a queue that holds messages for ``ttl_ms`` and then returns them
    to the work queue. Schedulers depend only on this interface."""

    async def ensure_delay_queue(self, key: str, ttl_ms: int, expires_ms: int) -> QueueHandle:
        ...


class TTLDelayQueueProvisioner:
    """Delay queues built from per-queue message TTL plus dead-lettering.

    The queue is re-declared on every call. Re-declaring with identical
    arguments is a no-op for the broker apart from resetting the ``x-expires``
    idle timer, which publishing alone does not do.
    """

    def __init__(self, channel: AbstractChannel, dead_letter_exchange: str) -> None:
        self.channel = channel
        self.dead_letter_exchange = dead_letter_exchange

    async def ensure_delay_queue(self, key: str, ttl_ms: int, expires_ms: int) -> QueueHandle:
        await self.channel.declare_queue(
            key,
            durable=True,
            arguments=delay_queue_arguments(self.dead_letter_exchange, ttl_ms, expires_ms),
            robust=False,
        )
        return QueueHandle(name=key, ttl_ms=int(ttl_ms), expires_ms=int(expires_ms))
