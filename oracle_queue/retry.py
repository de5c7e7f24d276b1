"""Delayed retry and transaction-resend scheduling.

Neither path requeues a message on the work queue directly. The message is
published into a delay queue (see ``oracle_queue.topology``) whose TTL expiry
dead-letters it back onto the work queue, so the broker itself is the timer.

Key entrypoints:
 - ``RetrySequence``: backoff policy mapping attempt number to seconds
 - ``RetryScheduler.schedule``: publish into ``<queue>-retry-<delay_ms>``
 - ``TransactionResendScheduler.schedule``: publish into ``<queue>-check-tx-status``

Examples
--------
>>> backoff = RetrySequence([5, 15, 60])
>>> backoff(1), backoff(2), backoff(3), backoff(10)
(5.0, 15.0, 60.0, 60.0)
>>> delay_ms_for(backoff, 1)
5000
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Sequence

from aio_pika.abc import AbstractChannel

from oracle_queue.constants import DEFAULT_RETRY_SEQUENCE_SECONDS, RETRIES_HEADER
from oracle_queue.metrics import RESEND_SCHEDULED_TOTAL, RETRY_SCHEDULED_TOTAL
from oracle_queue.rabbit import publish_to_queue
from oracle_queue.topology import (
    DelayQueueProvisioner,
    QueueHandle,
    expiry_for,
    resend_queue_name,
    retry_queue_name,
)

logger = logging.getLogger(__name__)

# Any callable mapping a 1-based attempt number to a delay in seconds
BackoffPolicy = Callable[[int], float]


class RetrySequence:
    """Escalating list of wait times indexed by attempt number.

    Attempt 1 maps to the first entry. Attempts past the end of the list keep
    using the last entry, so a message that keeps failing retries forever at
    the longest delay.

    >>> RetrySequence([1, 2, 4])(0)
    1.0
    """

    def __init__(self, seconds: Sequence[float] | None = None) -> None:
        values = list(seconds) if seconds is not None else list(DEFAULT_RETRY_SEQUENCE_SECONDS)
        if not values:
            raise ValueError("retry sequence must contain at least one delay")
        self.seconds = [float(v) for v in values]

    def __call__(self, attempt: int) -> float:
        idx = max(min(int(attempt) - 1, len(self.seconds) - 1), 0)
        return self.seconds[idx]

    def __repr__(self) -> str:
        return f"RetrySequence({self.seconds!r})"


def delay_ms_for(backoff: BackoffPolicy, attempt: int) -> int:
    """Return the delay for ``attempt`` in whole milliseconds."""
    return int(round(float(backoff(attempt)) * 1000))


class RetryScheduler:
    """Schedules failed messages for redelivery after a backoff delay.

    Messages needing the same delay share one physical delay queue, named
    from the work queue and the delay.
    """

    def __init__(
        self,
        channel: AbstractChannel,
        provisioner: DelayQueueProvisioner,
        queue_name: str,
        backoff: BackoffPolicy,
    ) -> None:
        self.channel = channel
        self.provisioner = provisioner
        self.queue_name = queue_name
        self.backoff = backoff

    async def schedule(self, data: Any, current_retry_count: int = 0) -> int:
        """Publish ``data`` into the delay queue for the next attempt.

        Returns the new retry count carried in the ``x-retries`` header.
        """
        retries = int(current_retry_count) + 1
        delay_ms = delay_ms_for(self.backoff, retries)
        if delay_ms < 1:
            # RabbitMQ rejects a non-positive x-expires on the delay queue
            raise ValueError(f"backoff returned {delay_ms} ms for attempt {retries}; delays must be at least 1 ms")
        handle: QueueHandle = await self.provisioner.ensure_delay_queue(
            retry_queue_name(self.queue_name, delay_ms),
            delay_ms,
            expiry_for(delay_ms),
        )
        await publish_to_queue(self.channel, handle.name, data, headers={RETRIES_HEADER: retries})
        RETRY_SCHEDULED_TOTAL.labels(queue=self.queue_name, delay_ms=str(delay_ms)).inc()
        logger.info(
            "scheduled retry %d for %s in %d ms via %s", retries, self.queue_name, delay_ms, handle.name
        )
        return retries


class TransactionResendScheduler:
    """Re-queues a message after a fixed delay so a transaction's status can
    be checked again. Carries no retry count."""

    def __init__(
        self,
        channel: AbstractChannel,
        provisioner: DelayQueueProvisioner,
        queue_name: str,
        timeout_ms: int,
    ) -> None:
        self.channel = channel
        self.provisioner = provisioner
        self.queue_name = queue_name
        self.timeout_ms = int(timeout_ms)

    async def schedule(self, data: Any) -> None:
        handle = await self.provisioner.ensure_delay_queue(
            resend_queue_name(self.queue_name),
            self.timeout_ms,
            expiry_for(self.timeout_ms),
        )
        await publish_to_queue(self.channel, handle.name, data)
        RESEND_SCHEDULED_TOTAL.labels(queue=self.queue_name).inc()
        logger.info("scheduled transaction status check for %s in %d ms", self.queue_name, self.timeout_ms)
