"""Per-message handles passed to consumer handlers.

A handler receives one delivery object per message. Each disposition method
closes over that message's delivery tag, and exactly one of them may settle
the message:

- ``ack()``: remove the message from the queue
- ``nack()``: reject with requeue, the broker redelivers it immediately
- ``schedule_retry()``: publish into the backoff delay queue, then ack
- ``schedule_resend()`` (sender only): publish into the tx-status delay queue, then ack

Leaving a message unsettled keeps it unacknowledged; with prefetch 1 that
stalls the channel until the handler settles it.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional

from aio_pika.abc import AbstractIncomingMessage

from oracle_queue.codec import decode_payload, get_retries
from oracle_queue.constants import (
    DISPOSITION_ACK,
    DISPOSITION_NACK,
    DISPOSITION_RESEND,
    DISPOSITION_RETRY,
)
from oracle_queue.errors import MessageAlreadySettledError
from oracle_queue.metrics import DISPOSITION_TOTAL
from oracle_queue.retry import RetryScheduler, TransactionResendScheduler

logger = logging.getLogger(__name__)

_UNSET: Any = object()


class Delivery:
    """Disposition handle for one incoming message."""

    def __init__(
        self,
        message: AbstractIncomingMessage,
        queue_name: str,
        retry_scheduler: RetryScheduler,
    ) -> None:
        self.message = message
        self.queue_name = queue_name
        self._retry_scheduler = retry_scheduler
        self._data: Any = _UNSET
        self._disposition: Optional[str] = None

    @property
    def data(self) -> Any:
        """Decoded JSON payload. Raises ``CodecError`` for a malformed body."""
        if self._data is _UNSET:
            self._data = decode_payload(self.message.body)
        return self._data

    @property
    def retries(self) -> int:
        """Retry count from the ``x-retries`` header, 0 for a first delivery."""
        return get_retries(self.message.headers)

    @property
    def delivery_tag(self) -> Optional[int]:
        return self.message.delivery_tag

    @property
    def disposition(self) -> Optional[str]:
        return self._disposition

    @property
    def settled(self) -> bool:
        return self._disposition is not None

    async def _settle(self, disposition: str, action: Callable[[], Awaitable[Any]]) -> Any:
        if self._disposition is not None:
            raise MessageAlreadySettledError(self.delivery_tag, self._disposition)
        # Claimed up front so a concurrent second disposition fails fast
        self._disposition = disposition
        try:
            result = await action()
        except BaseException:
            self._disposition = None
            raise
        DISPOSITION_TOTAL.labels(queue=self.queue_name, disposition=disposition).inc()
        return result

    async def ack(self) -> None:
        await self._settle(DISPOSITION_ACK, self.message.ack)

    async def nack(self) -> None:
        """Reject and requeue at the head of the queue, bypassing any delay."""

        async def _nack() -> None:
            await self.message.nack(requeue=True)
            logger.warning("nacked message %s on %s for redelivery", self.delivery_tag, self.queue_name)

        await self._settle(DISPOSITION_NACK, _nack)

    async def schedule_retry(self, data: Any = _UNSET, current_retry_count: Optional[int] = None) -> int:
        """Send the message through the backoff delay queue and ack this delivery.

        ``data`` defaults to the received payload and ``current_retry_count``
        to the received ``x-retries`` header. Returns the new retry count.
        """
        payload = self.data if data is _UNSET else data
        count = self.retries if current_retry_count is None else int(current_retry_count)

        async def _retry() -> int:
            retries = await self._retry_scheduler.schedule(payload, count)
            await self.message.ack()
            return retries

        return await self._settle(DISPOSITION_RETRY, _retry)


class SenderDelivery(Delivery):
    """Delivery handed to sender-role handlers; adds transaction resend."""

    def __init__(
        self,
        message: AbstractIncomingMessage,
        queue_name: str,
        retry_scheduler: RetryScheduler,
        resend_scheduler: TransactionResendScheduler,
    ) -> None:
        super().__init__(message, queue_name, retry_scheduler)
        self._resend_scheduler = resend_scheduler

    async def schedule_resend(self, data: Any = _UNSET) -> None:
        """Re-check the transaction after the fixed resend timeout and ack this delivery."""
        payload = self.data if data is _UNSET else data

        async def _resend() -> None:
            await self._resend_scheduler.schedule(payload)
            await self.message.ack()

        await self._settle(DISPOSITION_RESEND, _resend)


class WorkerDelivery(Delivery):
    """Delivery handed to worker-role handlers; adds upstream forwarding."""

    def __init__(
        self,
        message: AbstractIncomingMessage,
        queue_name: str,
        retry_scheduler: RetryScheduler,
        send_to_sender_queue: Callable[[Any], Awaitable[None]],
    ) -> None:
        super().__init__(message, queue_name, retry_scheduler)
        self._send_to_sender_queue = send_to_sender_queue

    async def send_to_sender_queue(self, data: Any) -> None:
        """Forward a result upstream. Does not settle the message."""
        await self._send_to_sender_queue(data)
