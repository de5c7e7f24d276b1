"""Exception types raised by the queue client.

Connectivity problems are not represented here: the robust connection recovers
from them on its own and reports them through the connect/disconnect hooks.
"""

from __future__ import annotations


class OracleQueueError(Exception):
    """Base class for all queue client errors."""


class NotAttachedError(OracleQueueError):
    """No broker URL is configured for this process."""

    def __init__(self) -> None:
        super().__init__("ORACLE_QUEUE_URL is not set; the process is not attached to a broker")


class TopologyError(OracleQueueError):
    """Declaring exchanges/queues or applying QoS failed for a channel session.

    Usually a configuration or permission problem (for example a queue that
    already exists with different arguments). Never retried automatically.
    """

    def __init__(self, role: str, queue_name: str, cause: BaseException) -> None:
        self.role = role
        self.queue_name = queue_name
        self.cause = cause
        super().__init__(f"{role} setup failed for queue {queue_name!r}: {cause}")


class QueueNotConfiguredError(OracleQueueError):
    """Publishing to an optional queue the session was opened without."""


class MessageAlreadySettledError(OracleQueueError):
    """A delivery already received its disposition (ack, nack, retry or resend)."""

    def __init__(self, delivery_tag: int | None, disposition: str) -> None:
        self.delivery_tag = delivery_tag
        self.disposition = disposition
        super().__init__(f"message {delivery_tag} was already settled ({disposition})")


class CodecError(OracleQueueError):
    """Payload could not be encoded to, or decoded from, JSON."""
