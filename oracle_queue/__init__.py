"""AMQP client for oracle workers.

Connection roles (watcher / sender / worker), delayed retries and
transaction-status resends built on RabbitMQ TTL queues and dead-lettering.
"""

from oracle_queue.delivery import SenderDelivery, WorkerDelivery
from oracle_queue.errors import (
    CodecError,
    MessageAlreadySettledError,
    NotAttachedError,
    OracleQueueError,
    QueueNotConfiguredError,
    TopologyError,
)
from oracle_queue.rabbit import BrokerConnection, is_attached
from oracle_queue.retry import RetrySequence
from oracle_queue.sessions import Consumer, Producer, Worker, open_consumer, open_producer, open_worker

__all__ = [
    "BrokerConnection",
    "CodecError",
    "Consumer",
    "MessageAlreadySettledError",
    "NotAttachedError",
    "OracleQueueError",
    "Producer",
    "QueueNotConfiguredError",
    "RetrySequence",
    "SenderDelivery",
    "TopologyError",
    "Worker",
    "WorkerDelivery",
    "is_attached",
    "open_consumer",
    "open_producer",
    "open_worker",
]
