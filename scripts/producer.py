"""
Watcher demo.

- Opens a producer session on ``QUEUE_NAME`` (and ``WORKER_QUEUE`` if set)
- Publishes one persistent JSON message to each

Examples:
    QUEUE_NAME=payments python -m scripts.producer
    QUEUE_NAME=payments WORKER_QUEUE=jobs CHECK_TX=1 python -m scripts.producer
"""

import asyncio
import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Any

from oracle_queue.config import Settings, load_env
from oracle_queue.log import setup_logging
from oracle_queue.rabbit import BrokerConnection, is_attached
from oracle_queue.sessions import open_producer
from oracle_queue.tracing import get_tracer, start_tracing

logger = logging.getLogger("producer")


def build_payload() -> dict[str, Any]:
    return {
        "request_id": str(uuid.uuid4()),
        "created_at": datetime.now(timezone.utc).isoformat(),
        "check_tx": os.getenv("CHECK_TX", "false").lower() in {"1", "true", "yes"},
        "force_error": os.getenv("FORCE_ERROR", "false").lower() in {"1", "true", "yes"},
    }


async def main() -> None:
    """Publish a demo payload to the work queue and, if configured, the worker queue."""
    settings = Settings()
    if not await is_attached(settings.queue_url):
        logger.error("Not attached to a broker; set ORACLE_QUEUE_URL")
        return

    start_tracing("oracle-producer")
    tracer = get_tracer("oracle-producer")

    queue_name = os.getenv("QUEUE_NAME", "payments")
    worker_queue = os.getenv("WORKER_QUEUE") or None

    async with BrokerConnection(settings.queue_url, settings=settings) as connection:
        producer = await open_producer(connection, queue_name, worker_queue)
        payload = build_payload()
        with tracer.start_as_current_span("publish") as span:
            span.set_attribute("request_id", payload["request_id"])
            await producer.send_to_queue(payload)
            logger.info("published %s to %s", payload["request_id"], queue_name)
            if worker_queue:
                await producer.send_to_worker(payload)
                logger.info("published %s to %s", payload["request_id"], worker_queue)


if __name__ == "__main__":
    load_env()
    setup_logging(Settings().log_level)
    asyncio.run(main())
