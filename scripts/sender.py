"""
Sender demo.

- Consumes ``QUEUE_NAME`` one message at a time
- ``force_error`` payloads are retried with backoff until ``MAX_RETRIES``,
  then acked and dropped
- ``check_tx`` payloads are re-queued through the transaction status check
  until ``MAX_TX_CHECKS``
- Everything else is acked

Examples:
    QUEUE_NAME=payments RETRY_SEQUENCE_SECONDS=1,2,5 python -m scripts.sender
"""

import asyncio
import logging
import os
import signal

from oracle_queue.config import Settings, load_env
from oracle_queue.delivery import SenderDelivery
from oracle_queue.log import setup_logging
from oracle_queue.metrics import start_metrics_server
from oracle_queue.rabbit import BrokerConnection, is_attached
from oracle_queue.sessions import open_consumer

logger = logging.getLogger("sender")


class DemoSender:
    """Handler state for the demo sender."""

    def __init__(self, max_retries: int, max_tx_checks: int) -> None:
        self.max_retries = max_retries
        self.max_tx_checks = max_tx_checks
        self._stopping = asyncio.Event()

    async def handle(self, delivery: SenderDelivery) -> None:
        payload = delivery.data
        if payload.get("force_error"):
            if delivery.retries >= self.max_retries:
                logger.error("giving up on %s after %d retries", payload.get("request_id"), delivery.retries)
                await delivery.ack()
                return
            await delivery.schedule_retry(payload, delivery.retries)
            return

        if payload.get("check_tx"):
            checks = int(payload.get("tx_checks", 0)) + 1
            if checks < self.max_tx_checks:
                await delivery.schedule_resend({**payload, "tx_checks": checks})
                return

        logger.info("processed %s", payload.get("request_id"))
        await delivery.ack()

    def stop(self) -> None:
        self._stopping.set()

    async def wait(self) -> None:
        await self._stopping.wait()


async def main() -> None:
    settings = Settings()
    if not await is_attached(settings.queue_url):
        logger.error("Not attached to a broker; set ORACLE_QUEUE_URL")
        return

    try:
        start_metrics_server(settings.metrics_port)
        logger.info("Metrics server listening on :%d /metrics", settings.metrics_port)
    except OSError:
        logger.warning("Metrics port %d already in use", settings.metrics_port)

    sender = DemoSender(
        max_retries=int(os.getenv("MAX_RETRIES", "5")),
        max_tx_checks=int(os.getenv("MAX_TX_CHECKS", "3")),
    )
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, sender.stop)

    queue_name = os.getenv("QUEUE_NAME", "payments")
    async with BrokerConnection(settings.queue_url, settings=settings) as connection:
        await open_consumer(connection, queue_name, sender.handle)
        logger.info("sender consuming %s", queue_name)
        await sender.wait()


if __name__ == "__main__":
    load_env()
    setup_logging(Settings().log_level)
    asyncio.run(main())
