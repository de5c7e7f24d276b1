"""
Worker demo.

- Consumes ``QUEUE_NAME`` one message at a time
- Forwards a result for each job to ``SENDER_QUEUE`` and acks it
- ``force_error`` jobs are retried with backoff until ``MAX_RETRIES``

Examples:
    QUEUE_NAME=jobs SENDER_QUEUE=results python -m scripts.worker
"""

import asyncio
import logging
import os
import signal

from oracle_queue.config import Settings, load_env
from oracle_queue.delivery import WorkerDelivery
from oracle_queue.log import setup_logging
from oracle_queue.rabbit import BrokerConnection, is_attached
from oracle_queue.sessions import open_worker

logger = logging.getLogger("worker")


async def main() -> None:
    settings = Settings()
    if not await is_attached(settings.queue_url):
        logger.error("Not attached to a broker; set ORACLE_QUEUE_URL")
        return

    max_retries = int(os.getenv("MAX_RETRIES", "5"))
    stopping = asyncio.Event()

    async def handle(delivery: WorkerDelivery) -> None:
        job = delivery.data
        if job.get("force_error") and delivery.retries < max_retries:
            await delivery.schedule_retry(job, delivery.retries)
            return
        await delivery.send_to_sender_queue({"request_id": job.get("request_id"), "status": "done"})
        await delivery.ack()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stopping.set)

    queue_name = os.getenv("QUEUE_NAME", "jobs")
    sender_queue = os.getenv("SENDER_QUEUE", "results")
    async with BrokerConnection(settings.queue_url, settings=settings) as connection:
        await open_worker(connection, queue_name, sender_queue, handle)
        logger.info("worker consuming %s -> %s", queue_name, sender_queue)
        await stopping.wait()


if __name__ == "__main__":
    load_env()
    setup_logging(Settings().log_level)
    asyncio.run(main())
