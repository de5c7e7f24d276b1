"""
Topology initializer.

- Declares each work queue, its ``<queue>-retry`` fanout dead-letter exchange
  and the binding between them
- Optionally declares plain durable queues (watcher / worker sender queues)

Delay queues are not pre-created: they are declared lazily on first retry and
expire on their own.

Supports a best-effort mode via ``--best-effort`` or ``INIT_TOPOLOGY_BEST_EFFORT=1``
which skips errors if the broker is not configured or reachable.

Examples:
    QUEUE_NAMES=payments,jobs python -m scripts.init_topology
    python -m scripts.init_topology --best-effort
"""

import argparse
import asyncio
import logging
import os
from typing import Sequence

from oracle_queue.config import Settings, load_env
from oracle_queue.errors import NotAttachedError
from oracle_queue.log import setup_logging
from oracle_queue.rabbit import BrokerConnection, is_attached
from oracle_queue.topology import declare_durable_queues, declare_work_topology

logger = logging.getLogger("init_topology")


async def main(queue_names: Sequence[str], plain_queues: Sequence[str], best_effort: bool) -> None:
    """Declare the work topology for ``queue_names`` and the ``plain_queues``."""
    settings = Settings()
    if not await is_attached(settings.queue_url):
        if best_effort:
            logger.warning("Skipping: broker not attached (%s)", settings.queue_url or "ORACLE_QUEUE_URL unset")
            return
        raise NotAttachedError()

    try:
        connection = BrokerConnection(settings.queue_url, settings=settings)
        await connection.connect()
    except Exception as exc:  # noqa: BLE001
        if best_effort:
            logger.warning("Skipping: broker not reachable (%s)", exc)
            return
        raise

    async with connection:
        channel = await connection.channel()
        try:
            for name in queue_names:
                topo = await declare_work_topology(channel, name)
                logger.info("declared %s <- %s", topo.queue_name, topo.dead_letter_exchange_name)
            if plain_queues:
                await declare_durable_queues(channel, plain_queues)
                logger.info("declared %s", ", ".join(plain_queues))
        except Exception as exc:  # noqa: BLE001
            if best_effort:
                logger.warning("Skipping declarations due to error: %s", exc)
                return
            raise


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Declare work queues and their retry exchanges")
    parser.add_argument("--best-effort", action="store_true", help="Do not fail if the broker is unreachable")
    args = parser.parse_args()

    load_env()
    setup_logging(Settings().log_level)

    best_effort_env = os.getenv("INIT_TOPOLOGY_BEST_EFFORT", "false").lower() in {"1", "true", "yes"}
    best_effort = bool(args.best_effort or best_effort_env)

    queues = [q for q in os.getenv("QUEUE_NAMES", "payments").split(",") if q]
    plain = [q for q in os.getenv("PLAIN_QUEUE_NAMES", "").split(",") if q]
    asyncio.run(main(queues, plain, best_effort))
