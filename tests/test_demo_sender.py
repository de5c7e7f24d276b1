import json

import pytest

from conftest import FakeIncomingMessage
from oracle_queue.sessions import open_consumer
from scripts.sender import DemoSender


def _msg(payload, headers=None):
    return FakeIncomingMessage(json.dumps(payload).encode("utf-8"), headers=headers)


@pytest.mark.asyncio
async def test_failing_payload_retries_until_cap(connection, fake_amqp):
    sender = DemoSender(max_retries=2, max_tx_checks=3)
    await open_consumer(connection, "payments", sender.handle)
    channel = fake_amqp.channels[0]
    callback = channel.queues["payments"].callback

    first = _msg({"request_id": "r1", "force_error": True})
    await callback(first)
    assert first.acked is True
    assert channel.published_to("payments-retry-5000")[0].headers["x-retries"] == 1

    exhausted = _msg({"request_id": "r1", "force_error": True}, headers={"x-retries": 2})
    await callback(exhausted)
    assert exhausted.acked is True
    assert "payments-retry-60000" not in channel.queues


@pytest.mark.asyncio
async def test_check_tx_payload_is_resent(connection, fake_amqp):
    sender = DemoSender(max_retries=2, max_tx_checks=3)
    await open_consumer(connection, "payments", sender.handle)
    channel = fake_amqp.channels[0]

    await channel.queues["payments"].callback(_msg({"request_id": "r2", "check_tx": True}))

    [resent] = channel.published_to("payments-check-tx-status")
    assert json.loads(resent.body)["tx_checks"] == 1
