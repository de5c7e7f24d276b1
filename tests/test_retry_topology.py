import pytest
from aio_pika import DeliveryMode, ExchangeType

from conftest import FakeChannel
from oracle_queue.constants import RETRIES_HEADER
from oracle_queue.retry import RetryScheduler, RetrySequence, TransactionResendScheduler, delay_ms_for
from oracle_queue.topology import (
    TTLDelayQueueProvisioner,
    dead_letter_exchange_name,
    declare_work_topology,
    resend_queue_name,
    retry_queue_name,
)


def test_queue_naming():
    assert dead_letter_exchange_name("payments") == "payments-retry"
    assert retry_queue_name("payments", 5000) == "payments-retry-5000"
    assert resend_queue_name("payments") == "payments-check-tx-status"


def test_retry_sequence_bounds():
    backoff = RetrySequence([5, 15, 60])
    assert backoff(1) == 5
    assert backoff(2) == 15
    assert backoff(3) == 60
    assert backoff(4) == 60  # clamp to last
    assert delay_ms_for(backoff, 2) == 15000


def test_retry_sequence_rejects_empty():
    with pytest.raises(ValueError):
        RetrySequence([])


@pytest.mark.asyncio
async def test_declare_work_topology_binds_queue_to_fanout_exchange():
    channel = FakeChannel()
    topo = await declare_work_topology(channel, "payments")

    exchange = channel.exchanges["payments-retry"]
    assert exchange.type == ExchangeType.FANOUT
    assert exchange.durable is True
    assert channel.queues["payments"].durable is True
    assert channel.queues["payments"].bindings == ["payments-retry"]
    assert topo.queue_name == "payments"
    assert topo.dead_letter_exchange_name == "payments-retry"


def _scheduler(channel, backoff=None):
    provisioner = TTLDelayQueueProvisioner(channel, "payments-retry")
    return RetryScheduler(channel, provisioner, "payments", backoff or RetrySequence([5, 15, 60]))


@pytest.mark.asyncio
async def test_first_retry_goes_through_five_second_queue():
    channel = FakeChannel()
    retries = await _scheduler(channel).schedule({"tx": "0xabc"}, 0)

    assert retries == 1
    queue = channel.queues["payments-retry-5000"]
    assert queue.durable is True
    assert queue.arguments == {
        "x-dead-letter-exchange": "payments-retry",
        "x-message-ttl": 5000,
        "x-expires": 50000,
    }
    [message] = channel.published_to("payments-retry-5000")
    assert message.body == b'{"tx":"0xabc"}'
    assert message.headers[RETRIES_HEADER] == 1
    assert message.delivery_mode == DeliveryMode.PERSISTENT
    # never straight back to the work queue
    assert channel.published_to("payments") == []


@pytest.mark.asyncio
async def test_same_delay_reuses_one_queue():
    channel = FakeChannel()
    scheduler = _scheduler(channel)
    await scheduler.schedule({"n": 1}, 2)
    await scheduler.schedule({"n": 2}, 5)  # clamped to the same 60s step

    assert [n for n in channel.queues if n.startswith("payments-retry-")] == ["payments-retry-60000"]
    messages = channel.published_to("payments-retry-60000")
    assert [m.headers[RETRIES_HEADER] for m in messages] == [3, 6]


@pytest.mark.asyncio
async def test_escalating_retries_use_distinct_queues():
    channel = FakeChannel()
    scheduler = _scheduler(channel)
    for count in range(3):
        await scheduler.schedule({"n": count}, count)

    assert set(channel.queues) == {"payments-retry-5000", "payments-retry-15000", "payments-retry-60000"}


@pytest.mark.asyncio
async def test_custom_backoff_callable():
    channel = FakeChannel()
    await _scheduler(channel, backoff=lambda attempt: 2 ** attempt).schedule({}, 3)
    assert "payments-retry-16000" in channel.queues


@pytest.mark.asyncio
@pytest.mark.parametrize("backoff", [lambda attempt: 0, lambda attempt: 0.0004, lambda attempt: -1])
async def test_sub_millisecond_backoff_is_rejected(backoff):
    channel = FakeChannel()
    with pytest.raises(ValueError):
        await _scheduler(channel, backoff=backoff).schedule({"tx": "0xabc"}, 0)
    assert channel.queues == {}
    assert channel.default_exchange.published == []


@pytest.mark.asyncio
async def test_transaction_resend_uses_fixed_queue_without_retry_header():
    channel = FakeChannel()
    provisioner = TTLDelayQueueProvisioner(channel, "payments-retry")
    resend = TransactionResendScheduler(channel, provisioner, "payments", 30000)

    await resend.schedule({"tx": "0x1"})
    await resend.schedule({"tx": "0x2"})

    queue = channel.queues["payments-check-tx-status"]
    assert queue.arguments == {
        "x-dead-letter-exchange": "payments-retry",
        "x-message-ttl": 30000,
        "x-expires": 300000,
    }
    messages = channel.published_to("payments-check-tx-status")
    assert len(messages) == 2
    assert all(RETRIES_HEADER not in (m.headers or {}) for m in messages)
