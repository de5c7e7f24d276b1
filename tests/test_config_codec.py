import pytest
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from pydantic import BaseModel, ValidationError

from oracle_queue.codec import decode_payload, encode_payload, get_retries
from oracle_queue.config import Settings, parse_retry_sequence
from oracle_queue.constants import DEFAULT_RETRY_SEQUENCE_SECONDS, DEFAULT_TRANSACTION_RESEND_TIMEOUT_MS
from oracle_queue.errors import CodecError
from oracle_queue.tracing import extract_context_from_headers, inject_headers, trace_carrier


def test_settings_defaults(monkeypatch):
    for name in ("ORACLE_QUEUE_URL", "RETRY_SEQUENCE_SECONDS", "TRANSACTION_RESEND_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)
    s = Settings()
    assert s.queue_url is None
    assert s.retry_sequence_seconds == [float(v) for v in DEFAULT_RETRY_SEQUENCE_SECONDS]
    assert s.transaction_resend_timeout_ms == DEFAULT_TRANSACTION_RESEND_TIMEOUT_MS


def test_settings_env_override(monkeypatch):
    monkeypatch.setenv("ORACLE_QUEUE_URL", "amqp://rabbit:5672")
    monkeypatch.setenv("RETRY_SEQUENCE_SECONDS", "1,2,4")
    monkeypatch.setenv("TRANSACTION_RESEND_TIMEOUT", "1500")
    s = Settings()
    assert s.queue_url == "amqp://rabbit:5672"
    assert s.retry_sequence_seconds == [1.0, 2.0, 4.0]
    assert s.transaction_resend_timeout_ms == 1500


def test_settings_rejects_non_positive_delays():
    with pytest.raises(ValidationError):
        Settings(retry_sequence_seconds=[5, 0])


def test_parse_retry_sequence_blank_falls_back():
    assert parse_retry_sequence(" , ") == [float(v) for v in DEFAULT_RETRY_SEQUENCE_SECONDS]


class Transfer(BaseModel):
    tx: str
    amount: int


def test_encode_pydantic_model():
    assert encode_payload(Transfer(tx="0x1", amount=3)) == b'{"tx":"0x1","amount":3}'


def test_encode_rejects_unserializable():
    with pytest.raises(CodecError):
        encode_payload({"when": object()})


def test_decode_rejects_garbage():
    with pytest.raises(CodecError):
        decode_payload(b"not json")


def test_get_retries_variants():
    assert get_retries(None) == 0
    assert get_retries({}) == 0
    assert get_retries({"x-retries": 3}) == 3
    assert get_retries({"x-retries": b"2"}) == 2


def test_trace_carrier_skips_reserved_headers():
    headers = {
        "traceparent": b"00-0af7651916cd43dd8448eb211c80319c-b7ad6b7169203331-01",
        "x-retries": 2,
        "x-death": [{"queue": "payments-retry-5000", "count": 1}],
        "tenant": 7,
    }
    assert trace_carrier(headers) == {
        "traceparent": "00-0af7651916cd43dd8448eb211c80319c-b7ad6b7169203331-01",
        "tenant": "7",
    }


def test_published_trace_context_survives_delay_hop():
    tracer = TracerProvider().get_tracer("test")
    with tracer.start_as_current_span("publish") as span:
        headers = inject_headers({"x-retries": 2})
        trace_id = span.get_span_context().trace_id

    assert headers["x-retries"] == 2
    assert "traceparent" in headers
    # after dead-lettering the broker adds x-death next to the trace headers
    headers["x-death"] = [{"queue": "payments-retry-5000", "count": 1}]
    ctx = extract_context_from_headers(headers)
    assert trace.get_current_span(ctx).get_span_context().trace_id == trace_id
