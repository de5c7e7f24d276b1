"""JSON message codec.

Every payload travels as compact UTF-8 JSON with ``content_type`` set to
``application/json`` and persistent delivery mode, so queued messages survive a
broker restart. Pydantic models are dumped in JSON mode before encoding.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Mapping, Optional

from aio_pika import DeliveryMode, Message
from aio_pika.abc import HeadersType
from pydantic import BaseModel

from oracle_queue.constants import CONTENT_TYPE_JSON, RETRIES_HEADER
from oracle_queue.errors import CodecError
from oracle_queue.tracing import inject_headers


def encode_payload(data: Any) -> bytes:
    """Encode ``data`` as compact JSON bytes.

    >>> encode_payload({"tx": "0xabc", "amount": 1})
    b'{"tx":"0xabc","amount":1}'
    """
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    try:
        return json.dumps(data, separators=(",", ":")).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise CodecError(f"payload is not JSON serializable: {exc}") from exc


def decode_payload(body: bytes) -> Any:
    """Decode a JSON message body."""
    try:
        return json.loads(body)
    except (UnicodeDecodeError, ValueError) as exc:
        raise CodecError(f"message body is not valid JSON: {exc}") from exc


def build_message(data: Any, headers: Optional[HeadersType] = None) -> Message:
    """Build a persistent JSON ``aio_pika.Message`` for ``data``.

    The current trace context, if any, is added to the headers.
    """
    hdrs: Dict[str, Any] = inject_headers(headers)
    return Message(
        body=encode_payload(data),
        content_type=CONTENT_TYPE_JSON,
        delivery_mode=DeliveryMode.PERSISTENT,
        headers=hdrs,
    )


def get_retries(headers: Mapping[str, Any] | None) -> int:
    """Return the retry count carried in message headers (0 when absent)."""
    if not headers:
        return 0
    value = headers.get(RETRIES_HEADER)
    if value is None:
        return 0
    if isinstance(value, bytes):
        value = value.decode("utf-8")
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
