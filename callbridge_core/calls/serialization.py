"""
Store boundary codec.

Domain objects keep real sets and enums; everything written to Redis goes
through here as JSON. Decoding validates the shape with pydantic and turns
any failure into ``CorruptedPayloadError`` so callers can purge the record.
"""

from __future__ import annotations

from typing import Union

from pydantic import TypeAdapter, ValidationError
from pydantic_core import to_json

from callbridge_core.calls.base import ActiveCall, CallRequest, CorruptedPayloadError

_request_adapter = TypeAdapter(CallRequest)
_call_adapter = TypeAdapter(ActiveCall)

Payload = Union[str, bytes, bytearray]


def encode_request(request: CallRequest) -> str:
    return _request_adapter.dump_json(request).decode("utf-8")


def decode_request(payload: Payload) -> CallRequest:
    try:
        return _request_adapter.validate_json(payload)
    except ValidationError as e:
        raise CorruptedPayloadError(f"Invalid queue payload: {e.error_count()} errors") from e


def call_to_dict(call: ActiveCall) -> dict:
    data = _call_adapter.dump_python(call, mode="json")
    # Stable output for the same state
    for participant in data["participants"]:
        participant["users"] = sorted(participant["users"])
    return data


def encode_call(call: ActiveCall) -> str:
    return to_json(call_to_dict(call)).decode("utf-8")


def decode_call(payload: Payload) -> ActiveCall:
    try:
        return _call_adapter.validate_json(payload)
    except ValidationError as e:
        raise CorruptedPayloadError(f"Invalid call record: {e.error_count()} errors") from e


def call_from_dict(data: dict) -> ActiveCall:
    try:
        return _call_adapter.validate_python(data)
    except ValidationError as e:
        raise CorruptedPayloadError(f"Invalid call record: {e.error_count()} errors") from e


__all__ = [
    "encode_request",
    "decode_request",
    "call_to_dict",
    "call_from_dict",
    "encode_call",
    "decode_call",
]
