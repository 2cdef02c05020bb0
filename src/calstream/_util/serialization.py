"""Msgpack serialization helpers for stored change-log payloads."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import msgpack


def pack(obj: Any) -> bytes:
    """Serialize an object to msgpack bytes."""
    return msgpack.packb(obj, use_bin_type=True)


def unpack(data: bytes) -> Any:
    """Deserialize msgpack bytes to an object."""
    return msgpack.unpackb(data, raw=False)


def freeze_payload(payload: Any) -> bytes:
    """Capture a payload as bytes so later caller mutations cannot leak into a stored record."""
    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise ValueError(f"payload must be a JSON object, got {type(payload).__name__}")
    try:
        return pack(payload)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"payload is not serializable: {exc}") from exc
