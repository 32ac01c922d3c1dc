from __future__ import annotations
from typing import Dict, Mapping, Optional

from shared.envelope import Envelope, create_envelope
from shared.opcodes import OpCode
from shared.utils import new_request_id


def build_request(request_type: str, fields: Optional[Mapping[str, str]] = None) -> Envelope:
    """
    Build a Request (op 6) envelope with a fresh requestId.

    Pure: no I/O. Callers never choose the requestId.
    """
    if not isinstance(request_type, str) or not request_type:
        raise ValueError("request_type must be a non-empty string")

    request_data: Dict[str, str] = {}
    for key, value in (fields or {}).items():
        if not isinstance(key, str) or not isinstance(value, str):
            raise TypeError(f"requestData fields must be str -> str, got {key!r}: {value!r}")
        request_data[key] = value

    return create_envelope(OpCode.REQUEST, {
        "requestType": request_type,
        "requestId": new_request_id(),
        "requestData": request_data,
    })


def build_identify(auth_key: str, rpc_version: int, event_subscriptions: int) -> Envelope:
    """Identify (op 1) answering a Hello."""
    return create_envelope(OpCode.IDENTIFY, {
        "rpcVersion": rpc_version,
        "authentication": auth_key,
        "eventSubscriptions": int(event_subscriptions),
    })
