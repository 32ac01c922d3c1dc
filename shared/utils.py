from __future__ import annotations
import uuid

# ========================================
#           INPUT VALIDATION HELPERS
# ========================================
"""
Helpers used by the request builder, config loader and tests to decide if
a value is well-formed before it goes on the wire.
"""

def is_uuid_v4(s: str) -> bool:
    """
    enforces that request ids are valid UUIDv4s in canonical string form
    """
    try:
        u = uuid.UUID(s)
        return u.version == 4 and str(u) == s.lower()
    except (ValueError, AttributeError, TypeError):
        return False

def is_valid_port(port: int) -> bool:
    return isinstance(port, int) and not isinstance(port, bool) and 0 < port <= 65535

def new_request_id() -> str:
    return str(uuid.uuid4())
