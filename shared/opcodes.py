from __future__ import annotations

from enum import Enum, IntEnum, IntFlag
from typing import Set


class OpCode(IntEnum):
    """obs-websocket v5 envelope opcodes. Values are fixed by the protocol."""

    HELLO = 0              # server -> client, carries challenge + salt
    IDENTIFY = 1           # client -> server, authentication response
    IDENTIFIED = 2         # server -> client, session is live
    EVENT = 5              # server -> client, async notification
    REQUEST = 6            # client -> server, command invocation
    REQUEST_RESPONSE = 7   # server -> client, result of a Request

    @classmethod
    def from_value(cls, value: int) -> OpCode:
        """Convert a wire integer to OpCode, raise ValueError if unknown."""
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown opcode: {value}")


class ConnectionState(str, Enum):
    """Lifecycle of a single Connection."""
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    AWAITING_HELLO = "AWAITING_HELLO"
    AUTHENTICATING = "AUTHENTICATING"
    READY = "READY"
    CLOSED = "CLOSED"
    ERRORED = "ERRORED"


class EventSubscription(IntFlag):
    """Bitmask sent in Identify.eventSubscriptions."""
    NONE = 0
    GENERAL = 1 << 0
    CONFIG = 1 << 1
    SCENES = 1 << 2
    INPUTS = 1 << 3
    TRANSITIONS = 1 << 4
    FILTERS = 1 << 5
    OUTPUTS = 1 << 6
    SCENE_ITEMS = 1 << 7
    MEDIA_INPUTS = 1 << 8
    VENDORS = 1 << 9
    UI = 1 << 10

    ALL = (GENERAL | CONFIG | SCENES | INPUTS | TRANSITIONS | FILTERS
           | OUTPUTS | SCENE_ITEMS | MEDIA_INPUTS | VENDORS | UI)


# General + Filters, what the recorder plugin has always subscribed to
DEFAULT_EVENT_SUBSCRIPTIONS = int(EventSubscription.GENERAL | EventSubscription.FILTERS)

RPC_VERSION = 1


class WebSocketCloseCode(IntEnum):
    """Close codes the server uses when it drops a session."""
    NORMAL = 1000
    GOING_AWAY = 1001
    UNKNOWN_REASON = 4000
    MESSAGE_DECODE_ERROR = 4002
    MISSING_DATA_FIELD = 4003
    INVALID_DATA_FIELD_TYPE = 4004
    INVALID_DATA_FIELD_VALUE = 4005
    UNKNOWN_OP_CODE = 4006
    NOT_IDENTIFIED = 4007
    ALREADY_IDENTIFIED = 4008
    AUTHENTICATION_FAILED = 4009
    UNSUPPORTED_RPC_VERSION = 4010
    SESSION_INVALIDATED = 4011
    UNSUPPORTED_FEATURE = 4012


# Opcodes this client only ever receives
INBOUND_OPCODES: Set[OpCode] = {
    OpCode.HELLO,
    OpCode.IDENTIFIED,
    OpCode.EVENT,
    OpCode.REQUEST_RESPONSE,
}

# States in which no session exists and connect() may start one
IDLE_STATES: Set[ConnectionState] = {
    ConnectionState.DISCONNECTED,
    ConnectionState.CLOSED,
    ConnectionState.ERRORED,
}
