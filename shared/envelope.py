from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union
import json

from shared.errors import AuthenticationError, EnvelopeDecodeError
from shared.opcodes import OpCode, RPC_VERSION


@dataclass
class Envelope:
    """
    Every frame exchanged with the server uses the envelope:
    {
    "op": INT (opcode),
    "d":  { ... }  (opcode-specific document)
    }

    No other top-level fields are allowed.
    """
    opcode: OpCode
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, json_str: Union[str, bytes]) -> 'Envelope':
        """Parse JSON text into Envelope, validating structure"""
        if isinstance(json_str, bytes):
            try:
                json_str = json_str.decode('utf-8')
            except UnicodeDecodeError as e:
                raise EnvelopeDecodeError(f"Frame is not UTF-8: {e}")
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise EnvelopeDecodeError(f"Invalid JSON: {e}")
        except RecursionError:
            raise EnvelopeDecodeError("Invalid JSON: nested too deeply")

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Any) -> 'Envelope':
        """Create Envelope from a decoded document, validating required fields"""
        if not isinstance(data, dict):
            raise EnvelopeDecodeError("Envelope must be a JSON object")

        required_fields = {'op', 'd'}
        missing = required_fields - set(data.keys())
        if missing:
            raise EnvelopeDecodeError(f"Missing required fields: {sorted(missing)}")
        extra = set(data.keys()) - required_fields
        if extra:
            raise EnvelopeDecodeError(f"Unexpected fields: {sorted(extra)}")

        op = data['op']
        # bool is an int subclass; true/false is never a valid opcode
        if not isinstance(op, int) or isinstance(op, bool):
            raise EnvelopeDecodeError("'op' must be an integer")
        try:
            opcode = OpCode.from_value(op)
        except ValueError as e:
            raise EnvelopeDecodeError(str(e))
        if not isinstance(data['d'], dict):
            raise EnvelopeDecodeError("'d' must be an object")

        return cls(opcode=opcode, data=data['d'])

    def to_dict(self) -> Dict[str, Any]:
        """Convert Envelope back to the wire dictionary"""
        return {
            'op': int(self.opcode),
            'd': self.data,
        }

    def to_json(self) -> str:
        """Convert Envelope to compact JSON text"""
        return json.dumps(self.to_dict(), separators=(',', ':'), ensure_ascii=False)


def create_envelope(opcode: OpCode, data: Optional[Dict[str, Any]] = None) -> Envelope:
    """Helper to create a new envelope; data defaults to an empty document"""
    return Envelope(opcode=OpCode(opcode), data=dict(data) if data else {})


def encode(opcode: OpCode, data: Dict[str, Any]) -> str:
    return create_envelope(opcode, data).to_json()


def decode(text: Union[str, bytes]) -> Tuple[OpCode, Dict[str, Any]]:
    env = Envelope.from_json(text)
    return env.opcode, env.data


# ========================================
#           TYPED PAYLOADS
# ========================================

def _require_str(data: Dict[str, Any], key: str, where: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise EnvelopeDecodeError(f"{where}: '{key}' must be a string")
    return value


def _optional_int(data: Dict[str, Any], key: str, default: int, where: str) -> int:
    value = data.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool):
        raise EnvelopeDecodeError(f"{where}: '{key}' must be an integer")
    return value


def _optional_dict(data: Dict[str, Any], key: str, where: str) -> Dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise EnvelopeDecodeError(f"{where}: '{key}' must be an object")
    return value


@dataclass(frozen=True)
class AuthenticationChallenge:
    challenge: str
    salt: str

    @classmethod
    def from_dict(cls, data: Any) -> 'AuthenticationChallenge':
        if not isinstance(data, dict):
            raise AuthenticationError("Hello: 'authentication' must be an object")
        challenge = data.get('challenge')
        salt = data.get('salt')
        if not isinstance(challenge, str) or not isinstance(salt, str):
            raise AuthenticationError("Hello: authentication requires string 'challenge' and 'salt'")
        return cls(challenge=challenge, salt=salt)


@dataclass(frozen=True)
class Hello:
    rpc_version: int
    authentication: AuthenticationChallenge
    obs_websocket_version: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Hello':
        """
        Parse the Hello document.

        The server omits 'authentication' when it has auth disabled. This
        client always authenticates, so a missing challenge is an
        AuthenticationError rather than something to skip.
        """
        if 'authentication' not in data:
            raise AuthenticationError("Hello carries no authentication challenge")
        version = data.get('obsWebSocketVersion')
        return cls(
            rpc_version=_optional_int(data, 'rpcVersion', RPC_VERSION, "Hello"),
            authentication=AuthenticationChallenge.from_dict(data['authentication']),
            obs_websocket_version=version if isinstance(version, str) else None,
        )


@dataclass(frozen=True)
class Identified:
    negotiated_rpc_version: int = RPC_VERSION

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Identified':
        return cls(negotiated_rpc_version=_optional_int(data, 'negotiatedRpcVersion', RPC_VERSION, "Identified"))


@dataclass(frozen=True)
class Event:
    event_type: str
    event_intent: int = 0
    event_data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Event':
        return cls(
            event_type=_require_str(data, 'eventType', "Event"),
            event_intent=_optional_int(data, 'eventIntent', 0, "Event"),
            event_data=_optional_dict(data, 'eventData', "Event"),
        )


@dataclass(frozen=True)
class RequestStatus:
    result: bool
    code: int
    comment: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> 'RequestStatus':
        if not isinstance(data, dict):
            raise EnvelopeDecodeError("RequestResponse: 'requestStatus' must be an object")
        result = data.get('result')
        if not isinstance(result, bool):
            raise EnvelopeDecodeError("RequestResponse: 'requestStatus.result' must be a boolean")
        comment = data.get('comment')
        return cls(
            result=result,
            code=_optional_int(data, 'code', 0, "RequestResponse"),
            comment=comment if isinstance(comment, str) else None,
        )


@dataclass(frozen=True)
class RequestResponse:
    request_type: str
    request_id: str
    status: RequestStatus
    response_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status.result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RequestResponse':
        if 'requestStatus' not in data:
            raise EnvelopeDecodeError("RequestResponse: missing 'requestStatus'")
        return cls(
            request_type=_require_str(data, 'requestType', "RequestResponse"),
            request_id=_require_str(data, 'requestId', "RequestResponse"),
            status=RequestStatus.from_dict(data['requestStatus']),
            response_data=_optional_dict(data, 'responseData', "RequestResponse"),
        )
