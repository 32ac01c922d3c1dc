from __future__ import annotations
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from shared.envelope import RequestResponse


class ObsProtocolError(Exception):
    """Base class for everything the protocol engine reports."""
    pass

class EnvelopeDecodeError(ObsProtocolError):
    """Raised when an inbound frame is not a well-formed {op, d} envelope."""
    pass

class AuthenticationError(ObsProtocolError):
    """Raised when the handshake cannot complete (no challenge, or the server rejected Identify)."""
    pass

class TransportError(ObsProtocolError):
    """Raised when the underlying WebSocket fails to connect or drops."""
    pass

class ConnectionClosedError(ObsProtocolError):
    """Raised on outstanding requests when the connection leaves its session."""

    def __init__(self, message: str, code: Optional[int] = None, reason: str = "") -> None:
        super().__init__(message)
        self.code = code
        self.reason = reason

class NotReadyError(ObsProtocolError):
    """Raised when a request is submitted while no session is active."""
    pass

class RequestTimeoutError(ObsProtocolError):
    """Raised when no RequestResponse arrived before the request's deadline."""

    def __init__(self, request_type: str, request_id: str, timeout: float) -> None:
        super().__init__(f"{request_type} ({request_id}) got no response within {timeout:.1f}s")
        self.request_type = request_type
        self.request_id = request_id
        self.timeout = timeout

class RequestFailedError(ObsProtocolError):
    """Raised when the server answered a request with requestStatus.result == false."""

    def __init__(self, response: "RequestResponse") -> None:
        status = response.status
        detail = f": {status.comment}" if status.comment else ""
        super().__init__(f"{response.request_type} failed with code {status.code}{detail}")
        self.response = response
        self.code = status.code
        self.comment = status.comment
