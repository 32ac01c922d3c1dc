from __future__ import annotations

import threading
import time
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

from client.pending import PendingRequestTable
from client.request import build_identify, build_request
from client.transport import Transport, TransportListener
from shared.crypto.auth import derive_auth_key
from shared.envelope import Envelope, Event, Hello, Identified, RequestResponse
from shared.errors import (
    AuthenticationError,
    ConnectionClosedError,
    EnvelopeDecodeError,
    NotReadyError,
    ObsProtocolError,
    TransportError,
)
from shared.log import get_logger, log_envelope
from shared.opcodes import (
    DEFAULT_EVENT_SUBSCRIPTIONS,
    IDLE_STATES,
    INBOUND_OPCODES,
    RPC_VERSION,
    ConnectionState,
    OpCode,
    WebSocketCloseCode,
)

logger = get_logger(__name__)

Hook = Callable[..., Any]

HOOK_NAMES = ("event", "request_response", "error", "closed", "state_change")

# sentinel: "use the connection's request_timeout"
DEFAULT_TIMEOUT: Any = object()


@dataclass(frozen=True)
class CloseInfo:
    code: int
    reason: str
    clean: bool


class Connection(TransportListener):
    """
    Client side of one obs-websocket session.

    Drives DISCONNECTED -> CONNECTING -> AWAITING_HELLO -> AUTHENTICATING -> READY,
    with CLOSED and ERRORED reachable from anywhere. Nothing here blocks or
    raises for protocol/transport failures; outcomes surface through hooks
    registered with on() and through the futures returned by send_request().

    Requests submitted during the handshake are queued and flushed, in
    order, once the server sends Identified. Requests submitted with no
    session at all fail their future with NotReadyError.

    Transport signals may arrive on another thread. A single re-entrant
    lock serialises them, so hooks see messages strictly in transport order
    and may call close() from inside a callback.
    """

    def __init__(
        self,
        transport: Transport,
        password: str,
        *,
        rpc_version: int = RPC_VERSION,
        event_subscriptions: int = DEFAULT_EVENT_SUBSCRIPTIONS,
        request_timeout: Optional[float] = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._transport = transport
        self._password = password
        self.rpc_version = rpc_version
        self.event_subscriptions = int(event_subscriptions)
        self.request_timeout = request_timeout

        self._lock = threading.RLock()
        self._state = ConnectionState.DISCONNECTED
        self._closing = False
        self._pending = PendingRequestTable(clock)
        self._queued: Deque[Envelope] = deque()
        self._hooks: Dict[str, List[Hook]] = {name: [] for name in HOOK_NAMES}

        self.negotiated_rpc_version: Optional[int] = None
        self.last_close: Optional[CloseInfo] = None
        self.last_error: Optional[Exception] = None

        self._handlers: Dict[OpCode, Callable[[Envelope], None]] = {
            OpCode.HELLO: self._handle_hello,
            OpCode.IDENTIFIED: self._handle_identified,
            OpCode.EVENT: self._handle_event,
            OpCode.REQUEST_RESPONSE: self._handle_request_response,
        }

        transport.bind(self)

    # ========================================
    #           PROPERTIES / HOOKS
    # ========================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ConnectionState.READY

    @property
    def pending_count(self) -> int:
        with self._lock:
            return self._pending.size()

    @property
    def transport(self) -> Transport:
        return self._transport

    def on(self, name: str, callback: Hook) -> None:
        """
        Register an observation hook.

        name is one of: "event" (Event), "request_response" (RequestResponse),
        "error" (Exception), "closed" (CloseInfo), "state_change" (old, new).
        """
        if name not in self._hooks:
            raise ValueError(f"Unknown hook: {name}")
        self._hooks[name].append(callback)

    def off(self, name: str, callback: Hook) -> None:
        if name in self._hooks and callback in self._hooks[name]:
            self._hooks[name].remove(callback)

    # ========================================
    #           PUBLIC OPERATIONS
    # ========================================

    def connect(self) -> None:
        """Start a session. No-op unless DISCONNECTED, CLOSED or ERRORED."""
        with self._lock:
            if self._state not in IDLE_STATES:
                logger.debug("connect() ignored", extra={"state": self._state.value})
                return
            self._closing = False
            self.negotiated_rpc_version = None
            self._set_state(ConnectionState.CONNECTING)
        self._transport.connect()

    def close(self) -> None:
        """Ask the transport to shut down. Safe in any state, and from hooks."""
        with self._lock:
            if self._state in IDLE_STATES or self._closing:
                return
            self._closing = True
        logger.info("Closing connection", extra={"state": self._state.value})
        self._transport.close(int(WebSocketCloseCode.NORMAL), "Client closing")

    def send_request(
        self,
        request_type: str,
        fields: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
    ) -> "Future[RequestResponse]":
        """
        Issue a Request and return a future for its RequestResponse.

        The future fails with RequestFailedError if the server reports
        result=false, RequestTimeoutError once timeout seconds pass
        (measured from submission, queued time included) and
        ConnectionClosedError if the session ends first.
        """
        envelope = build_request(request_type, fields)
        request_id = envelope.data["requestId"]
        if timeout is DEFAULT_TIMEOUT:
            timeout = self.request_timeout

        with self._lock:
            if self._state in IDLE_STATES:
                future: Future = Future()
                future.request_id = request_id
                future.set_exception(NotReadyError(
                    f"Cannot send {request_type}: connection is {self._state.value}"
                ))
                return future

            entry = self._pending.add(request_id, request_type, timeout)
            if self._state is ConnectionState.READY:
                self._send(envelope)
            else:
                self._queued.append(envelope)
                logger.debug("Queued until identified", extra={
                    "request_type": request_type, "request_id": request_id,
                })
            return entry.future

    def cancel_request(self, request_id: str) -> bool:
        """Drop an outstanding request and cancel its future."""
        with self._lock:
            self._queued = deque(e for e in self._queued if e.data["requestId"] != request_id)
            return self._pending.cancel(request_id)

    def sweep_expired(self) -> int:
        """Fail timed-out requests. Also runs on every inbound message."""
        with self._lock:
            removed = self._pending.prune_expired()
            if removed and self._queued:
                self._queued = deque(
                    e for e in self._queued if self._pending.get(e.data["requestId"]) is not None
                )
            return removed

    # ========================================
    #           TRANSPORT SIGNALS
    # ========================================

    def on_connected(self) -> None:
        with self._lock:
            if self._state is not ConnectionState.CONNECTING:
                logger.warning("Unexpected transport connect", extra={"state": self._state.value})
                return
            self._set_state(ConnectionState.AWAITING_HELLO)

    def on_message(self, text: str) -> None:
        with self._lock:
            self.sweep_expired()
            try:
                envelope = Envelope.from_json(text)
            except EnvelopeDecodeError as e:
                logger.warning(f"Dropping malformed frame: {e}", extra={"state": self._state.value})
                return

            log_envelope(logger, "debug", "Received", envelope=envelope.to_dict(), state=self._state.value)
            if envelope.opcode not in INBOUND_OPCODES:
                logger.warning("Ignoring client-only opcode from server", extra={
                    "op": int(envelope.opcode), "state": self._state.value,
                })
                return
            self._handlers[envelope.opcode](envelope)

    def on_message_sent(self, text: str) -> None:
        logger.debug(f"Message sent ({len(text)} bytes)")

    def on_connection_error(self, error: str) -> None:
        with self._lock:
            logger.error(f"Transport error: {error}", extra={"state": self._state.value})
            self._enter_errored(TransportError(error))

    def on_closed(self, code: int, reason: str, clean: bool) -> None:
        with self._lock:
            info = CloseInfo(code=code, reason=reason, clean=clean)
            self.last_close = info
            logger.info(
                f"Connection closed: code={code} reason={reason!r} clean={clean}",
                extra={"state": self._state.value},
            )

            rejected = code == WebSocketCloseCode.AUTHENTICATION_FAILED or (
                self._state is ConnectionState.AUTHENTICATING and not self._closing
            )
            if self._state is ConnectionState.ERRORED:
                pass
            elif rejected:
                self._enter_errored(AuthenticationError(
                    f"Server closed the connection during authentication (code={code}, reason={reason!r})"
                ))
            else:
                self._set_state(ConnectionState.CLOSED)
                self._abort_outstanding(ConnectionClosedError("Connection closed", code, reason))

            self._closing = False
            self._emit("closed", info)

    # ========================================
    #           OPCODE HANDLERS
    # ========================================

    def _handle_hello(self, envelope: Envelope) -> None:
        if self._state is not ConnectionState.AWAITING_HELLO:
            logger.warning("Protocol violation: Hello ignored", extra={"state": self._state.value})
            return
        try:
            hello = Hello.from_dict(envelope.data)
        except AuthenticationError as e:
            logger.error(f"Cannot authenticate: {e}")
            self._enter_errored(e)
            self._closing = True
            self._transport.close(int(WebSocketCloseCode.NORMAL), "Authentication unavailable")
            return
        except EnvelopeDecodeError as e:
            logger.warning(f"Dropping malformed Hello: {e}")
            return

        logger.info(f"Hello from server (obs-websocket {hello.obs_websocket_version or 'unknown'}, rpc {hello.rpc_version})")
        auth_key = derive_auth_key(self._password, hello.authentication.salt, hello.authentication.challenge)
        self._set_state(ConnectionState.AUTHENTICATING)
        self._send(build_identify(auth_key, self.rpc_version, self.event_subscriptions))

    def _handle_identified(self, envelope: Envelope) -> None:
        if self._state is not ConnectionState.AUTHENTICATING:
            logger.warning("Protocol violation: Identified ignored", extra={"state": self._state.value})
            return
        try:
            identified = Identified.from_dict(envelope.data)
        except EnvelopeDecodeError as e:
            logger.warning(f"Dropping malformed Identified: {e}")
            return

        self.negotiated_rpc_version = identified.negotiated_rpc_version
        logger.info("Identified; connection is ready for normal operation")
        self._set_state(ConnectionState.READY)
        self._flush_queue()

    def _handle_event(self, envelope: Envelope) -> None:
        if self._state is not ConnectionState.READY:
            logger.warning("Event before identification ignored", extra={"state": self._state.value})
            return
        try:
            event = Event.from_dict(envelope.data)
        except EnvelopeDecodeError as e:
            logger.warning(f"Dropping malformed Event: {e}")
            return
        logger.debug(f"Event {event.event_type}")
        self._emit("event", event)

    def _handle_request_response(self, envelope: Envelope) -> None:
        if self._state is not ConnectionState.READY:
            logger.warning("RequestResponse before identification ignored", extra={"state": self._state.value})
            return
        try:
            response = RequestResponse.from_dict(envelope.data)
        except EnvelopeDecodeError as e:
            logger.warning(f"Dropping malformed RequestResponse: {e}")
            return

        context = {"request_type": response.request_type, "request_id": response.request_id}
        if response.ok:
            logger.info("Request successful!", extra=context)
        else:
            logger.warning(f"Request unsuccessful! code={response.status.code} {response.status.comment or ''}".rstrip(), extra=context)
        self._pending.resolve(response)
        self._emit("request_response", response)

    # ========================================
    #           INTERNALS
    # ========================================

    def _send(self, envelope: Envelope) -> None:
        log_envelope(logger, "debug", "Sending", envelope=envelope.to_dict(), state=self._state.value)
        self._transport.send(envelope.to_json())

    def _flush_queue(self) -> None:
        while self._queued:
            envelope = self._queued.popleft()
            if self._pending.get(envelope.data["requestId"]) is None:
                # cancelled or expired while waiting
                continue
            self._send(envelope)

    def _set_state(self, new: ConnectionState) -> None:
        old = self._state
        if old is new:
            return
        self._state = new
        logger.info(f"{old.value} -> {new.value}")
        self._emit("state_change", old, new)

    def _enter_errored(self, exc: ObsProtocolError) -> None:
        self.last_error = exc
        self._set_state(ConnectionState.ERRORED)
        self._abort_outstanding(ConnectionClosedError(f"Connection failed: {exc}"))
        self._emit("error", exc)

    def _abort_outstanding(self, exc: ConnectionClosedError) -> None:
        self._queued.clear()
        failed = self._pending.fail_all(exc)
        if failed:
            logger.warning(f"Failed {len(failed)} outstanding request(s): {exc}")

    def _emit(self, name: str, *args: Any) -> None:
        for callback in list(self._hooks[name]):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Error in {name} hook: {e}", exc_info=True)
