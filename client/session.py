from __future__ import annotations
import asyncio
from contextlib import suppress
from typing import AsyncIterator, Mapping, Optional

from client.config import ConnectionConfig
from client.connection import CloseInfo, Connection, DEFAULT_TIMEOUT
from client.transport import Transport, WebsocketsTransport
from shared.envelope import Event, RequestResponse
from shared.errors import ConnectionClosedError, ObsProtocolError, TransportError
from shared.log import get_logger
from shared.opcodes import ConnectionState

logger = get_logger(__name__)


class RemoteSession:
    """
    asyncio front end for a Connection.

    Adds what the protocol layer leaves to callers: a handshake deadline,
    awaitable requests, an event queue and a background sweep that expires
    requests nobody answered.

    Usage::

        async with RemoteSession(load_config()) as session:
            resp = await session.request("GetRecordStatus")
            print(resp.response_data["outputActive"])
    """

    def __init__(
        self,
        config: ConnectionConfig,
        transport: Optional[Transport] = None,
        *,
        sweep_interval: float = 1.0,
    ) -> None:
        self.config = config
        self.transport = transport or WebsocketsTransport(config.url)
        self.connection = Connection(
            self.transport,
            config.password,
            rpc_version=config.rpc_version,
            event_subscriptions=config.event_subscriptions,
            request_timeout=config.request_timeout,
        )
        self.sweep_interval = sweep_interval
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._ready: Optional[asyncio.Future] = None
        self._events: Optional[asyncio.Queue] = None
        self._events_ended = False
        self._sweeper: Optional[asyncio.Task] = None

        self.connection.on("state_change", self._on_state_change)
        self.connection.on("error", self._on_error)
        self.connection.on("closed", self._on_closed)
        self.connection.on("event", self._on_event)

    async def __aenter__(self) -> "RemoteSession":
        await self.connect()
        return self

    async def __aexit__(self, *_exc) -> None:
        await self.close()

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    async def connect(self) -> None:
        """Connect and wait until Identified, or raise."""
        self._loop = asyncio.get_running_loop()
        if self._events is None or self._events_ended:
            # the previous queue ends with a None marker
            self._events = asyncio.Queue()
            self._events_ended = False
        if self.connection.is_ready:
            return

        self._ready = self._loop.create_future()
        self.connection.connect()
        try:
            await asyncio.wait_for(self._ready, timeout=self.config.handshake_timeout)
        except asyncio.TimeoutError:
            logger.error(f"Handshake with {self.config.url} timed out after {self.config.handshake_timeout}s")
            self.connection.close()
            raise TransportError(f"Handshake did not complete within {self.config.handshake_timeout}s")
        finally:
            self._ready = None

        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def request(
        self,
        request_type: str,
        fields: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
    ) -> RequestResponse:
        """Send a request and wait for its response (see Connection.send_request)."""
        future = self.connection.send_request(request_type, fields, timeout)
        return await asyncio.wrap_future(future)

    async def events(self) -> AsyncIterator[Event]:
        """Yield events in arrival order until the session ends."""
        if self._events is None:
            self._events = asyncio.Queue()
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        self.connection.close()
        if isinstance(self.transport, WebsocketsTransport):
            await self.transport.wait_closed()

    async def reconnect(self, max_retries: int = 5, base_delay: float = 1.0) -> bool:
        """Reconnect with exponential backoff"""
        for attempt in range(max_retries):
            try:
                delay = base_delay * (2 ** attempt)
                logger.info(f"Reconnecting in {delay}s (attempt {attempt + 1}/{max_retries})")
                await asyncio.sleep(delay)
                await self.connect()
                return True
            except ObsProtocolError as e:
                logger.warning(f"Reconnect attempt {attempt + 1} failed: {e}")
        return False

    # ---- hooks (may run on the transport's thread) ----

    def _threadsafe(self, fn, *args) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(fn, *args)

    def _settle(self, exc: Optional[BaseException]) -> None:
        ready = self._ready
        if ready is None or ready.done():
            return
        if exc is None:
            ready.set_result(None)
        else:
            ready.set_exception(exc)

    def _on_state_change(self, old: ConnectionState, new: ConnectionState) -> None:
        if new is ConnectionState.READY:
            self._threadsafe(self._settle, None)

    def _on_error(self, exc: Exception) -> None:
        self._threadsafe(self._settle, exc)

    def _on_closed(self, info: CloseInfo) -> None:
        self._threadsafe(self._settle, ConnectionClosedError(
            f"Connection closed before identification (code={info.code})", info.code, info.reason,
        ))
        self._threadsafe(self._end_events, self._events)

    def _end_events(self, queue: Optional[asyncio.Queue]) -> None:
        if queue is not None and queue is self._events and not self._events_ended:
            queue.put_nowait(None)
            self._events_ended = True

    def _on_event(self, event: Event) -> None:
        if self._events is not None:
            self._threadsafe(self._events.put_nowait, event)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.connection.sweep_expired()
