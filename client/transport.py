from __future__ import annotations
import asyncio
from abc import ABC, abstractmethod
from contextlib import suppress
from typing import Optional

import websockets
from websockets.protocol import State

from shared.log import get_logger

logger = get_logger(__name__)

# Close code reported when the socket went away without a close frame
ABNORMAL_CLOSURE = 1006


class TransportListener(ABC):
    """Receiver of transport signals. The Connection implements this."""

    @abstractmethod
    def on_connected(self) -> None:
        ...

    @abstractmethod
    def on_message(self, text: str) -> None:
        ...

    def on_message_sent(self, text: str) -> None:
        pass

    @abstractmethod
    def on_connection_error(self, error: str) -> None:
        ...

    @abstractmethod
    def on_closed(self, code: int, reason: str, clean: bool) -> None:
        ...


class Transport(ABC):
    """
    Duplex text-message channel.

    connect/close/send only signal intent; outcomes arrive through the
    bound TransportListener, possibly from another thread.
    """

    def __init__(self) -> None:
        self.listener: Optional[TransportListener] = None

    def bind(self, listener: TransportListener) -> None:
        self.listener = listener

    @abstractmethod
    def connect(self) -> None:
        ...

    @abstractmethod
    def close(self, code: int = 1000, reason: str = "") -> None:
        ...

    @abstractmethod
    def send(self, text: str) -> None:
        ...

    @abstractmethod
    def is_connected(self) -> bool:
        ...


class WebsocketsTransport(Transport):
    """
    Transport over a `websockets` client connection.

    Reader and writer run as tasks on an asyncio loop. The loop is the one
    running when connect() is first called unless one is passed in; send()
    and close() may then be called from any thread.
    """

    def __init__(
        self,
        url: str,
        *,
        ping_interval: Optional[float] = 15,
        ping_timeout: Optional[float] = 45,
        open_timeout: Optional[float] = 10,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        super().__init__()
        self.url = url
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self.open_timeout = open_timeout
        self._loop = loop
        self._task: Optional[asyncio.Task] = None
        self._websocket: Optional[websockets.ClientConnection] = None
        self._outbox: Optional[asyncio.Queue] = None

    # ---- Transport API ----

    def connect(self) -> None:
        if self._loop is None:
            try:
                self._loop = asyncio.get_running_loop()
            except RuntimeError:
                self._notify_error("WebsocketsTransport.connect() needs a running asyncio loop")
                return
        self._call_in_loop(self._start)

    def close(self, code: int = 1000, reason: str = "") -> None:
        if self._loop is None:
            return
        self._call_in_loop(self._begin_close, code, reason)

    def send(self, text: str) -> None:
        if self._loop is None:
            logger.warning("Dropping outbound frame: transport was never connected")
            return
        self._call_in_loop(self._enqueue, text)

    def is_connected(self) -> bool:
        return self._websocket is not None and self._websocket.state is State.OPEN

    async def wait_closed(self) -> None:
        """Wait until the reader task has finished and on_closed has fired."""
        if self._task is not None:
            with suppress(asyncio.CancelledError):
                await self._task

    # ---- loop-side internals ----

    def _call_in_loop(self, fn, *args) -> None:
        assert self._loop is not None
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            fn(*args)
        else:
            self._loop.call_soon_threadsafe(fn, *args)

    def _start(self) -> None:
        if self._task is not None and not self._task.done():
            logger.debug("Connect requested while already running; ignoring")
            return
        self._outbox = asyncio.Queue()
        self._task = self._loop.create_task(self._run())

    def _enqueue(self, text: str) -> None:
        if self._outbox is None:
            logger.warning("Dropping outbound frame: no active connection")
            return
        self._outbox.put_nowait(text)

    def _begin_close(self, code: int, reason: str) -> None:
        if self._websocket is not None:
            self._loop.create_task(self._websocket.close(code=code, reason=reason))
        elif self._task is not None and not self._task.done():
            # still dialing
            self._task.cancel()

    async def _run(self) -> None:
        logger.info(f"Connecting to {self.url}")
        try:
            websocket = await websockets.connect(
                self.url,
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_timeout,
                open_timeout=self.open_timeout,
            )
        except asyncio.CancelledError:
            self._outbox = None
            self._notify_closed(1000, "Connection attempt cancelled", True)
            raise
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            self._outbox = None
            self._notify_error(f"Failed to connect to {self.url}: {e}")
            return

        self._websocket = websocket
        if self.listener is not None:
            self.listener.on_connected()

        writer = asyncio.create_task(self._write_loop(websocket))
        clean = False
        try:
            async for raw in websocket:
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8", errors="replace")
                if self.listener is None:
                    continue
                try:
                    self.listener.on_message(raw)
                except Exception:
                    # one bad frame must not stop the reader
                    logger.exception("Listener failed to handle inbound frame")
            clean = True
        except websockets.exceptions.ConnectionClosedError as e:
            logger.warning(f"Connection to {self.url} dropped: {e}")
        finally:
            writer.cancel()
            with suppress(asyncio.CancelledError):
                await writer
            self._websocket = None
            self._outbox = None

        code = websocket.close_code if websocket.close_code is not None else ABNORMAL_CLOSURE
        self._notify_closed(code, websocket.close_reason or "", clean)

    async def _write_loop(self, websocket: websockets.ClientConnection) -> None:
        outbox = self._outbox
        assert outbox is not None
        while True:
            text = await outbox.get()
            try:
                await websocket.send(text)
            except websockets.exceptions.ConnectionClosed:
                logger.warning("Connection closed while sending; dropping frame")
                return
            if self.listener is not None:
                self.listener.on_message_sent(text)

    def _notify_error(self, error: str) -> None:
        if self.listener is not None:
            self.listener.on_connection_error(error)
        else:
            logger.error(error)

    def _notify_closed(self, code: int, reason: str, clean: bool) -> None:
        if self.listener is not None:
            self.listener.on_closed(code, reason, clean)
