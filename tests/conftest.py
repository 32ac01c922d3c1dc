import os
import sys
import tempfile
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# keep test runs from writing logs/ into the checkout
os.environ.setdefault("OBSWS_LOG_DIR", str(Path(tempfile.gettempdir()) / "obsws-test-logs"))

from fakes import PASSWORD, FakeClock, FakeTransport, hello_frame, identified_frame  # noqa: E402


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def connection(transport, clock):
    from client.connection import Connection

    return Connection(transport, PASSWORD, request_timeout=5.0, clock=clock)


@pytest.fixture
def ready_connection(connection, transport):
    """A connection driven through the full handshake with the Identify frame discarded."""
    connection.connect()
    transport.open()
    transport.deliver(hello_frame("abc", "xyz"))
    transport.deliver(identified_frame())
    transport.sent.clear()
    return connection
