import threading

import pytest

from client.connection import CloseInfo, Connection
from shared.crypto.auth import derive_auth_key
from shared.errors import (
    AuthenticationError,
    ConnectionClosedError,
    NotReadyError,
    RequestFailedError,
    RequestTimeoutError,
    TransportError,
)
from shared.opcodes import ConnectionState, OpCode

from fakes import PASSWORD, event_frame, hello_frame, identified_frame, response_frame


def _recorder(connection):
    seen = {"event": [], "request_response": [], "error": [], "closed": [], "state_change": []}
    connection.on("event", seen["event"].append)
    connection.on("request_response", seen["request_response"].append)
    connection.on("error", seen["error"].append)
    connection.on("closed", seen["closed"].append)
    connection.on("state_change", lambda old, new: seen["state_change"].append((old, new)))
    return seen


def test_end_to_end_handshake_and_request(connection, transport):
    connection.connect()
    assert connection.state is ConnectionState.CONNECTING
    assert transport.connect_calls == 1

    transport.open()
    assert connection.state is ConnectionState.AWAITING_HELLO

    transport.deliver({"op": 0, "d": {"authentication": {"challenge": "abc", "salt": "xyz"}}})
    assert connection.state is ConnectionState.AUTHENTICATING
    sent = transport.sent_envelopes()
    assert len(sent) == 1
    assert sent[0]["op"] == 1
    assert sent[0]["d"]["authentication"] == derive_auth_key(PASSWORD, "xyz", "abc")
    assert sent[0]["d"]["rpcVersion"] == 1
    assert sent[0]["d"]["eventSubscriptions"] == 33

    transport.deliver({"op": 2, "d": {}})
    assert connection.state is ConnectionState.READY
    assert connection.negotiated_rpc_version == 1

    connection.send_request("ToggleInputMute", {"inputName": "Mic"})
    request = transport.sent_envelopes()[-1]
    assert request["op"] == 6
    assert request["d"]["requestType"] == "ToggleInputMute"
    assert request["d"]["requestData"] == {"inputName": "Mic"}
    assert set(request["d"]) == {"requestType", "requestId", "requestData"}


def test_state_transitions_are_reported_in_order(connection, transport):
    seen = _recorder(connection)
    connection.connect()
    transport.open()
    transport.deliver(hello_frame("abc", "xyz"))
    transport.deliver(identified_frame())
    assert [new for _, new in seen["state_change"]] == [
        ConnectionState.CONNECTING,
        ConnectionState.AWAITING_HELLO,
        ConnectionState.AUTHENTICATING,
        ConnectionState.READY,
    ]


def test_connect_is_idempotent(connection, transport):
    connection.connect()
    connection.connect()
    transport.open()
    connection.connect()
    assert transport.connect_calls == 1


def test_hello_while_disconnected_is_ignored(connection, transport):
    transport.deliver(hello_frame("abc", "xyz"))
    assert connection.state is ConnectionState.DISCONNECTED
    assert transport.sent == []


def test_hello_twice_sends_one_identify(connection, transport):
    connection.connect()
    transport.open()
    transport.deliver(hello_frame("abc", "xyz"))
    transport.deliver(hello_frame("def", "uvw"))
    assert len(transport.sent) == 1
    assert connection.state is ConnectionState.AUTHENTICATING


def test_identified_out_of_order_is_ignored(connection, transport):
    connection.connect()
    transport.open()
    transport.deliver(identified_frame())
    assert connection.state is ConnectionState.AWAITING_HELLO


def test_hello_without_authentication_errors(connection, transport):
    seen = _recorder(connection)
    connection.connect()
    transport.open()
    transport.deliver({"op": 0, "d": {"rpcVersion": 1}})

    assert connection.state is ConnectionState.ERRORED
    assert transport.sent == []
    assert len(seen["error"]) == 1
    assert isinstance(seen["error"][0], AuthenticationError)
    assert len(transport.close_calls) == 1

    # the transport then reports the close; ERRORED is kept
    transport.drop(1000, "Authentication unavailable")
    assert connection.state is ConnectionState.ERRORED
    assert seen["closed"] == [CloseInfo(1000, "Authentication unavailable", True)]


def test_server_rejecting_identify_errors(connection, transport):
    seen = _recorder(connection)
    connection.connect()
    transport.open()
    transport.deliver(hello_frame("abc", "xyz"))
    transport.drop(4009, "Authentication failed.", clean=True)

    assert connection.state is ConnectionState.ERRORED
    assert isinstance(seen["error"][0], AuthenticationError)
    assert seen["closed"][0].code == 4009


def test_malformed_messages_do_not_change_state(ready_connection, transport):
    seen = _recorder(ready_connection)
    for frame in ("{not json", "[]", '{"op": 9, "d": {}}', '{"op": 5, "d": {"eventData": {}}}',
                  '{"op": 7, "d": {"requestId": "x"}}', '{"op": 6, "d": {}}'):
        transport.deliver(frame)
    assert ready_connection.state is ConnectionState.READY
    assert seen["event"] == [] and seen["request_response"] == [] and seen["error"] == []


def test_deeply_nested_frame_is_dropped(ready_connection, transport):
    seen = _recorder(ready_connection)
    transport.deliver("[" * 200000)
    assert ready_connection.state is ConnectionState.READY
    transport.deliver(event_frame("RecordStateChanged"))
    assert [e.event_type for e in seen["event"]] == ["RecordStateChanged"]


def test_malformed_message_before_hello(connection, transport):
    connection.connect()
    transport.open()
    transport.deliver("garbage")
    assert connection.state is ConnectionState.AWAITING_HELLO
    transport.deliver(hello_frame("abc", "xyz"))
    assert connection.state is ConnectionState.AUTHENTICATING


def test_events_delivered_in_order(ready_connection, transport):
    seen = _recorder(ready_connection)
    for name in ("RecordStateChanged", "InputMuteStateChanged", "ExitStarted"):
        transport.deliver(event_frame(name))
    assert [e.event_type for e in seen["event"]] == ["RecordStateChanged", "InputMuteStateChanged", "ExitStarted"]


def test_event_before_ready_is_ignored(connection, transport):
    seen = _recorder(connection)
    connection.connect()
    transport.open()
    transport.deliver(event_frame("RecordStateChanged"))
    assert seen["event"] == []


def test_response_resolves_matching_future(ready_connection, transport):
    seen = _recorder(ready_connection)
    first = ready_connection.send_request("GetRecordStatus")
    second = ready_connection.send_request("GetVersion")
    req1, req2 = transport.sent_envelopes()

    transport.deliver(response_frame(req2, data={"obsVersion": "30.0.0"}))
    assert second.result(timeout=0).response_data == {"obsVersion": "30.0.0"}
    assert not first.done()

    transport.deliver(response_frame(req1, data={"outputActive": True}))
    assert first.result(timeout=0).response_data["outputActive"] is True
    assert [r.request_type for r in seen["request_response"]] == ["GetVersion", "GetRecordStatus"]
    assert ready_connection.pending_count == 0


def test_failed_response_fails_future(ready_connection, transport):
    future = ready_connection.send_request("StopRecord")
    transport.deliver(response_frame(transport.sent_envelopes()[0], result=False, code=501, comment="Not recording"))
    with pytest.raises(RequestFailedError) as info:
        future.result(timeout=0)
    assert info.value.code == 501


def test_unmatched_response_still_reaches_hook(ready_connection, transport):
    seen = _recorder(ready_connection)
    fake_request = {"d": {"requestType": "GetVersion", "requestId": "not-ours"}}
    transport.deliver(response_frame(fake_request))
    assert len(seen["request_response"]) == 1


def test_requests_queue_until_identified(connection, transport):
    connection.connect()
    early = connection.send_request("StartRecord")
    transport.open()
    also_early = connection.send_request("ToggleInputMute", {"inputName": "Mic"})
    transport.deliver(hello_frame("abc", "xyz"))
    assert [e["op"] for e in transport.sent_envelopes()] == [OpCode.IDENTIFY]

    transport.deliver(identified_frame())
    sent = transport.sent_envelopes()
    assert [e["op"] for e in sent] == [1, 6, 6]
    assert [e["d"]["requestType"] for e in sent[1:]] == ["StartRecord", "ToggleInputMute"]

    transport.deliver(response_frame(sent[1]))
    transport.deliver(response_frame(sent[2]))
    assert early.result(timeout=0).ok
    assert also_early.result(timeout=0).ok


def test_cancelled_queued_request_is_not_sent(connection, transport):
    connection.connect()
    transport.open()
    future = connection.send_request("StartRecord")
    connection.send_request("StopRecord")
    assert connection.cancel_request(future.request_id) is True
    assert future.cancelled()

    transport.deliver(hello_frame("abc", "xyz"))
    transport.deliver(identified_frame())
    assert [e["d"].get("requestType") for e in transport.sent_envelopes()[1:]] == ["StopRecord"]


def test_request_while_disconnected_fails_fast(connection, transport):
    future = connection.send_request("StartRecord")
    assert future.done()
    with pytest.raises(NotReadyError):
        future.result(timeout=0)
    assert transport.sent == []


def test_request_timeout(ready_connection, transport, clock):
    future = ready_connection.send_request("StartRecord", timeout=2.0)
    clock.advance(1.0)
    assert ready_connection.sweep_expired() == 0
    clock.advance(1.5)
    assert ready_connection.sweep_expired() == 1
    with pytest.raises(RequestTimeoutError):
        future.result(timeout=0)

    # a late response is simply unmatched
    transport.deliver(response_frame(transport.sent_envelopes()[0]))
    assert ready_connection.state is ConnectionState.READY


def test_inbound_message_sweeps_expired(ready_connection, transport, clock):
    future = ready_connection.send_request("StartRecord")  # default 5s from fixture
    clock.advance(6.0)
    transport.deliver(event_frame("RecordStateChanged"))
    with pytest.raises(RequestTimeoutError):
        future.result(timeout=0)


def test_no_timeout_when_none(ready_connection, clock):
    future = ready_connection.send_request("StartRecord", timeout=None)
    clock.advance(10_000)
    ready_connection.sweep_expired()
    assert not future.done()


def test_close_fails_outstanding_requests(ready_connection, transport):
    seen = _recorder(ready_connection)
    future = ready_connection.send_request("StartRecord")
    ready_connection.close()
    assert transport.close_calls == [(1000, "Client closing")]
    transport.drop(1000, "Client closing")

    assert ready_connection.state is ConnectionState.CLOSED
    with pytest.raises(ConnectionClosedError):
        future.result(timeout=0)
    assert seen["closed"] == [CloseInfo(1000, "Client closing", True)]


def test_close_is_safe_when_already_closed(connection, transport):
    connection.close()
    assert transport.close_calls == []
    connection.connect()
    connection.close()
    connection.close()
    assert len(transport.close_calls) == 1
    transport.drop()
    connection.close()
    assert len(transport.close_calls) == 1


def test_close_from_inside_hook(ready_connection, transport):
    ready_connection.on("event", lambda event: ready_connection.close())
    transport.deliver(event_frame("ExitStarted"))
    assert transport.close_calls == [(1000, "Client closing")]


def test_transport_error_then_reconnect(connection, transport):
    seen = _recorder(connection)
    connection.connect()
    transport.fail("Connection refused")
    assert connection.state is ConnectionState.ERRORED
    assert isinstance(seen["error"][0], TransportError)

    connection.connect()
    assert connection.state is ConnectionState.CONNECTING
    assert transport.connect_calls == 2


def test_unexpected_drop_while_ready(ready_connection, transport):
    future = ready_connection.send_request("StartRecord")
    transport.drop(1006, "", clean=False)
    assert ready_connection.state is ConnectionState.CLOSED
    assert ready_connection.last_close == CloseInfo(1006, "", False)
    with pytest.raises(ConnectionClosedError):
        future.result(timeout=0)


def test_hook_exceptions_do_not_break_dispatch(ready_connection, transport):
    received = []

    def broken(event):
        raise RuntimeError("boom")

    ready_connection.on("event", broken)
    ready_connection.on("event", received.append)
    transport.deliver(event_frame("A"))
    transport.deliver(event_frame("B"))
    assert [e.event_type for e in received] == ["A", "B"]
    assert ready_connection.state is ConnectionState.READY


def test_unknown_hook_name(connection):
    with pytest.raises(ValueError):
        connection.on("message", print)


def test_custom_identify_parameters(transport):
    connection = Connection(transport, "pw", rpc_version=1, event_subscriptions=0)
    connection.connect()
    transport.open()
    transport.deliver(hello_frame("c", "s"))
    identify = transport.sent_envelopes()[0]["d"]
    assert identify["eventSubscriptions"] == 0
    assert identify["authentication"] == derive_auth_key("pw", "s", "c")


def test_messages_from_another_thread_are_serialised(ready_connection, transport):
    seen = _recorder(ready_connection)

    def pump(prefix):
        for i in range(50):
            transport.deliver(event_frame(f"{prefix}{i}"))

    threads = [threading.Thread(target=pump, args=(p,)) for p in "ab"]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    names = [e.event_type for e in seen["event"]]
    assert len(names) == 100
    assert [n for n in names if n.startswith("a")] == [f"a{i}" for i in range(50)]
    assert [n for n in names if n.startswith("b")] == [f"b{i}" for i in range(50)]
