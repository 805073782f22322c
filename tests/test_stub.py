import time
from concurrent.futures import Future
from dataclasses import dataclass

import pytest

from ananasrpc.coder import (
    RpcErrorInfo,
    RpcMessage,
    RpcResponse,
    bytes_to_frame_decoder,
    frame_to_bytes_encoder,
    frame_to_message_decoder,
    response_frame_encoder,
)
from ananasrpc.endpoint import (
    Endpoint,
    EndpointList,
    KeepaliveInfo,
    Protocol,
    ServiceName,
)
from ananasrpc.errors import ErrorCode, RpcError
from ananasrpc.redis_client import RedisClientContext, on_create_redis_channel
from ananasrpc.stub import ClientChannel, ServiceStub


@dataclass
class EchoRequest:
    text: str = ""


@dataclass
class EchoResponse:
    text: str = ""


class TestServiceDescription:
    full_name = "ananas.rpc.test.TestService"
    methods = {"AppendDots": EchoRequest, "ToUpper": EchoRequest}


class NameServiceDescription:
    full_name = "ananas.rpc.NameService"
    methods = {"GetEndpoints": ServiceName, "Keepalive": KeepaliveInfo}


class FakeConn:
    def __init__(self, peer=("127.0.0.1", 9987), loop_id=0, send_ok=True):
        self.peer = peer
        self.loop_id = loop_id
        self.user_data = None
        self.sent = []
        self.closed = False
        self.send_ok = send_ok

    def send(self, data):
        if not self.send_ok:
            return False
        self.sent.append(bytes(data))
        return True

    def close(self):
        self.closed = True


EP = Endpoint(Protocol.TCP, "127.0.0.1", 9987)
TEXT = "hello ananas_rpc"
DOTTED = "hello ananas_rpc..................."


def make_stub(description=TestServiceDescription):
    stub = ServiceStub(description())
    calls = []
    stub.set_connector(lambda ep, loop_id: calls.append((ep, loop_id)))
    return stub, calls


def open_channel(stub, ep=EP, loop_id=0):
    fut = stub.get_channel(ep)
    conn = FakeConn(peer=ep.to_socket_addr(), loop_id=loop_id)
    stub.on_new_connection(conn)
    stub.on_connect(conn)
    return fut.result(timeout=1), conn


def reply(call_id, response):
    frame = RpcMessage(response=RpcResponse(id=call_id))
    response_frame_encoder(response, frame)
    return frame_to_bytes_encoder(frame)


def test_concurrent_get_channel_connects_once():
    stub, calls = make_stub()
    first = stub.get_channel(EP)
    second = stub.get_channel(EP)
    assert calls == [(EP, 0)]
    assert not first.done()

    conn = FakeConn()
    stub.on_new_connection(conn)
    stub.on_connect(conn)
    assert first.result(timeout=1) is second.result(timeout=1)
    assert first.result() is conn.user_data


def test_existing_channel_is_reused():
    stub, calls = make_stub()
    channel, _ = open_channel(stub)
    assert stub.get_channel(EP).result(timeout=1) is channel
    assert len(calls) == 1


def test_on_create_channel_callback_sees_channel():
    stub, _ = make_stub()
    seen = []
    stub.set_on_create_channel(seen.append)
    channel, _ = open_channel(stub)
    assert seen == [channel]
    assert isinstance(channel, ClientChannel)


def test_connect_failure_fails_waiters():
    stub, _ = make_stub()
    fut = stub.get_channel(EP)
    stub.on_connect_failed(("127.0.0.1", 9987))
    with pytest.raises(RpcError) as info:
        fut.result(timeout=1)
    assert info.value.code == ErrorCode.CONNECT_REFUSED


def test_missing_connector_refuses():
    stub = ServiceStub(TestServiceDescription())
    with pytest.raises(RpcError) as info:
        stub.get_channel(EP).result(timeout=1)
    assert info.value.code == ErrorCode.CONNECT_REFUSED


def test_invoke_round_trip():
    stub, _ = make_stub()
    channel, conn = open_channel(stub)
    fut = channel.invoke("AppendDots", EchoRequest(TEXT), EchoResponse)

    assert len(conn.sent) == 1
    frame, used = bytes_to_frame_decoder(conn.sent[0])
    assert used == len(conn.sent[0])
    assert frame.request.service_name == "ananas.rpc.test.TestService"
    assert frame.request.method_name == "AppendDots"
    assert frame.request.id == 1
    assert frame_to_message_decoder(frame, EchoRequest) == EchoRequest(TEXT)

    data = reply(1, EchoResponse(DOTTED))
    assert stub.on_message(conn, data) == len(data)
    assert fut.result(timeout=1) == EchoResponse(DOTTED)
    assert channel.pending == {}


def test_responses_matched_by_id():
    stub, _ = make_stub()
    channel, conn = open_channel(stub)
    first = channel.invoke("AppendDots", EchoRequest("a"), EchoResponse)
    second = channel.invoke("ToUpper", EchoRequest("b"), EchoResponse)
    ids = [bytes_to_frame_decoder(data)[0].request.id for data in conn.sent]
    assert ids == [1, 2]

    stub.on_message(conn, reply(2, EchoResponse("B")))
    assert not first.done()
    assert second.result(timeout=1) == EchoResponse("B")
    stub.on_message(conn, reply(1, EchoResponse("a")))
    assert first.result(timeout=1) == EchoResponse("a")


def test_error_response_raises():
    stub, conn = make_stub()[0], None
    channel, conn = open_channel(stub)
    fut = channel.invoke("AppendDots", EchoRequest(TEXT), EchoResponse)
    frame = RpcMessage(
        response=RpcResponse(
            id=1,
            error=RpcErrorInfo(errnum=int(ErrorCode.NO_SUCH_METHOD), msg="Not find method [X]"),
        )
    )
    stub.on_message(conn, frame_to_bytes_encoder(frame))
    with pytest.raises(RpcError) as info:
        fut.result(timeout=1)
    assert info.value.code == ErrorCode.NO_SUCH_METHOD
    assert info.value.message == "Not find method [X]"


def test_invoke_unknown_method():
    stub, _ = make_stub()
    channel, conn = open_channel(stub)
    fut = channel.invoke("Missing", EchoRequest(TEXT), EchoResponse)
    with pytest.raises(RpcError) as info:
        fut.result(timeout=1)
    assert info.value.code == ErrorCode.NO_SUCH_METHOD
    assert conn.sent == []


def test_invoke_on_closed_connection():
    stub, _ = make_stub()
    channel, conn = open_channel(stub)
    conn.closed = True
    with pytest.raises(RpcError) as info:
        channel.invoke("AppendDots", EchoRequest(TEXT), EchoResponse).result(timeout=1)
    assert info.value.code == ErrorCode.CONNECTION_LOST


def test_invoke_send_failure():
    stub, _ = make_stub()
    channel, conn = open_channel(stub)
    conn.send_ok = False
    with pytest.raises(RpcError) as info:
        channel.invoke("AppendDots", EchoRequest(TEXT), EchoResponse).result(timeout=1)
    assert info.value.code == ErrorCode.CONNECTION_RESET
    assert channel.pending == {}


def test_unknown_response_id_is_ignored():
    stub, _ = make_stub()
    channel, _ = open_channel(stub)
    frame = RpcMessage(response=RpcResponse(id=42, serialized_response=b""))
    assert channel.on_message(frame) is False


def test_garbage_closes_connection():
    stub, _ = make_stub()
    _, conn = open_channel(stub)
    assert stub.on_message(conn, b"\x02\x00\x00\x00\x00") == 0
    assert conn.closed


def test_partial_frame_waits():
    stub, _ = make_stub()
    channel, conn = open_channel(stub)
    fut = channel.invoke("AppendDots", EchoRequest(TEXT), EchoResponse)
    data = reply(1, EchoResponse(DOTTED))
    assert stub.on_message(conn, data[:-1]) == 0
    assert not conn.closed
    assert not fut.done()
    assert stub.on_message(conn, data) == len(data)
    assert fut.result(timeout=1) == EchoResponse(DOTTED)


def test_pending_timeout():
    stub, _ = make_stub()
    stub.clock = lambda: 100.0
    channel, _ = open_channel(stub)
    fut = channel.invoke("AppendDots", EchoRequest(TEXT), EchoResponse)
    assert channel.check_pending_timeout(100.0 + 59) == []
    assert not fut.done()
    assert channel.check_pending_timeout(100.0 + 60) == [1]
    with pytest.raises(RpcError) as info:
        fut.result(timeout=1)
    assert info.value.code == ErrorCode.TIMEOUT


def test_disconnect_fails_pending_and_reconnects():
    stub, calls = make_stub()
    channel, conn = open_channel(stub)
    fut = channel.invoke("AppendDots", EchoRequest(TEXT), EchoResponse)
    stub.on_disconnect(conn)
    with pytest.raises(RpcError) as info:
        fut.result(timeout=1)
    assert info.value.code == ErrorCode.CONNECTION_LOST
    assert stub.channels == [{}]

    stub.get_channel(EP)
    assert len(calls) == 2


def test_url_list_round_robin():
    stub, calls = make_stub()
    stub.set_url_list("tcp://127.0.0.1:9987;tcp://127.0.0.1:9988;bad")
    futures = [stub.get_channel() for _ in range(3)]
    assert [ep.port for ep, _ in calls] == [9987, 9988]

    conn = FakeConn(peer=("127.0.0.1", 9987))
    stub.on_new_connection(conn)
    stub.on_connect(conn)
    assert futures[0].result(timeout=1) is futures[2].result(timeout=1)
    assert not futures[1].done()


def test_url_list_only_once():
    stub, _ = make_stub()
    stub.set_url_list("tcp://127.0.0.1:9987")
    with pytest.raises(RuntimeError):
        stub.set_url_list("tcp://127.0.0.1:9988")


def test_no_endpoints_available():
    stub, calls = make_stub()
    with pytest.raises(RpcError) as info:
        stub.get_channel().result(timeout=1)
    assert info.value.code == ErrorCode.NO_AVAILABLE_ENDPOINT
    assert calls == []


def test_resolver_result_is_cached():
    stub, calls = make_stub()
    queries = []

    def resolver(query):
        queries.append(query)
        fut = Future()
        fut.set_result(EndpointList(endpoints=[EP]))
        return fut

    stub.set_endpoint_resolver(resolver)
    stub.get_channel()
    stub.get_channel()
    assert queries == [ServiceName(name="ananas.rpc.test.TestService")]
    assert calls == [(EP, 0)]


def test_resolver_failure_without_cache():
    stub, _ = make_stub()

    def resolver(query):
        fut = Future()
        fut.set_exception(RpcError(ErrorCode.CONNECT_REFUSED))
        return fut

    stub.set_endpoint_resolver(resolver)
    with pytest.raises(RpcError) as info:
        stub.get_channel().result(timeout=1)
    assert info.value.code == ErrorCode.NO_AVAILABLE_ENDPOINT


def test_resolver_timeout():
    stub, _ = make_stub()
    stub.resolve_timeout = 0.05
    stub.set_endpoint_resolver(lambda query: Future())
    with pytest.raises(RpcError) as info:
        stub.get_channel().result(timeout=2)
    assert info.value.code == ErrorCode.TIMEOUT


def test_workers_are_used_round_robin():
    stub, calls = make_stub()
    stub.on_register(2)
    stub.get_channel(EP)
    stub.get_channel(EP)
    assert [loop_id for _, loop_id in calls] == [0, 1]
    assert len(stub.channels) == 2


def test_redis_name_service_channel():
    name_ep = Endpoint(Protocol.TCP, "127.0.0.1", 6379)
    stub, _ = make_stub(NameServiceDescription)
    stub.set_on_create_channel(on_create_redis_channel)
    channel, conn = open_channel(stub, name_ep)
    assert isinstance(channel.context, RedisClientContext)

    fut = channel.invoke(
        "GetEndpoints", ServiceName(name="ananas.rpc.test.TestService"), EndpointList
    )
    assert conn.sent == [b"hgetall ananas.rpc.test.TestService\r\n"]

    stamp = str(int(time.time()))
    data = (
        f"*2\r\n$20\r\ntcp://127.0.0.1:9987\r\n${len(stamp)}\r\n{stamp}\r\n"
    ).encode()
    assert stub.on_message(conn, data) == len(data)
    assert fut.result(timeout=1) == EndpointList(endpoints=[EP])