"""Client side of an RPC service: channel management and call dispatch.

A stub wraps a service description object that provides ``full_name`` and
``methods``, a mapping whose keys are the method names the service offers.

The stub does no networking itself.  To open a connection it calls the
connector installed with :meth:`ServiceStub.set_connector` as
``connector(endpoint, loop_id)``.  The network layer then reports the new
connection to :meth:`ServiceStub.on_new_connection` and, once it is
established, to :meth:`ServiceStub.on_connect`.  A failed attempt is
reported to :meth:`ServiceStub.on_connect_failed`.  Received bytes go to
:meth:`ServiceStub.on_message` and a lost connection to
:meth:`ServiceStub.on_disconnect`.

Connections are objects with ``loop_id``, ``peer`` (a ``(host, port)``
pair) and a writable ``user_data`` attribute, a ``send(data)`` method that
returns False when the bytes cannot be sent, and a ``close()`` method.  A
connection whose ``closed`` attribute is true is treated as lost.

Without a url list the endpoints of the service come from the resolver
installed with :meth:`ServiceStub.set_endpoint_resolver`: it is called
with a :class:`ServiceName` and returns a future of an
:class:`EndpointList`.

All results are :class:`concurrent.futures.Future` objects.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
import weakref
from collections.abc import Callable
from concurrent.futures import CancelledError, Future, InvalidStateError
from dataclasses import dataclass
from typing import Any, Optional

from .coder import Decoder, Encoder, RpcMessage, RpcRequest, request_frame_encoder
from .endpoint import (
    Endpoint,
    Protocol,
    ServiceName,
    endpoint_from_string,
    is_valid_endpoint,
)
from .errors import ErrorCode, RpcError

log = logging.getLogger(__name__)

# Endpoints fetched from the name service are reused for this many seconds.
ENDPOINTS_TTL = 60.0
# Calls without an answer for this many seconds are dropped.
PENDING_CALL_TIMEOUT = 60.0
# How long to wait for the name service to answer.
RESOLVE_TIMEOUT = 2.0


def _ready(value: Any) -> Future:
    fut: Future = Future()
    fut.set_result(value)
    return fut


def _failed(exc: BaseException) -> Future:
    fut: Future = Future()
    fut.set_exception(exc)
    return fut


def _settle(fut: Future, value: Any = None, exc: Optional[BaseException] = None) -> None:
    if fut.done():
        return
    try:
        if exc is not None:
            fut.set_exception(exc)
        else:
            fut.set_result(value)
    except InvalidStateError:
        pass


def _outcome(fut: Future) -> tuple[Any, Optional[BaseException]]:
    if fut.cancelled():
        return None, CancelledError()
    exc = fut.exception()
    if exc is not None:
        return None, exc
    return fut.result(), None


def _chain(src: Future, dst: Future) -> None:
    def copy(done: Future) -> None:
        value, exc = _outcome(done)
        _settle(dst, value, exc)

    src.add_done_callback(copy)


def _weak(obj: Any) -> Callable[[], Any]:
    try:
        return weakref.ref(obj)
    except TypeError:
        return lambda: obj


def _peer_endpoint(conn: Any) -> Endpoint:
    host, port = conn.peer
    return Endpoint(Protocol.TCP, host, port)


def _socket_addr(peer: Any) -> tuple[str, int]:
    if isinstance(peer, Endpoint):
        return peer.to_socket_addr()
    host, port = peer
    return (host, port)


class ServiceStub:
    """Client-side handle of one remote service and its channels."""

    def __init__(self, service: Any) -> None:
        self.service = service
        self._name: str = service.full_name
        self.clock: Callable[[], float] = time.monotonic
        self.resolve_timeout = RESOLVE_TIMEOUT

        self.channels: list[dict[Endpoint, ClientChannel]] = []
        self._pending_conns: list[dict[tuple[str, int], list[Future]]] = []
        self._hard_coded: Optional[list[Endpoint]] = None

        self._on_create_channel: Optional[Callable[[ClientChannel], None]] = None
        self._connector: Optional[Callable[[Endpoint, int], None]] = None
        self._resolver: Optional[Callable[[ServiceName], Future]] = None

        self._lock = threading.Lock()
        self._endpoints: list[Endpoint] = []
        self._pending_endpoints: list[Future] = []
        self._refresh_time = self.clock()
        self._resolve_timer: Optional[threading.Timer] = None

        self._loop_counter = itertools.count()
        self._endpoint_counter = itertools.count()
        self.on_register(1)

    @property
    def full_name(self) -> str:
        return self._name

    def set_url_list(self, urls: str) -> None:
        """Connect directly to ``;``-separated urls instead of asking the name service."""
        if self._hard_coded is not None:
            raise RuntimeError("url list already set")
        endpoints = (endpoint_from_string(url) for url in urls.split(";"))
        self._hard_coded = [ep for ep in endpoints if ep.ip]
        if not self._hard_coded:
            log.warning("No valid url : %s", urls)

    def set_on_create_channel(self, callback: Callable[[ClientChannel], None]) -> None:
        """Run ``callback`` on every new channel, e.g. to install coders."""
        self._on_create_channel = callback

    def set_connector(self, connector: Callable[[Endpoint, int], None]) -> None:
        """Install the function that starts connecting to an endpoint."""
        self._connector = connector

    def set_endpoint_resolver(self, resolver: Callable[[ServiceName], Future]) -> None:
        """Install the function that asks the name service for endpoints."""
        self._resolver = resolver

    def on_register(self, num_workers: int) -> None:
        """Prepare one channel map per worker loop."""
        for table in (self.channels, self._pending_conns):
            if num_workers < len(table):
                del table[num_workers:]
            else:
                table.extend({} for _ in range(num_workers - len(table)))

    def get_channel(self, ep: Optional[Endpoint] = None) -> Future:
        """Return a future channel, to ``ep`` if valid, otherwise by load balance."""
        loop_id = next(self._loop_counter) % len(self.channels)
        if ep is not None and is_valid_endpoint(ep):
            return self._make_channel(loop_id, ep)

        result: Future = Future()

        def select(done: Future) -> None:
            endpoints, exc = _outcome(done)
            if exc is not None:
                _settle(result, exc=exc)
                return
            _chain(self._make_channel(loop_id, self._select_endpoint(endpoints)), result)

        self._get_endpoints().add_done_callback(select)
        return result

    def _select_endpoint(self, endpoints: Optional[list[Endpoint]]) -> Endpoint:
        if not endpoints:
            return Endpoint()
        return endpoints[next(self._endpoint_counter) % len(endpoints)]

    def _make_channel(self, loop_id: int, ep: Endpoint) -> Future:
        if not is_valid_endpoint(ep):
            return _failed(RpcError(ErrorCode.NO_AVAILABLE_ENDPOINT, self._name))
        channel = self.channels[loop_id].get(ep)
        if channel is not None:
            return _ready(channel)
        return self._connect(loop_id, ep)

    def _connect(self, loop_id: int, ep: Endpoint) -> Future:
        fut: Future = Future()
        addr = ep.to_socket_addr()
        waiters = self._pending_conns[loop_id].setdefault(addr, [])
        need_connect = not waiters
        waiters.append(fut)

        if need_connect:
            if self._connector is None:
                log.error("No connector set for %s", self._name)
                self.on_connect_failed(addr)
            else:
                try:
                    self._connector(ep, loop_id)
                except OSError as exc:
                    log.error("Connect to %s:%s failed: %s", addr[0], addr[1], exc)
                    self.on_connect_failed(addr)
        return fut

    def on_connect_failed(self, peer: Any) -> None:
        """Fail every call waiting for a connection to ``peer``."""
        addr = _socket_addr(peer)
        for pending in self._pending_conns:
            for fut in pending.pop(addr, ()):
                _settle(fut, exc=RpcError(ErrorCode.CONNECT_REFUSED, f"{addr[0]}:{addr[1]}"))

    def on_new_connection(self, conn: Any) -> ClientChannel:
        """Attach a new client channel to a connection being established."""
        channel = ClientChannel(conn, self)
        conn.user_data = channel

        ep = _peer_endpoint(conn)
        channel_map = self.channels[conn.loop_id]
        if ep in channel_map:
            raise KeyError(f"channel to {ep} already registered")
        channel_map[ep] = channel

        if self._on_create_channel is not None:
            self._on_create_channel(channel)
        return channel

    def on_connect(self, conn: Any) -> None:
        """Hand the established channel to everyone waiting for it."""
        waiters = self._pending_conns[conn.loop_id].pop(_socket_addr(conn.peer), None)
        if waiters is None:
            log.warning("Connected to %s but nobody waits for it", conn.peer)
            return
        for fut in waiters:
            _settle(fut, conn.user_data)

    def on_disconnect(self, conn: Any) -> None:
        """Forget the channel of a lost connection."""
        channel = self.channels[conn.loop_id].pop(_peer_endpoint(conn))
        channel.on_destroy()

    def on_message(self, conn: Any, data) -> int:
        """Handle received bytes; return how many of them were consumed."""
        channel: ClientChannel = conn.user_data
        try:
            msg, consumed = channel.on_data(data)
            if msg is not None:
                channel.on_message(msg)
        except Exception as exc:
            log.error("Some exception on data: %s", exc)
            conn.close()
            return 0
        return consumed

    def _get_endpoints(self) -> Future:
        if self._hard_coded:
            return _ready(self._hard_coded)

        with self._lock:
            if self._endpoints:
                now = self.clock()
                if now - self._refresh_time < ENDPOINTS_TTL:
                    return _ready(list(self._endpoints))
                # Keep the stale list in case the name service is unreachable.
                self._refresh_time = now

            fut: Future = Future()
            need_visit = not self._pending_endpoints
            self._pending_endpoints.append(fut)

        if need_visit:
            self._visit_name_service()
        return fut

    def _visit_name_service(self) -> None:
        if self._resolver is None:
            self._on_new_endpoint_list(
                _failed(RpcError(ErrorCode.NO_SUCH_SERVICE, "no endpoint resolver"))
            )
            return

        timer = threading.Timer(self.resolve_timeout, self._on_resolve_timeout)
        timer.daemon = True
        with self._lock:
            self._resolve_timer = timer
        timer.start()

        try:
            request = self._resolver(ServiceName(name=self._name))
        except Exception as exc:
            request = _failed(exc)
        request.add_done_callback(self._on_new_endpoint_list)

    def _take_pending_endpoints(self) -> list[Future]:
        waiters = self._pending_endpoints
        self._pending_endpoints = []
        return waiters

    def _cancel_resolve_timer(self) -> None:
        with self._lock:
            timer, self._resolve_timer = self._resolve_timer, None
        if timer is not None:
            timer.cancel()

    def _on_new_endpoint_list(self, done: Future) -> None:
        self._cancel_resolve_timer()
        value, exc = _outcome(done)
        if exc is None:
            try:
                endpoints = list(value.endpoints)
            except (AttributeError, TypeError) as bad:
                exc = bad

        if exc is not None:
            log.error("GetEndpoints exception: %s", exc)
            with self._lock:
                endpoints = list(self._endpoints)
                waiters = self._take_pending_endpoints()
        else:
            log.debug("From name server, GetEndpoints got: %s", endpoints)
            with self._lock:
                self._endpoints = endpoints
                waiters = self._take_pending_endpoints()

        for fut in waiters:
            _settle(fut, list(endpoints))

    def _on_resolve_timeout(self) -> None:
        with self._lock:
            self._resolve_timer = None
            waiters = self._take_pending_endpoints()
            cached = list(self._endpoints)
        for fut in waiters:
            if cached:
                _settle(fut, list(cached))
            else:
                _settle(fut, exc=RpcError(ErrorCode.TIMEOUT, "GetEndpoints"))

    def __repr__(self) -> str:
        return f"ServiceStub({self._name!r})"


@dataclass
class _PendingCall:
    future: Future
    response_type: Any
    timestamp: float


class ClientChannel:
    """One connection to a service, with its coders and outstanding calls."""

    def __init__(self, conn: Any, stub: ServiceStub) -> None:
        self._conn_ref = _weak(conn)
        self.stub = stub
        self.context: Any = None
        self.decoder = Decoder()
        self.encoder = Encoder(request_frame_encoder)
        self.pending: dict[int, _PendingCall] = {}
        self.timeout_timer: Any = None
        self._last_id = 0

    @property
    def connection(self) -> Any:
        return self._conn_ref()

    def set_context(self, ctx: Any) -> None:
        self.context = ctx

    def set_encoder(self, encoder: Encoder) -> None:
        self.encoder = encoder

    def set_decoder(self, decoder: Decoder) -> None:
        self.decoder = decoder

    def _gen_id(self) -> int:
        self._last_id += 1
        return self._last_id

    def invoke(self, method: str, request: Any, response_type: Any) -> Future:
        """Send a request; return a future of the response."""
        where = f"method [{method}], service [{self.stub.full_name}]"
        conn = self._conn_ref()
        if conn is None or getattr(conn, "closed", False):
            return _failed(RpcError(ErrorCode.CONNECTION_LOST, f"Connection lost: {where}"))

        if method not in self.stub.service.methods:
            return _failed(RpcError(ErrorCode.NO_SUCH_METHOD, where))

        try:
            data = self._encode_request(method, request)
        except RpcError as exc:
            return _failed(exc)

        try:
            sent = conn.send(data)
        except OSError:
            sent = False
        if sent is False:
            return _failed(RpcError(ErrorCode.CONNECTION_RESET, f"SendPacket failed: {where}"))

        fut: Future = Future()
        self.pending[self._last_id] = _PendingCall(fut, response_type, self.stub.clock())
        return fut

    def _encode_request(self, method: str, request: Any) -> bytes:
        frame = RpcMessage()
        if not self.encoder.m2f_encoder(request, frame):
            raise RpcError(ErrorCode.ENCODE_FAIL, f"cannot encode request for [{method}]")

        if frame.request is None:
            frame.request = RpcRequest()
        req = frame.request
        if req.service_name is None:
            req.service_name = self.stub.full_name
        if req.method_name is None:
            req.method_name = method
        if req.id is None:
            req.id = self._gen_id()
        else:
            # Some protocols carry their own request ids.
            self._last_id = req.id

        if self.encoder.f2b_encoder is not None:
            return bytes(self.encoder.f2b_encoder(frame))
        # Text protocols send the serialized request as is.
        return bytes(req.serialized_request or b"")

    def on_data(self, data) -> tuple[Optional[Any], int]:
        """Split one message off the received bytes."""
        return self.decoder.b2m_decoder(data)

    def on_message(self, msg: Any) -> bool:
        """Complete the call a decoded message answers.

        Frames are matched by id; other messages answer the oldest call.
        Returns True when a frame matched a pending call.
        """
        if isinstance(msg, RpcMessage):
            if msg.response is None or msg.response.id is None:
                raise RpcError(ErrorCode.DECODE_FAIL, "response without id")
            call = self.pending.pop(msg.response.id, None)
            if call is None:
                log.error("Cannot find call %s, maybe timed out already", msg.response.id)
                return False
            self._complete(call, msg)
            return True

        if not self.pending:
            log.error("Message received but no call is pending")
            return False
        call = self.pending.pop(min(self.pending))
        self._complete(call, msg)
        return False

    def _complete(self, call: _PendingCall, msg: Any) -> None:
        m2m = self.decoder.m2m_decoder
        if m2m is None:
            _settle(call.future, msg)
            return
        try:
            value = m2m(msg, call.response_type)
        except Exception as exc:
            _settle(call.future, exc=exc)
            return
        _settle(call.future, value)

    def check_pending_timeout(self, now: Optional[float] = None) -> list[int]:
        """Drop calls older than the timeout; return their ids."""
        if now is None:
            now = self.stub.clock()
        expired = []
        for call_id in sorted(self.pending):
            call = self.pending[call_id]
            if now < call.timestamp + PENDING_CALL_TIMEOUT:
                break
            del self.pending[call_id]
            if call.future.done():
                log.debug("Erase finished pending call id %s", call_id)
            else:
                log.error("TIMEOUT: pending call id %s", call_id)
                _settle(call.future, exc=RpcError(ErrorCode.TIMEOUT, f"call id {call_id}"))
            expired.append(call_id)
        return expired

    def on_destroy(self) -> None:
        """Stop the timeout check and fail the calls still waiting."""
        if self.timeout_timer is not None:
            self.timeout_timer.cancel()
            self.timeout_timer = None
        pending, self.pending = self.pending, {}
        for call_id, call in pending.items():
            _settle(
                call.future,
                exc=RpcError(ErrorCode.CONNECTION_LOST, f"call id {call_id}"),
            )

    def __repr__(self) -> str:
        return f"ClientChannel(service={self.stub.full_name!r}, pending={len(self.pending)})"