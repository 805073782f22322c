"""Server side of an RPC service: connection bookkeeping and request dispatch.

A service wraps an implementation object that provides:

* ``full_name``: the service name requests must carry;
* ``methods``: a mapping from method name to the request type of that method;
* one handler per method, found under the method name itself or under its
  snake_case form (``AppendDots`` or ``append_dots``).  A handler is called
  as ``handler(request, done)`` and completes the call, now or later, with
  ``done(response)``.

Connections handed to a service are objects with ``loop_id``,
``unique_id``, ``peer`` and a writable ``user_data`` attribute, a
``send(data)`` method and a ``close()`` method.  A connection whose
``closed`` attribute is true no longer receives responses.  The network
layer feeds received bytes to :meth:`Service.on_message` and reports lost
connections to :meth:`Service.on_disconnect`.
"""

from __future__ import annotations

import logging
import re
import weakref
from collections.abc import Callable
from typing import Any, Optional

from .coder import (
    Decoder,
    Encoder,
    RpcErrorInfo,
    RpcMessage,
    RpcResponse,
    response_frame_encoder,
)
from .endpoint import Endpoint
from .errors import ErrorCode, RpcError

log = logging.getLogger(__name__)

# Errors after which the connection stays usable.
_RECOVERABLE = frozenset(
    {
        ErrorCode.NO_SUCH_SERVICE,
        ErrorCode.NO_SUCH_METHOD,
        ErrorCode.EMPTY_REQUEST,
        ErrorCode.THROW_IN_METHOD,
    }
)

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def _snake_case(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def _weak(obj: Any) -> Callable[[], Any]:
    try:
        return weakref.ref(obj)
    except TypeError:
        return lambda: obj


class _Done:
    """Completion callback handed to a method handler; it runs once."""

    def __init__(self, func: Callable[..., None], *args: Any) -> None:
        self._func = func
        self._args = args
        self._ran = False

    def __call__(self, response: Any) -> None:
        if self._ran:
            raise RuntimeError("completion already run")
        self._ran = True
        self._func(*self._args, response)


class Service:
    """An RPC service: the implementation plus its server channels."""

    def __init__(self, impl: Any) -> None:
        self.impl = impl
        self._name: str = impl.full_name
        self._endpoint = Endpoint()
        self.channels: list[dict[Any, ServerChannel]] = []
        self.method_selector: Optional[Callable[[Any], str]] = None
        self._on_create_channel: Optional[Callable[[ServerChannel], None]] = None

    @property
    def full_name(self) -> str:
        return self._name

    @property
    def endpoint(self) -> Endpoint:
        """The address the service listens on."""
        return self._endpoint

    @property
    def connection_count(self) -> int:
        """Number of open connections over all workers."""
        return sum(len(channel_map) for channel_map in self.channels)

    def set_endpoint(self, ep: Endpoint) -> None:
        if not ep.ip:
            raise ValueError("endpoint has no address")
        self._endpoint = ep

    def on_register(self, num_workers: int) -> None:
        """Prepare one channel map per worker loop."""
        if num_workers < len(self.channels):
            del self.channels[num_workers:]
        else:
            self.channels.extend({} for _ in range(num_workers - len(self.channels)))

    def set_method_selector(self, selector: Callable[[Any], str]) -> None:
        """Choose the method to call for messages that are not RPC frames."""
        self.method_selector = selector

    def set_on_create_channel(self, callback: Callable[[ServerChannel], None]) -> None:
        """Run ``callback`` on every new channel, e.g. to install coders."""
        self._on_create_channel = callback

    def on_new_connection(self, conn: Any) -> ServerChannel:
        """Attach a new server channel to an accepted connection."""
        if not 0 <= conn.loop_id < len(self.channels):
            raise IndexError(f"no worker loop {conn.loop_id}")
        channel_map = self.channels[conn.loop_id]
        if conn.unique_id in channel_map:
            raise KeyError(f"connection {conn.unique_id} already registered")

        channel = ServerChannel(conn, self)
        conn.user_data = channel
        channel_map[conn.unique_id] = channel

        if self._on_create_channel is not None:
            self._on_create_channel(channel)
        return channel

    def on_message(self, conn: Any, data) -> int:
        """Handle received bytes; return how many of them were consumed."""
        channel: ServerChannel = conn.user_data
        try:
            msg, consumed = channel.on_data(data)
            if msg is None:
                return consumed
            try:
                channel.on_message(msg)
            except RpcError as exc:
                channel._on_error(exc, int(exc.code))
                if exc.code in _RECOVERABLE:
                    log.warning("Recoverable exception %s", exc)
                elif exc.code in (ErrorCode.DECODE_FAIL, ErrorCode.METHOD_UNDETERMINED):
                    log.error("Fatal exception %s", exc)
                    conn.close()
                else:
                    log.error("Unknown exception %s", exc)
                    conn.close()
                return consumed
            except Exception:
                log.exception("on_message: unknown error")
                conn.close()
                return consumed
        except Exception as exc:
            log.error("Exception while decoding data: %s", exc)
            conn.close()
            return 0
        return consumed

    def on_disconnect(self, conn: Any) -> None:
        """Forget the channel of a closed connection."""
        del self.channels[conn.loop_id][conn.unique_id]

    def _lookup(self, method_name: str) -> tuple[Optional[Callable], Any]:
        methods = self.impl.methods
        if method_name not in methods:
            return None, None
        handler = getattr(self.impl, method_name, None)
        if not callable(handler):
            handler = getattr(self.impl, _snake_case(method_name), None)
        if not callable(handler):
            return None, None
        return handler, methods[method_name]

    def __repr__(self) -> str:
        return f"Service({self._name!r}, endpoint={self._endpoint!r})"


class ServerChannel:
    """One connection of a service, with its coders and user context."""

    def __init__(self, conn: Any, service: Service) -> None:
        self.connection = conn
        self.service = service
        self.context: Any = None
        self.decoder = Decoder()
        self.encoder = Encoder(response_frame_encoder)
        self.current_id = 0

    def set_context(self, ctx: Any) -> None:
        self.context = ctx

    def set_encoder(self, encoder: Encoder) -> None:
        self.encoder = encoder

    def set_decoder(self, decoder: Decoder) -> None:
        self.decoder = decoder

    def on_data(self, data) -> tuple[Optional[Any], int]:
        """Split one message off the received bytes."""
        return self.decoder.b2m_decoder(data)

    def on_message(self, request: Any) -> bool:
        """Dispatch a decoded message to its method."""
        if isinstance(request, RpcMessage):
            if request.request is None:
                raise RpcError(
                    ErrorCode.EMPTY_REQUEST,
                    f"Service  [{self.service.full_name}] expect request from "
                    f"{self.connection.peer}",
                )
            self.current_id = request.request.id or 0
            method = request.request.method_name or ""
            service_name = request.request.service_name or ""
            if service_name != self.service.full_name:
                raise RpcError(
                    ErrorCode.NO_SUCH_SERVICE,
                    f"{service_name} got, but expect [{self.service.full_name}]",
                )
        else:
            self.current_id = -1
            if self.service.method_selector is None:
                log.error("method selector not set, cannot choose a method")
                raise RpcError(
                    ErrorCode.METHOD_UNDETERMINED,
                    f"methodSelector not set for [{self.service.full_name}]",
                )
            method = self.service.method_selector(request)

        self._invoke(method, request)
        return True

    def _invoke(self, method_name: str, request: Any) -> None:
        handler, request_type = self.service._lookup(method_name)
        if handler is None:
            log.error("_invoke: no such method %s", method_name)
            raise RpcError(ErrorCode.NO_SUCH_METHOD, f"Not find method [{method_name}]")

        if self.decoder.m2m_decoder is not None:
            request = self.decoder.m2m_decoder(request, request_type)

        done = _Done(self._on_serv_done, _weak(self.connection), self.current_id)
        try:
            handler(request, done)
        except Exception as exc:
            raise RpcError(
                ErrorCode.THROW_IN_METHOD, f"{method_name}, detail:{exc}"
            ) from exc

    def _send_frame(self, conn: Any, frame: RpcMessage) -> None:
        if self.encoder.f2b_encoder is not None:
            conn.send(self.encoder.f2b_encoder(frame))
        else:
            conn.send(frame.response.serialized_response or b"")

    def _on_serv_done(self, conn_ref: Callable[[], Any], call_id: int, response: Any) -> None:
        conn = conn_ref()
        if conn is None or getattr(conn, "closed", False):
            return

        frame = RpcMessage(response=RpcResponse())
        if call_id >= 0:
            frame.response.id = call_id
        if not self.encoder.m2f_encoder(response, frame):
            raise RpcError(ErrorCode.ENCODE_FAIL, "cannot encode response")
        self._send_frame(conn, frame)

    def _on_error(self, err: BaseException, code: int = 0) -> None:
        frame = RpcMessage(response=RpcResponse())
        if self.current_id != -1:
            frame.response.id = self.current_id
        frame.response.error = RpcErrorInfo(errnum=code, msg=str(err))
        if not self.encoder.m2f_encoder(None, frame):
            raise RpcError(ErrorCode.ENCODE_FAIL, "cannot encode error")
        self._send_frame(self.connection, frame)

    def __repr__(self) -> str:
        return f"ServerChannel(service={self.service.full_name!r}, peer={self.connection.peer!r})"