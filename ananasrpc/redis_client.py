"""Name-service client that speaks the Redis protocol.

``GetEndpoints`` becomes ``hgetall <service>`` and ``Keepalive`` becomes
``hset <service> <endpoint> <unix time>``.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from enum import Enum
from typing import Any, Optional

from .coder import Decoder, Encoder, RpcMessage, RpcRequest
from .endpoint import (
    EndpointList,
    KeepaliveInfo,
    ServiceName,
    Status,
    endpoint_from_string,
    endpoint_to_string,
)
from .errors import ErrorCode, RpcError
from .redis_protocol import ClientProtocol, ParseResult

# An endpoint is alive if it refreshed its entry within this many seconds.
_ALIVE_SECONDS = 30


class _Operation(Enum):
    GET_ENDPOINTS = "hgetall"
    KEEPALIVE = "hset"


class RedisClientContext:
    """Per-channel state: the reply parser and the queue of commands sent."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._proto = ClientProtocol()
        self._operations: deque[_Operation] = deque()
        self._clock = clock

    def encode_frame(self, msg: Any, frame: RpcMessage) -> bool:
        """Turn a name-service request into a Redis command; False if unsupported."""
        if frame.request is None:
            frame.request = RpcRequest()

        if isinstance(msg, ServiceName):
            command = f"hgetall {msg.name}"
            operation = _Operation.GET_ENDPOINTS
        elif isinstance(msg, KeepaliveInfo):
            command = (
                f"hset {msg.servicename} {endpoint_to_string(msg.endpoint)} "
                f"{int(self._clock())}"
            )
            operation = _Operation.KEEPALIVE
        else:
            return False

        frame.request.serialized_request = (command + "\r\n").encode("utf-8")
        self._operations.append(operation)
        return True

    def decode(self, data) -> tuple[Optional[Any], int]:
        """Decode one reply from ``data``.

        Returns the message and the bytes used, or ``(None, 0)`` when the
        reply is not complete yet.
        """
        data = bytes(data)
        if not data:
            return None, 0

        result, consumed = self._proto.parse(data, 0)
        if result is ParseResult.WAIT:
            return None, 0
        if result is ParseResult.ERROR:
            self._proto.reset()
            raise RpcError(ErrorCode.DECODE_FAIL, "malformed name server reply")

        params = list(self._proto.params)
        self._proto.reset()

        if not self._operations:
            raise RpcError(ErrorCode.DECODE_FAIL, "unexpected name server reply")
        operation = self._operations.popleft()

        if operation is _Operation.KEEPALIVE:
            return Status(result=0), consumed
        return self._alive_endpoints(params), consumed

    def _alive_endpoints(self, params: list[bytes]) -> EndpointList:
        if len(params) % 2:
            raise RpcError(ErrorCode.DECODE_FAIL, "odd hgetall reply")

        now = int(self._clock())
        endpoints = EndpointList()
        pairs = iter(params)
        for url, stamp in zip(pairs, pairs):
            try:
                ep = endpoint_from_string(url.decode("utf-8", "replace"))
                refreshed = int(stamp)
            except ValueError as exc:
                raise RpcError(ErrorCode.DECODE_FAIL, "bad endpoint entry") from exc
            if refreshed + _ALIVE_SECONDS > now:
                endpoints.endpoints.append(ep)
        return endpoints


def on_create_redis_channel(channel) -> None:
    """Install the Redis name-service coders on a new client channel."""
    ctx = RedisClientContext()
    channel.set_context(ctx)

    encoder = Encoder()
    encoder.set_message_to_frame_encoder(ctx.encode_frame)
    channel.set_encoder(encoder)

    decoder = Decoder()
    decoder.set_bytes_to_message_decoder(ctx.decode)
    channel.set_decoder(decoder)