"""Default frame coders and the pluggable encoder/decoder pipelines.

A frame on the wire is a 4-byte little-endian signed total length
(header included) followed by a msgpack encoded :class:`RpcMessage`.
"""

from __future__ import annotations

import dataclasses
import struct
import types
import typing
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import msgpack

from .errors import ErrorCode, RpcError

HEADER_LEN = 4
MAX_FRAME_LEN = 256 * 1024 * 1024

_HEADER = struct.Struct("<i")
_SCALARS = (str, bytes, int, float, bool)
_PARSE_ERRORS = (
    ValueError,
    TypeError,
    KeyError,
    msgpack.exceptions.UnpackException,
)
_SERIALIZE_ERRORS = (TypeError, ValueError, OverflowError)


class DecodeState(Enum):
    """State of a message-to-message decode step."""

    NONE = 0
    WAITING = 1
    ERROR = 2
    OK = 3


@dataclass
class RpcRequest:
    """Request part of a frame; ``None`` marks an unset field."""

    id: Optional[int] = None
    service_name: Optional[str] = None
    method_name: Optional[str] = None
    serialized_request: Optional[bytes] = None


@dataclass
class RpcErrorInfo:
    """Error carried by a response frame."""

    errnum: Optional[int] = None
    msg: Optional[str] = None


@dataclass
class RpcResponse:
    """Response part of a frame."""

    id: Optional[int] = None
    serialized_response: Optional[bytes] = None
    error: Optional[RpcErrorInfo] = None


def _drop_unset(mapping: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in mapping.items() if value is not None}


def _checked(mapping: dict, key: str, kind: type) -> Any:
    value = mapping.get(key)
    if value is None:
        return None
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise ValueError(f"field {key!r} has wrong type")
    return value


def _checked_map(mapping: dict, key: str) -> Optional[dict]:
    return _checked(mapping, key, dict)


@dataclass
class RpcMessage:
    """One RPC frame, holding a request, a response, or neither."""

    request: Optional[RpcRequest] = None
    response: Optional[RpcResponse] = None

    def to_bytes(self) -> bytes:
        """Serialize the frame body (without the length header)."""
        body: dict[str, Any] = {}
        if self.request is not None:
            req = self.request
            body["request"] = _drop_unset(
                {
                    "id": None if req.id is None else int(req.id),
                    "service_name": req.service_name,
                    "method_name": req.method_name,
                    "serialized_request": None
                    if req.serialized_request is None
                    else bytes(req.serialized_request),
                }
            )
        if self.response is not None:
            rsp = self.response
            error = None
            if rsp.error is not None:
                error = _drop_unset(
                    {
                        "errnum": None if rsp.error.errnum is None else int(rsp.error.errnum),
                        "msg": rsp.error.msg,
                    }
                )
            body["response"] = _drop_unset(
                {
                    "id": None if rsp.id is None else int(rsp.id),
                    "serialized_response": None
                    if rsp.serialized_response is None
                    else bytes(rsp.serialized_response),
                    "error": error,
                }
            )
        return msgpack.packb(body, use_bin_type=True)

    @classmethod
    def from_bytes(cls, data) -> RpcMessage:
        """Parse a frame body; raise ``ValueError`` if it is malformed."""
        try:
            body = msgpack.unpackb(bytes(data), raw=False)
        except _PARSE_ERRORS as exc:
            raise ValueError(f"malformed frame: {exc}") from exc
        if not isinstance(body, dict):
            raise ValueError("frame body is not a mapping")

        request = None
        req = _checked_map(body, "request")
        if req is not None:
            request = RpcRequest(
                id=_checked(req, "id", int),
                service_name=_checked(req, "service_name", str),
                method_name=_checked(req, "method_name", str),
                serialized_request=_checked(req, "serialized_request", bytes),
            )

        response = None
        rsp = _checked_map(body, "response")
        if rsp is not None:
            error = None
            err = _checked_map(rsp, "error")
            if err is not None:
                error = RpcErrorInfo(
                    errnum=_checked(err, "errnum", int),
                    msg=_checked(err, "msg", str),
                )
            response = RpcResponse(
                id=_checked(rsp, "id", int),
                serialized_response=_checked(rsp, "serialized_response", bytes),
                error=error,
            )
        return cls(request=request, response=response)


BytesToMessageDecoder = Callable[[bytes], "tuple[Optional[Any], int]"]
MessageToMessageDecoder = Callable[[RpcMessage, type], Any]
MessageToFrameEncoder = Callable[[Any, RpcMessage], bool]
FrameToBytesEncoder = Callable[[RpcMessage], bytes]


def _to_plain(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _to_plain(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, (list, tuple)):
        return [_to_plain(item) for item in value]
    if isinstance(value, dict):
        return {key: _to_plain(item) for key, item in value.items()}
    return value


def _field_type(field: dataclasses.Field) -> Any:
    # Annotations kept as text are not resolved; such fields pass through as-is.
    return Any if isinstance(field.type, str) else field.type


def _from_plain(tp: Any, value: Any) -> Any:
    origin = typing.get_origin(tp)
    if origin in (typing.Union, types.UnionType):
        if value is None:
            return None
        candidates = [arg for arg in typing.get_args(tp) if arg is not type(None)]
        return _from_plain(candidates[0], value) if candidates else value
    if origin in (list, tuple):
        if not isinstance(value, list):
            raise ValueError("expected a sequence")
        args = typing.get_args(tp)
        item_type = args[0] if args else Any
        items = [_from_plain(item_type, item) for item in value]
        return items if origin is list else tuple(items)
    if origin is dict:
        if not isinstance(value, dict):
            raise ValueError("expected a mapping")
        args = typing.get_args(tp)
        value_type = args[1] if len(args) == 2 else Any
        return {key: _from_plain(value_type, item) for key, item in value.items()}
    if isinstance(tp, type) and dataclasses.is_dataclass(tp):
        if not isinstance(value, dict):
            raise ValueError(f"expected a mapping for {tp.__name__}")
        kwargs = {
            f.name: _from_plain(_field_type(f), value[f.name])
            for f in dataclasses.fields(tp)
            if f.init and f.name in value
        }
        return tp(**kwargs)
    if isinstance(tp, type) and issubclass(tp, Enum):
        return tp(value)
    if tp is float and isinstance(value, int) and not isinstance(value, bool):
        return float(value)
    if isinstance(tp, type) and tp in _SCALARS and not isinstance(value, tp):
        raise ValueError(f"expected {tp.__name__}")
    return value


def _serialize_message(msg: Any) -> bytes:
    if isinstance(msg, (bytes, bytearray, memoryview)):
        return bytes(msg)
    if not isinstance(msg, int) and callable(getattr(msg, "to_bytes", None)):
        return msg.to_bytes()
    if dataclasses.is_dataclass(msg) and not isinstance(msg, type):
        return msgpack.packb(_to_plain(msg), use_bin_type=True)
    raise TypeError(f"cannot serialize {type(msg).__name__}")


def _parse_message(message_type: type, data: bytes) -> Any:
    if issubclass(message_type, (bytes, bytearray)):
        return message_type(data)
    if not issubclass(message_type, int) and callable(getattr(message_type, "from_bytes", None)):
        return message_type.from_bytes(data)
    if dataclasses.is_dataclass(message_type):
        return _from_plain(message_type, msgpack.unpackb(data, raw=False))
    raise TypeError(f"cannot parse into {message_type.__name__}")


def bytes_to_frame_decoder(data) -> tuple[Optional[RpcMessage], int]:
    """Split one length-prefixed frame off ``data``.

    Returns the frame and the number of bytes it used, or ``(None, 0)``
    when more bytes are needed.
    """
    data = bytes(data)
    if len(data) < HEADER_LEN:
        return None, 0

    (total,) = _HEADER.unpack_from(data)
    if total <= HEADER_LEN or total >= MAX_FRAME_LEN:
        raise RpcError(ErrorCode.TOO_LONG_FRAME, f"abnormal totalLen:{total}")

    if len(data) < total:
        return None, 0

    try:
        frame = RpcMessage.from_bytes(data[HEADER_LEN:total])
    except ValueError as exc:
        raise RpcError(ErrorCode.DECODE_FAIL, "ParseFromArray failed") from exc
    return frame, total


def frame_to_message_decoder(frame: RpcMessage, message_type: type) -> Any:
    """Extract the user message of ``message_type`` carried by a frame.

    An error response is raised as :class:`RpcError`.
    """
    if not isinstance(frame, RpcMessage):
        raise TypeError(f"expected RpcMessage, got {type(frame).__name__}")

    if frame.request is not None:
        payload = frame.request.serialized_request or b""
    elif frame.response is not None:
        response = frame.response
        if response.serialized_response is not None:
            payload = response.serialized_response
        elif response.error is not None:
            err = response.error
            raise RpcError(err.errnum if err.errnum is not None else 0, err.msg or "")
        else:
            raise RpcError(ErrorCode.DECODE_FAIL, "EmptyResponse")
    else:
        raise RpcError(ErrorCode.DECODE_FAIL, "PbToMessageDecoder failed.")

    try:
        return _parse_message(message_type, payload)
    except _PARSE_ERRORS as exc:
        raise RpcError(ErrorCode.DECODE_FAIL, f"cannot parse {message_type.__name__}") from exc


def request_frame_encoder(msg: Any, frame: RpcMessage) -> bool:
    """Store ``msg`` as the frame's request payload; False if it cannot be serialized."""
    if frame.request is None:
        frame.request = RpcRequest()
    if msg is None:
        return True
    try:
        frame.request.serialized_request = _serialize_message(msg)
    except _SERIALIZE_ERRORS:
        return False
    return True


def response_frame_encoder(msg: Any, frame: RpcMessage) -> bool:
    """Store ``msg`` as the frame's response payload; False if it cannot be serialized."""
    if frame.response is None:
        frame.response = RpcResponse()
    if msg is None:
        return True
    try:
        frame.response.serialized_response = _serialize_message(msg)
    except _SERIALIZE_ERRORS:
        return False
    return True


def frame_to_bytes_encoder(frame: RpcMessage) -> bytes:
    """Serialize a frame with its length header."""
    try:
        body = frame.to_bytes()
    except _SERIALIZE_ERRORS as exc:
        raise RpcError(ErrorCode.ENCODE_FAIL) from exc
    return _HEADER.pack(HEADER_LEN + len(body)) + body


class Decoder:
    """Inbound pipeline: bytes to message, then an optional message conversion.

    The default splits length-prefixed frames and extracts the payload.
    """

    def __init__(self) -> None:
        self.min_len = HEADER_LEN
        self.b2m_decoder: Optional[BytesToMessageDecoder] = bytes_to_frame_decoder
        self.m2m_decoder: Optional[MessageToMessageDecoder] = frame_to_message_decoder
        self._default = True

    def clear(self) -> None:
        self.min_len = 0
        self.b2m_decoder = None
        self.m2m_decoder = None
        self._default = False

    def set_bytes_to_message_decoder(self, b2m: BytesToMessageDecoder) -> None:
        if self._default:
            self.clear()
        if self.m2m_decoder is not None:
            raise RuntimeError("bytes-to-message decoder must be set before message-to-message decoder")
        self.b2m_decoder = b2m

    def set_message_to_message_decoder(self, m2m: MessageToMessageDecoder) -> None:
        if self._default:
            raise RuntimeError("set a bytes-to-message decoder first")
        if self.b2m_decoder is None:
            raise RuntimeError("bytes-to-message decoder must be set first")
        if self.m2m_decoder is not None:
            raise RuntimeError("message-to-message decoder already set")
        self.m2m_decoder = m2m

    def __repr__(self) -> str:
        return (
            f"Decoder(min_len={self.min_len}, b2m_decoder={self.b2m_decoder!r}, "
            f"m2m_decoder={self.m2m_decoder!r})"
        )


class Encoder:
    """Outbound pipeline: message to frame, then an optional frame to bytes step.

    Built with a message-to-frame encoder, it also frames with the
    default length-prefixed encoding.
    """

    def __init__(self, m2f: Optional[MessageToFrameEncoder] = None) -> None:
        if m2f is None:
            self.m2f_encoder: Optional[MessageToFrameEncoder] = None
            self.f2b_encoder: Optional[FrameToBytesEncoder] = None
            self._default = False
        else:
            self.m2f_encoder = m2f
            self.f2b_encoder = frame_to_bytes_encoder
            self._default = True

    def clear(self) -> None:
        self._default = False
        self.m2f_encoder = None
        self.f2b_encoder = None

    def set_message_to_frame_encoder(self, m2f: MessageToFrameEncoder) -> None:
        if self._default:
            self.clear()
        if self.f2b_encoder is not None:
            raise RuntimeError("frame-to-bytes encoder must be set after message-to-frame encoder")
        self.m2f_encoder = m2f

    def set_frame_to_bytes_encoder(self, f2b: FrameToBytesEncoder) -> None:
        if self._default:
            raise RuntimeError("set a message-to-frame encoder first")
        if self.m2f_encoder is None:
            raise RuntimeError("message-to-frame encoder must be set first")
        if self.f2b_encoder is not None:
            raise RuntimeError("frame-to-bytes encoder already set")
        self.f2b_encoder = f2b

    def __repr__(self) -> str:
        return f"Encoder(m2f_encoder={self.m2f_encoder!r}, f2b_encoder={self.f2b_encoder!r})"