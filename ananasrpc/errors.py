"""Error codes and the exception raised for RPC failures."""

from __future__ import annotations

from enum import IntEnum

CATEGORY = "ananas.error"

_BAD_CODE_MESSAGE = "Bad ananas.rpc error code"


class ErrorCode(IntEnum):
    """Reasons an RPC can fail."""

    NONE = 0

    # both sides
    NO_SUCH_SERVICE = 1
    NO_SUCH_METHOD = 2
    CONNECTION_LOST = 3
    CONNECTION_RESET = 4
    DECODE_FAIL = 5
    ENCODE_FAIL = 6
    TIMEOUT = 7
    TOO_LONG_FRAME = 8

    # server side
    EMPTY_REQUEST = 9
    METHOD_UNDETERMINED = 10
    THROW_IN_METHOD = 11

    # client side
    NO_AVAILABLE_ENDPOINT = 12
    CONNECT_REFUSED = 13


_NAMES = {
    ErrorCode.NONE: "OK",
    ErrorCode.NO_SUCH_SERVICE: "NoSuchService",
    ErrorCode.NO_SUCH_METHOD: "NoSuchMethod",
    ErrorCode.CONNECTION_LOST: "ConnectionLost",
    ErrorCode.CONNECTION_RESET: "ConnectionReset",
    ErrorCode.DECODE_FAIL: "DecodeFail",
    ErrorCode.ENCODE_FAIL: "EncodeFail",
    ErrorCode.TIMEOUT: "Timeout",
    ErrorCode.TOO_LONG_FRAME: "TooLongFrame",
    ErrorCode.EMPTY_REQUEST: "EmptyRequest",
    ErrorCode.METHOD_UNDETERMINED: "MethodUndetermined",
    ErrorCode.THROW_IN_METHOD: "ThrowInMethod",
    ErrorCode.NO_AVAILABLE_ENDPOINT: "NoAvailableEndpoint",
    ErrorCode.CONNECT_REFUSED: "ConnectRefused",
}


def error_message(code: int) -> str:
    """Return the descriptive text for an error code."""
    try:
        member = ErrorCode(code)
    except ValueError:
        return _BAD_CODE_MESSAGE
    return f"{CATEGORY}:{_NAMES[member]}"


class RpcError(Exception):
    """An RPC failure carrying an error code and an optional detail message."""

    category = CATEGORY

    def __init__(self, code: int, message: str = "") -> None:
        try:
            resolved: int = ErrorCode(code)
        except ValueError:
            resolved = int(code)
        self.code = resolved
        self.message = message
        text = error_message(resolved)
        super().__init__(f"{message}: {text}" if message else text)