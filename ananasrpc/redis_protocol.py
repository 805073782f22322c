"""Incremental parsers for the Redis serialization protocol."""

from __future__ import annotations

from enum import Enum

_CRLF = b"\r\n"
_CR = 0x0D
_LF = 0x0A
_ZERO = 0x30
_NINE = 0x39


class ParseResult(Enum):
    """Outcome of one parse step."""

    OK = "ok"
    WAIT = "wait"
    ERROR = "error"


class ResponseType(Enum):
    """Kind of a Redis reply, chosen by its first byte."""

    NONE = None
    FINE = "+"
    ERROR = "-"
    STRING = "$"
    NUMBER = ":"
    MULTI = "*"


_TYPE_BY_BYTE = {
    ord("+"): ResponseType.FINE,
    ord("-"): ResponseType.ERROR,
    ord("$"): ResponseType.STRING,
    ord(":"): ResponseType.NUMBER,
    ord("*"): ResponseType.MULTI,
}


def _as_bytes(data) -> bytes:
    return data if isinstance(data, bytes) else bytes(data)


def _read_int_until_crlf(data: bytes, pos: int, end: int) -> tuple[ParseResult, int, int]:
    """Read a signed decimal terminated by CRLF.

    Returns the result, the value and the position after the CRLF.
    """
    if end - pos < 3:
        return ParseResult.WAIT, 0, pos

    i = pos
    negative = False
    if data[i] == ord("-"):
        negative = True
        i += 1
    elif data[i] == ord("+"):
        i += 1

    value = 0
    while i < end:
        ch = data[i]
        if _ZERO <= ch <= _NINE:
            value = value * 10 + (ch - _ZERO)
            i += 1
            continue
        if ch != _CR or (i + 1 < end and data[i + 1] != _LF):
            return ParseResult.ERROR, 0, pos
        if i + 1 == end:
            return ParseResult.WAIT, 0, pos
        return ParseResult.OK, -value if negative else value, i + 2

    return ParseResult.WAIT, 0, pos


class ServerProtocol:
    """Parser for requests (arrays of bulk strings) sent to a Redis server.

    Parsing is resumable: after WAIT, call again with a longer buffer
    starting at the returned position.  ``params`` holds the raw array
    and length headers as well as the values; ``content`` holds the raw
    request bytes consumed so far.
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.multi = -1
        self.param_len = -1
        self.params: list[bytes] = []
        self.content = bytearray()
        self.n_params = 0

    def is_initial_state(self) -> bool:
        return self.multi == -1

    def parse_request(self, data, pos: int = 0) -> tuple[ParseResult, int]:
        """Parse from ``pos``; return the result and the new position."""
        data = _as_bytes(data)
        end = len(data)
        if self.multi == -1:
            start = pos
            result, value, pos = self._parse_multi(data, pos, end)
            if result is ParseResult.ERROR or (result is ParseResult.OK and value < -1):
                return ParseResult.ERROR, start
            if result is not ParseResult.OK:
                return ParseResult.WAIT, start
            self.multi = value
            header = data[start:pos]
            self.content += header
            self.params.append(header)

        return self._parse_strlist(data, pos, end)

    @staticmethod
    def _parse_multi(data: bytes, pos: int, end: int) -> tuple[ParseResult, int, int]:
        if end - pos < 3:
            return ParseResult.WAIT, 0, pos
        if data[pos] != ord("*"):
            return ParseResult.ERROR, 0, pos
        result, value, new_pos = _read_int_until_crlf(data, pos + 1, end)
        if result is not ParseResult.OK:
            return result, value, pos
        return result, value, new_pos

    def _parse_strlist(self, data: bytes, pos: int, end: int) -> tuple[ParseResult, int]:
        while self.n_params < self.multi:
            result, value, pos = self._parse_str(data, pos, end)
            if result is not ParseResult.OK:
                return result, pos
            self.params.append(value)
            self.n_params += 1
        return ParseResult.OK, pos

    def _parse_str(self, data: bytes, pos: int, end: int) -> tuple[ParseResult, bytes, int]:
        if self.param_len == -1:
            start = pos
            result, length, new_pos = self._parse_strlen(data, pos, end)
            if result is ParseResult.ERROR or (result is ParseResult.OK and length < -1):
                return ParseResult.ERROR, b"", start
            if result is not ParseResult.OK:
                return ParseResult.WAIT, b"", start
            self.param_len = length
            header = data[start:new_pos]
            self.content += header
            self.params.append(header)
            pos = new_pos

        if self.param_len == -1:
            return ParseResult.OK, b"", pos
        return self._parse_strval(data, pos, end)

    def _parse_strval(self, data: bytes, pos: int, end: int) -> tuple[ParseResult, bytes, int]:
        if end - pos < self.param_len + 2:
            return ParseResult.WAIT, b"", pos
        tail = pos + self.param_len
        if data[tail:tail + 2] != _CRLF:
            return ParseResult.ERROR, b"", pos
        value = data[pos:tail]
        new_pos = tail + 2
        self.param_len = -1
        self.content += data[pos:new_pos]
        return ParseResult.OK, value, new_pos

    @staticmethod
    def _parse_strlen(data: bytes, pos: int, end: int) -> tuple[ParseResult, int, int]:
        if end - pos < 3:
            return ParseResult.WAIT, 0, pos
        if data[pos] != ord("$"):
            return ParseResult.ERROR, 0, pos
        result, value, new_pos = _read_int_until_crlf(data, pos + 1, end)
        if result is not ParseResult.OK:
            return result, value, pos
        return result, value, new_pos


class ClientProtocol:
    """Parser for replies received from a Redis server.

    A reply is parsed whole: on WAIT the parser forgets its partial state
    and the position is left unchanged, so the caller retries from the
    same position once more bytes have arrived.  Null bulk strings add no
    entry to ``params``.
    """

    _INVALID = -2

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.response_type = ResponseType.NONE
        self.content = bytearray()
        self.multi = self._INVALID
        self.param_len = self._INVALID
        self.n_params = 0
        self.params: list[bytes] = []

    def parse(self, data, pos: int = 0) -> tuple[ParseResult, int]:
        """Parse one reply from ``pos``; return the result and the new position."""
        data = _as_bytes(data)
        end = len(data)
        if pos >= end:
            raise ValueError("no data to parse")

        if self.response_type is ResponseType.NONE:
            kind = _TYPE_BY_BYTE.get(data[pos])
            if kind is None:
                return ParseResult.ERROR, pos
            self.response_type = kind

        start = pos
        if self.response_type in (ResponseType.FINE, ResponseType.ERROR, ResponseType.NUMBER):
            found = data.find(_CRLF, pos + 1)
            if found < 0:
                result, cur = ParseResult.WAIT, pos
            else:
                result, cur = ParseResult.OK, found + 2
        elif self.response_type is ResponseType.STRING:
            result, cur = self._parse_str(data, pos, end)
        else:
            result, cur = self._parse_multi(data, pos, end)

        if result is ParseResult.ERROR:
            return ParseResult.ERROR, start
        if result is ParseResult.WAIT:
            self.reset()
            return ParseResult.WAIT, start

        self.content += data[start:cur]
        return ParseResult.OK, cur

    def _parse_str(self, data: bytes, pos: int, end: int) -> tuple[ParseResult, int]:
        if self.param_len == self._INVALID:
            result, length, new_pos = ServerProtocol._parse_strlen(data, pos, end)
            if result is ParseResult.ERROR or (result is ParseResult.OK and length < -1):
                return ParseResult.ERROR, pos
            if result is not ParseResult.OK:
                return ParseResult.WAIT, pos
            self.param_len = length
            pos = new_pos

        if self.param_len == -1:
            self.param_len = self._INVALID
            return ParseResult.OK, pos
        return self._parse_strval(data, pos, end)

    def _parse_strval(self, data: bytes, pos: int, end: int) -> tuple[ParseResult, int]:
        if end - pos < self.param_len + 2:
            return ParseResult.WAIT, pos
        tail = pos + self.param_len
        if data[tail:tail + 2] != _CRLF:
            return ParseResult.ERROR, pos
        self.params.append(data[pos:tail])
        self.param_len = self._INVALID
        return ParseResult.OK, tail + 2

    def _parse_multi(self, data: bytes, pos: int, end: int) -> tuple[ParseResult, int]:
        if self.multi == self._INVALID:
            if end - pos < 3:
                return ParseResult.WAIT, pos
            if data[pos] != ord("*"):
                return ParseResult.ERROR, pos
            result, value, new_pos = _read_int_until_crlf(data, pos + 1, end)
            if result is ParseResult.ERROR or (result is ParseResult.OK and value < -1):
                return ParseResult.ERROR, pos
            if result is not ParseResult.OK:
                return ParseResult.WAIT, pos
            self.multi = value
            pos = new_pos

        while self.n_params < self.multi:
            result, pos = self._parse_str(data, pos, end)
            if result is not ParseResult.OK:
                return result, pos
            self.n_params += 1
        return ParseResult.OK, pos