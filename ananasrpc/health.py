"""A small HTTP status page showing the workers and services of a server."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Optional

import h11

from .coder import Decoder, Encoder, RpcMessage, RpcResponse
from .endpoint import endpoint_to_string
from .errors import ErrorCode, RpcError

HEALTH_SERVICE_NAME = "ananas.rpc.HealthHttpService"

_NEWLINE = "<br>"
_MAX_NAME_LEN = 30

_PAGE_HEAD = (
    "<!DOCTYPE html> \n"
    "<html>\n "
    + " " * 28 + "<head>\n "
    + " " * 32 + '<meta charset="UTF-8">\n '
    + " " * 32 + "<title>Welcome to ananas rpc</title> \n "
    + " " * 32 + "<style> div{display:inline} </style> \n "
    + " " * 28 + "</head>\n "
    + " " * 28 + "<body>\n "
    + " " * 32 + "ANANAS: To be continued <br><br>"
)


@dataclass
class HttpRequestMsg:
    """A parsed HTTP request."""

    method: str = ""
    path: str = ""
    body: str = ""


@dataclass
class Summary:
    """The full HTTP response text of the status page."""

    summary: str = ""


def color_word(text: str, color: str) -> str:
    """Wrap ``text`` in a div of the given color."""
    return f'<div style="color:{color}">{text}</div>'


def render_summary(num_workers: int, services: Mapping[str, Any]) -> str:
    """Render the HTML status page for a server."""
    parts = [
        _PAGE_HEAD,
        color_word(f"<b>Worker threads: {num_workers}</b>", "maroon"),
        _NEWLINE,
        _NEWLINE,
        color_word("<b>Services:</b>", "fuchsia"),
        _NEWLINE,
        '<table border="1"> <tr> <th>Service</th> <th>Address</th> <th>Connections</th>',
    ]
    for name, service in services.items():
        parts.append(
            "<tr> <td>" + color_word(name[:_MAX_NAME_LEN], "teal") + "</td>"
            + "<td>" + color_word(endpoint_to_string(service.endpoint), "Blue") + "</td>"
            + "<td>" + color_word(str(service.connection_count), "Green") + "</td>"
            + "</tr>"
        )
    parts.append("</table>")
    parts.append("</body>\n</html>")
    return "".join(parts)


def _http_response(html: str) -> str:
    length = len(html.encode("utf-8"))
    return (
        "HTTP/1.1 200 OK\r\n"
        f"Content-Length: {length}\r\n"
        "Content-Type: text/html\r\n\r\n"
        f"{html}\r\n"
    )


class HealthService:
    """Service implementation answering every request with the status page.

    ``server`` provides ``num_of_worker`` and ``services``.
    """

    full_name = HEALTH_SERVICE_NAME
    methods = {"GetSummary": HttpRequestMsg}

    def __init__(self, server: Any) -> None:
        self.server = server

    def get_summary(self, request: Any, done: Callable[[Summary], None]) -> None:
        html = render_summary(self.server.num_of_worker, self.server.services)
        done(Summary(summary=_http_response(html)))


class HttpRequestDecoder:
    """Incremental parser turning received bytes into :class:`HttpRequestMsg`."""

    def __init__(self) -> None:
        self._conn = h11.Connection(h11.SERVER)
        self._method = ""
        self._path = ""
        self._body = bytearray()

    def _reset(self) -> None:
        leftover, _ = self._conn.trailing_data
        self._conn = h11.Connection(h11.SERVER)
        self._method = ""
        self._path = ""
        self._body = bytearray()
        if leftover:
            self._conn.receive_data(bytes(leftover))

    def decode(self, data) -> tuple[Optional[HttpRequestMsg], int]:
        """Feed bytes; return a complete request (or None) and the bytes used."""
        data = bytes(data)
        if not data:
            return None, 0
        try:
            self._conn.receive_data(data)
            while True:
                event = self._conn.next_event()
                if event is h11.NEED_DATA or event is h11.PAUSED:
                    return None, len(data)
                if isinstance(event, h11.Request):
                    self._method = event.method.decode("ascii", "replace")
                    self._path = event.target.decode("utf-8", "replace")
                elif isinstance(event, h11.Data):
                    self._body.extend(event.data)
                elif isinstance(event, h11.EndOfMessage):
                    msg = HttpRequestMsg(
                        method=self._method,
                        path=self._path,
                        body=self._body.decode("utf-8", "replace"),
                    )
                    self._reset()
                    return msg, len(data)
                elif isinstance(event, h11.ConnectionClosed):
                    return None, len(data)
        except h11.ProtocolError as exc:
            raise RpcError(ErrorCode.DECODE_FAIL, f"failed to parse http request: {exc}") from exc


def summary_frame_encoder(msg: Any, frame: RpcMessage) -> bool:
    """Put the status page text into the response frame."""
    if not isinstance(msg, Summary):
        return False
    if frame.response is None:
        frame.response = RpcResponse()
    frame.response.serialized_response = msg.summary.encode("utf-8")
    return True


def on_create_health_channel(channel: Any) -> None:
    """Install the HTTP coders on a new health-service channel."""
    ctx = HttpRequestDecoder()
    channel.set_context(ctx)

    encoder = Encoder()
    encoder.set_message_to_frame_encoder(summary_frame_encoder)
    channel.set_encoder(encoder)

    decoder = Decoder()
    decoder.set_bytes_to_message_decoder(ctx.decode)
    channel.set_decoder(decoder)


def dispatch_health_method(msg: Any) -> str:
    """Every health request is answered by ``GetSummary``."""
    return "GetSummary"