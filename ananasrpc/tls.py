"""TLS for event-loop connections, run over in-memory buffers.

The TLS engine never touches a socket.  Encrypted bytes received by a
connection are fed to the session, and the bytes the engine wants to send
are handed back to the connection.

Connections are objects with these attributes, all writable:
``user_data``, ``on_message``, ``on_disconnect`` and ``min_packet_size``.
They also have a ``send(data)`` method that returns False when the bytes
cannot be sent, and a ``close()`` method.  ``on_message`` is called by the
network layer as ``on_message(conn, data)`` and returns the number of bytes
it consumed.
"""

from __future__ import annotations

import logging
import ssl
import threading
import warnings
from collections.abc import Callable
from typing import Any, ClassVar, Optional

log = logging.getLogger(__name__)

# Size of a TLS record header; no record is shorter.
TLS_HEADER_SIZE = 5
# Largest plaintext read from the engine at a time.
_READ_CHUNK = 16 * 1024


class TlsManager:
    """Named TLS contexts shared by the connections of a process."""

    _instance: ClassVar[Optional[TlsManager]] = None
    _instance_lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(self) -> None:
        self._contexts: dict[str, ssl.SSLContext] = {}

    @classmethod
    def instance(cls) -> TlsManager:
        """Return the process-wide manager."""
        with cls._instance_lock:
            if cls._instance is None:
                cls._instance = cls()
            return cls._instance

    def add_ctx(self, name: str, cafile, certfile, keyfile) -> bool:
        """Create a context from PEM files and register it under ``name``.

        Returns False if the name is taken or a file cannot be loaded.
        """
        if name in self._contexts:
            return False

        # One context serves both accepted and outgoing connections.
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", DeprecationWarning)
            context = ssl.SSLContext(ssl.PROTOCOL_TLS)
        context.options |= ssl.OP_NO_SSLv2 | ssl.OP_NO_SSLv3

        try:
            context.load_verify_locations(cafile=str(cafile))
            context.load_cert_chain(certfile=str(certfile), keyfile=str(keyfile))
        except (OSError, ValueError) as exc:
            log.error("Cannot load TLS context %s: %s", name, exc)
            return False

        return self.add_context(name, context)

    def add_context(self, name: str, context: ssl.SSLContext) -> bool:
        """Register a ready context; False if the name is taken."""
        if name in self._contexts:
            return False
        self._contexts[name] = context
        return True

    def get_ctx(self, name: str) -> Optional[ssl.SSLContext]:
        return self._contexts.get(name)

    def __repr__(self) -> str:
        return f"TlsManager({sorted(self._contexts)})"


def _sent(conn: Any, data: bytes) -> bool:
    return conn.send(data) is not False


class TlsSession:
    """The TLS state of one connection."""

    def __init__(
        self,
        ssl_context: ssl.SSLContext,
        incoming: bool,
        conn: Any,
        server_hostname: Optional[str] = None,
    ) -> None:
        self.incoming = incoming
        self.connection = conn
        self._in_bio = ssl.MemoryBIO()
        self._out_bio = ssl.MemoryBIO()
        self._ssl: Optional[ssl.SSLObject] = ssl_context.wrap_bio(
            self._in_bio,
            self._out_bio,
            server_side=incoming,
            server_hostname=None if incoming else server_hostname,
        )
        self._logic_process: Optional[Callable[[Any, bytes], int]] = None
        self._recv_plain = bytearray()
        self._send_buffer = bytearray()
        self._handshake_done = False
        # Reading stopped waiting for more peer data mid handshake.
        self._read_wait_readable = False
        # A write needs peer data before it can go out.
        self._write_wait_readable = False
        self._shutdown_wait_readable = False

    @property
    def handshake_complete(self) -> bool:
        return self._handshake_done

    @property
    def pending_send(self) -> bytes:
        """Plaintext accepted by :meth:`send_data` but not yet encrypted."""
        return bytes(self._send_buffer)

    @property
    def pending_plaintext(self) -> bytes:
        """Decrypted bytes not yet consumed by the logic callback."""
        return bytes(self._recv_plain)

    def set_logic_process(self, callback: Callable[[Any, bytes], int]) -> None:
        """Set ``callback(conn, plaintext)`` returning the bytes it consumed."""
        self._logic_process = callback

    def send_data(self, data) -> bool:
        """Encrypt and send plaintext; False if it cannot be sent."""
        return self._send(bytes(data), drive_by_loop=False)

    def _send(self, data: bytes, drive_by_loop: bool) -> bool:
        if self._ssl is None:
            return False
        if not data:
            return True

        if not drive_by_loop and self._send_buffer:
            self._send_buffer.extend(data)
            return True

        if not drive_by_loop and (self._read_wait_readable or self._shutdown_wait_readable):
            self._send_buffer.extend(data)
            return True

        try:
            self._ssl.write(data)
        except ssl.SSLWantReadError:
            log.debug("TLS write waits for peer data")
            self._write_wait_readable = True
            if not drive_by_loop:
                self._send_buffer.extend(data)
        except ssl.SSLError as exc:
            log.warning("TLS write error: %s", exc)
            return False
        else:
            self._write_wait_readable = False
            if drive_by_loop:
                self._send_buffer.clear()

        out = self._out_bio.read()
        if out:
            return _sent(self.connection, out)
        return True

    def _start(self, conn: Any) -> bool:
        try:
            self._ssl.do_handshake()
        except ssl.SSLWantReadError:
            pass
        except ssl.SSLError as exc:
            log.error("TLS handshake start failed: %s", exc)
            conn.close()
            return False
        else:
            self._finish_handshake(conn)

        out = self._out_bio.read()
        if out:
            conn.send(out)
        return True

    def _finish_handshake(self, conn: Any) -> None:
        log.debug("TLS handshake done")
        self._handshake_done = True
        conn.on_message = self.process_data

    def process_handshake(self, conn: Any, data) -> int:
        """Feed handshake bytes from the peer; return the bytes consumed."""
        data = bytes(data)
        if self._ssl is None:
            return len(data)
        self._in_bio.write(data)

        try:
            self._ssl.do_handshake()
        except ssl.SSLWantReadError:
            pass
        except ssl.SSLError as exc:
            log.debug("TLS handshake failed: %s", exc)
            conn.close()
            return len(data)
        else:
            self._finish_handshake(conn)

        out = self._out_bio.read()
        if out:
            conn.send(out)

        # Application data may follow the handshake in the same packet.
        if self._handshake_done and self._in_bio.pending:
            self.process_data(conn, b"")
        return len(data)

    def process_data(self, conn: Any, data) -> int:
        """Feed encrypted bytes from the peer; return the bytes consumed."""
        data = bytes(data)
        if self._ssl is None:
            return len(data)
        self._in_bio.write(data)

        if self._write_wait_readable:
            if not self._send(bytes(self._send_buffer), drive_by_loop=True):
                log.error("Readable, but sending buffered data failed")
                conn.close()
            return len(data)

        while True:
            try:
                chunk = self._ssl.read(_READ_CHUNK)
            except ssl.SSLWantReadError:
                self._read_wait_readable = not self._handshake_done
                break
            except ssl.SSLError as exc:
                log.warning("TLS read error: %s", exc)
                conn.close()
                return len(data)
            if not chunk:
                break
            self._recv_plain.extend(chunk)
            self._read_wait_readable = False
            if self._logic_process is not None:
                processed = self._logic_process(conn, bytes(self._recv_plain))
                if processed and processed > 0:
                    del self._recv_plain[:processed]

        out = self._out_bio.read()
        if out:
            conn.send(out)
        return len(data)

    def shutdown(self) -> None:
        """End the TLS session; later sends fail."""
        if self._ssl is None:
            return
        try:
            self._ssl.unwrap()
        except (OSError, ValueError):
            pass
        self._ssl = None

    def __repr__(self) -> str:
        side = "server" if self.incoming else "client"
        return f"TlsSession({side}, handshake_complete={self._handshake_done})"


def _apply_verify_mode(context: ssl.SSLContext, verify_mode) -> None:
    mode = ssl.VerifyMode(verify_mode)
    if context.verify_mode == mode:
        return
    if mode == ssl.CERT_NONE:
        context.check_hostname = False
    context.verify_mode = mode


def on_new_tls_connection(ctx_name: str, verify_mode, incoming: bool, conn: Any) -> Optional[TlsSession]:
    """Start TLS on a new connection with the context registered as ``ctx_name``.

    ``verify_mode`` is applied to the shared context.  Returns the session,
    or None after closing the connection when TLS cannot start.
    """
    context = TlsManager.instance().get_ctx(ctx_name)
    if context is None:
        log.error("not find ctx %s", ctx_name)
        conn.close()
        return None

    if verify_mode is not None:
        _apply_verify_mode(context, verify_mode)

    hostname = getattr(conn, "server_hostname", None)
    if hostname is None and not incoming and context.check_hostname:
        hostname = conn.peer[0]

    session = TlsSession(context, incoming, conn, hostname)
    conn.user_data = session
    conn.on_disconnect = lambda _conn: session.shutdown()
    conn.min_packet_size = TLS_HEADER_SIZE
    conn.on_message = session.process_handshake

    if not session._start(conn):
        return None
    return session