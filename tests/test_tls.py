import ssl
import uuid

from ananasrpc.tls import TlsManager, TlsSession, on_new_tls_connection


class FakeConn:
    def __init__(self, peer=("127.0.0.1", 8443)):
        self.peer = peer
        self.sent = []
        self.closed = False
        self.user_data = None
        self.on_message = None
        self.on_disconnect = None
        self.min_packet_size = 0

    def send(self, data):
        self.sent.append(bytes(data))
        return True

    def close(self):
        self.closed = True


def _client_context():
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


def _register(ctx):
    name = f"ctx-{uuid.uuid4().hex}"
    assert TlsManager.instance().add_context(name, ctx)
    return name


def _client_session():
    conn = FakeConn()
    name = _register(_client_context())
    session = on_new_tls_connection(name, ssl.CERT_NONE, False, conn)
    return session, conn


def test_instance_is_shared():
    ctx = _client_context()
    name = f"shared-{uuid.uuid4().hex}"
    assert TlsManager.instance().add_context(name, ctx) is True
    assert TlsManager.instance().get_ctx(name) is ctx
    assert TlsManager.instance().add_context(name, _client_context()) is False


def test_add_ctx_missing_files_fails(tmp_path):
    mgr = TlsManager()
    ok = mgr.add_ctx("srv", tmp_path / "ca.pem", tmp_path / "cert.pem", tmp_path / "key.pem")
    assert ok is False
    assert mgr.get_ctx("srv") is None


def test_add_context_rejects_duplicate_name():
    mgr = TlsManager()
    ctx = _client_context()
    assert mgr.add_context("c", ctx) is True
    assert mgr.add_context("c", _client_context()) is False
    assert mgr.get_ctx("c") is ctx


def test_add_ctx_existing_name_fails_before_loading(tmp_path):
    mgr = TlsManager()
    ctx = _client_context()
    mgr.add_context("c", ctx)
    assert mgr.add_ctx("c", tmp_path / "a", tmp_path / "b", tmp_path / "c") is False
    assert mgr.get_ctx("c") is ctx


def test_unknown_context_closes_connection():
    conn = FakeConn()
    result = on_new_tls_connection(f"missing-{uuid.uuid4().hex}", None, False, conn)
    assert result is None
    assert conn.closed is True


def test_client_sends_client_hello():
    session, conn = _client_session()
    assert conn.user_data is session
    assert conn.min_packet_size == 5
    assert conn.on_message == session.process_handshake
    assert conn.closed is False
    # TLS handshake record
    assert conn.sent[0][:1] == b"\x16"
    assert session.handshake_complete is False


def test_verify_mode_applied_to_context():
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    name = _register(ctx)
    conn = FakeConn()
    on_new_tls_connection(name, ssl.CERT_NONE, False, conn)
    assert ctx.verify_mode == ssl.CERT_NONE
    assert ctx.check_hostname is False


def test_garbage_during_handshake_closes():
    session, conn = _client_session()
    data = b"this is not a tls record at all"
    assert session.process_handshake(conn, data) == len(data)
    assert conn.closed is True


def test_server_without_certificate_rejects_hello():
    _, client_conn = _client_session()
    server_ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    server_conn = FakeConn()
    server = on_new_tls_connection(_register(server_ctx), None, True, server_conn)
    assert server_conn.sent == []
    hello = client_conn.sent[0]
    assert server_conn.on_message(server_conn, hello) == len(hello)
    assert server_conn.closed is True
    assert server.handshake_complete is False


def test_send_before_handshake_is_buffered():
    session, conn = _client_session()
    sent_before = len(conn.sent)
    assert session.send_data(b"hello") is True
    assert session.send_data(b"world") is True
    assert session.pending_send == b"helloworld"
    assert len(conn.sent) == sent_before


def test_send_empty_is_noop():
    session, conn = _client_session()
    sent_before = list(conn.sent)
    assert session.send_data(b"") is True
    assert conn.sent == sent_before
    assert session.pending_send == b""


def test_disconnect_shuts_session_down():
    session, conn = _client_session()
    conn.on_disconnect(conn)
    assert session.send_data(b"x") is False
    assert session.process_data(conn, b"abc") == 3


def test_process_data_garbage_closes():
    session, conn = _client_session()
    data = b"not a tls record"
    assert session.process_data(conn, data) == len(data)
    assert conn.closed is True
    assert session.pending_plaintext == b""


def test_direct_session_starts_without_output():
    conn = FakeConn()
    session = TlsSession(_client_context(), False, conn)
    assert conn.sent == []
    assert session.incoming is False
    assert session.handshake_complete is False