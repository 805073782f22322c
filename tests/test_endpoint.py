import pytest

from ananasrpc.endpoint import (
    Endpoint,
    KeepaliveInfo,
    Protocol,
    endpoint_from_string,
    endpoint_to_string,
    is_valid_endpoint,
)


def test_parse_tcp_url():
    ep = endpoint_from_string("tcp://127.0.0.1:8000")
    assert ep == Endpoint(Protocol.TCP, "127.0.0.1", 8000)


def test_parse_udp_and_ssl():
    assert endpoint_from_string("udp://127.0.0.1:7001").proto is Protocol.UDP
    assert endpoint_from_string("ssl://127.0.0.1:9987").proto is Protocol.SSL


@pytest.mark.parametrize(
    "url",
    ["tcp://127.0.0.1:6379", "udp://127.0.0.1:7001", "ssl://127.0.0.1:8000"],
)
def test_round_trip(url):
    assert endpoint_to_string(endpoint_from_string(url)) == url


def test_short_url_gives_empty_endpoint():
    ep = endpoint_from_string("tcp://1.1.1:1")
    assert ep == Endpoint()
    assert not is_valid_endpoint(ep)


def test_unknown_scheme_gives_empty_endpoint():
    assert endpoint_from_string("http://127.0.0.1:80") == Endpoint()


def test_missing_port_keeps_protocol_only():
    ep = endpoint_from_string("udp://127.0.0.1")
    assert ep.proto is Protocol.UDP
    assert ep.ip == ""
    assert not is_valid_endpoint(ep)


def test_non_numeric_port_raises():
    with pytest.raises(ValueError):
        endpoint_from_string("tcp://127.0.0.1:abc")


def test_port_with_trailing_text_uses_leading_digits():
    ep = endpoint_from_string("tcp://127.0.0.1:8000/x")
    # the last '/' separates the address, so this url has no ip:port part
    assert ep.ip == "x" or ep.ip == ""
    ep2 = endpoint_from_string("tcp://127.0.0.1:8000abc")
    assert ep2.port == 8000


def test_validity():
    assert is_valid_endpoint(Endpoint(Protocol.TCP, "127.0.0.1", 6379))
    assert not is_valid_endpoint(Endpoint(Protocol.TCP, "127.0.0.1", 0))
    assert not is_valid_endpoint(Endpoint(Protocol.TCP, "", 6379))


def test_equal_endpoints_hash_alike():
    a = endpoint_from_string("tcp://127.0.0.1:9987")
    b = Endpoint(Protocol.TCP, "127.0.0.1", 9987)
    assert a == b
    assert len({a, b}) == 1
    assert Endpoint(Protocol.UDP, "127.0.0.1", 9987) not in {a}


def test_socket_addr():
    ep = endpoint_from_string("tcp://127.0.0.1:6379")
    assert ep.to_socket_addr() == ("127.0.0.1", 6379)


def test_keepalive_carries_endpoint():
    ep = endpoint_from_string("tcp://127.0.0.1:9987")
    info = KeepaliveInfo(servicename="ananas.rpc.test.TestService", endpoint=ep)
    assert endpoint_to_string(info.endpoint) == "tcp://127.0.0.1:9987"