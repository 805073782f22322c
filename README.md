# ananasrpc

A compact RPC framework made of a few pluggable pieces. It holds the
protocol logic (framing, dispatch, call matching, name-service lookup, a
status page and TLS state); the sockets and event loops that carry the
bytes are supplied by you (see "What the package does not do").

## Modules

- `ananasrpc.errors`: `ErrorCode`, the exception `RpcError(code, message)`
  and `error_message(code)`, which gives the standard text for a code, such
  as `"ananas.error:Timeout"`. Unknown codes give
  `"Bad ananas.rpc error code"`.
- `ananasrpc.endpoint`: `Endpoint` (protocol, ip, port), `Protocol`
  (`TCP`, `UDP`, `SSL`), the name-service messages `ServiceName`,
  `KeepaliveInfo`, `EndpointList`, `Status`, and the helpers
  `endpoint_from_string`, `endpoint_to_string`, `is_valid_endpoint`.
- `ananasrpc.coder`: the `RpcMessage` frame, which holds an `RpcRequest`
  and/or an `RpcResponse` (a response may carry an `RpcErrorInfo`). On the
  wire a frame is a 4-byte little-endian total length (header included)
  followed by a msgpack body; lengths of 4 or less, or of 256 MiB or more,
  raise `RpcError(TOO_LONG_FRAME)`. A `Decoder` turns bytes into messages
  (`b2m_decoder`, then an optional `m2m_decoder`); an `Encoder` turns
  messages into frames (`m2f_encoder`) and frames into bytes (optional
  `f2b_encoder`). Payloads may be `bytes`, objects with `to_bytes` /
  `from_bytes`, or dataclasses (packed with msgpack).
- `ananasrpc.redis_protocol`: incremental RESP parsers, `ServerProtocol`
  for requests and `ClientProtocol` for replies, returning a `ParseResult`
  and the new position.
- `ananasrpc.redis_client`: `RedisClientContext` and
  `on_create_redis_channel`, which make a client channel talk to Redis as a
  name server: `GetEndpoints` becomes `hgetall <service>` and `Keepalive`
  becomes `hset <service> <endpoint> <unix time>`. Endpoints whose
  timestamp is 30 seconds old or more are left out.
- `ananasrpc.service`: `Service` wraps an implementation; `ServerChannel`
  decodes requests on one connection, picks the method, runs it and sends
  back the response or an error frame.
- `ananasrpc.stub`: `ServiceStub` keeps one `ClientChannel` per endpoint
  and worker, gets endpoints from a fixed url list or from a name server,
  and matches responses to pending calls.
- `ananasrpc.server`: `Server` registers services and stubs, sends
  keepalives and offers `call(...)`.
- `ananasrpc.health`: an HTTP status page showing the worker count and a
  table of services with their address and open connections.
- `ananasrpc.tls`: `TlsManager` holds named `ssl.SSLContext`s;
  `TlsSession` runs a TLS session over in-memory buffers.

## Endpoints

```python
from ananasrpc.endpoint import endpoint_from_string, endpoint_to_string, is_valid_endpoint

ep = endpoint_from_string("tcp://127.0.0.1:8000")
assert is_valid_endpoint(ep)
assert endpoint_to_string(ep) == "tcp://127.0.0.1:8000"
```

A url shorter than `tcp://1.1.1.1:1` or with an unknown scheme gives an
endpoint without an address, which `is_valid_endpoint` rejects; a port that
is not a number raises `ValueError`.

## Errors

RPC failures are raised as `ananasrpc.errors.RpcError`, whose `code` is an
`ErrorCode`. On the server, an unknown service or method, an empty request
or an exception raised inside a method is answered with an error frame and
the connection stays open. Decode failures, requests whose method cannot be
determined and other errors are answered the same way, after which the
connection is closed.

## Writing a service

An implementation has a `full_name`, a `methods` mapping from method name
to request type, and a handler per method under the method name or its
snake_case form. A handler receives the request and a `done` callback and
completes the call, now or later, with `done(response)`:

```python
from dataclasses import dataclass


@dataclass
class EchoRequest:
    text: str = ""


@dataclass
class EchoResponse:
    text: str = ""


class TestService:
    full_name = "ananas.rpc.test.TestService"
    methods = {"AppendDots": EchoRequest}

    def append_dots(self, request, done):
        done(EchoResponse(text=request.text + "..................."))
```

## Running a server

```python
import sys

from ananasrpc.endpoint import endpoint_from_string
from ananasrpc.server import Server
from ananasrpc.service import Service

server = Server()
server.set_num_of_worker(4)          # before any service is added
server.listener = my_listener        # called with each Service on start

service = Service(TestService())
service.set_endpoint(endpoint_from_string("tcp://127.0.0.1:9987"))
server.add_service(service)

server.set_name_server("tcp://127.0.0.1:6379")
server.set_health_service("tcp://127.0.0.1:8000")
server.start(sys.argv)               # blocks until server.shutdown()
```

`start` returns False if a service has no address or the callback set with
`set_on_init` returns False. When a name server is set and services exist,
a keepalive for each service is sent right away and then every three
seconds. `set_on_exit` sets a callback run when `start` returns after
`shutdown`.

## Making calls

Register a `ServiceStub` for each remote service. Its description needs a
`full_name` and a `methods` mapping naming the methods it may call:

```python
from ananasrpc.server import Server, call
from ananasrpc.stub import ServiceStub

server = Server()
server.connector = my_connector      # given to stubs added afterwards
stub = ServiceStub(TestService())
stub.set_url_list("tcp://10.0.0.1:9987;tcp://10.0.0.2:9987")
server.add_service_stub(stub)

future = call("ananas.rpc.test.TestService", "AppendDots",
              EchoRequest(text="hello"), EchoResponse, None)
print(future.result(timeout=3).text)
```

`call` returns a `concurrent.futures.Future`. The request is deep-copied
before sending. Without an endpoint, the stub picks one in turn from its
url list or, without a url list, asks the name server; endpoints from the
name server are reused for 60 seconds, and a lookup that gets no answer in
2 seconds falls back to the cached list or fails with `TIMEOUT`. Calls
without an answer for 60 seconds are dropped by
`ClientChannel.check_pending_timeout`.

## Custom protocols

Give a service a channel initializer with `Service.set_on_create_channel`;
it installs its own `Encoder` and `Decoder` on the channel. Then use
`Service.set_method_selector` to choose the method for each decoded
message that is not an `RpcMessage`. The health service works this way,
with `on_create_health_channel` and `dispatch_health_method`.

## TLS

```python
from ananasrpc.tls import TlsManager, on_new_tls_connection

TlsManager.instance().add_ctx("default", "ca.pem", "cert.pem", "key.pem")
session = on_new_tls_connection("default", None, True, conn)
```

The session switches the connection's `on_message` from the handshake to
data processing once the handshake completes, and queues outgoing
plaintext while a write or read is waiting for the peer. Set the
plaintext callback with `TlsSession.set_logic_process`.

## What the package does not do

The package opens no sockets and runs no event loop. Listening is done by
the `Server.listener` you set, connecting by the connector given to stubs,
and your network layer feeds received bytes to `Service.on_message`,
`ServiceStub.on_message` or a connection's `on_message`, and reports new,
established, failed and closed connections to the matching `on_*` methods.
Connections are objects you supply with the attributes described in the
docstrings of `ananasrpc.service`, `ananasrpc.stub` and `ananasrpc.tls`.
There is no command-line program.