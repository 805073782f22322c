"""The RPC server: registry of services and stubs, and the entry point for calls.

The server runs no network itself.  Listening is done by the ``listener``
attribute: when set, :meth:`Server.start` calls it with every service to
start.  Stubs added while ``connector`` is set get it as their connector.
Endpoint lookups of every stub go through the name service set with
:meth:`Server.set_name_server`.
"""

from __future__ import annotations

import copy
import logging
import threading
import types
from collections.abc import Callable, Mapping
from concurrent.futures import CancelledError, Future
from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional

from .endpoint import (
    Endpoint,
    EndpointList,
    KeepaliveInfo,
    ServiceName,
    Status,
    endpoint_from_string,
)
from .errors import ErrorCode, RpcError
from .health import HealthService, dispatch_health_method, on_create_health_channel
from .redis_client import on_create_redis_channel
from .service import Service
from .stub import ClientChannel, ServiceStub

log = logging.getLogger(__name__)

NAME_SERVICE = "ananas.rpc.NameService"
# Seconds between two keepalive rounds sent to the name service.
KEEPALIVE_INTERVAL = 3.0


@dataclass
class _ServiceDescription:
    full_name: str
    methods: dict[str, Any] = field(default_factory=dict)


_NAME_SERVICE_DESCRIPTION = _ServiceDescription(
    NAME_SERVICE,
    {"Keepalive": KeepaliveInfo, "GetEndpoints": ServiceName},
)


def _settle(fut: Future, value: Any = None, exc: Optional[BaseException] = None) -> None:
    if fut.done():
        return
    if exc is not None:
        fut.set_exception(exc)
    else:
        fut.set_result(value)


def _copy_outcome(src: Future, dst: Future) -> None:
    if src.cancelled():
        _settle(dst, exc=CancelledError())
        return
    exc = src.exception()
    if exc is not None:
        _settle(dst, exc=exc)
    else:
        _settle(dst, src.result())


class Server:
    """Manages the services a process offers and the stubs it calls."""

    _instance: ClassVar[Optional[Server]] = None

    def __init__(self) -> None:
        self._services: dict[str, Service] = {}
        self._stubs: dict[str, ServiceStub] = {}
        self._num_workers = 1
        self._on_init: Optional[Callable[[list[str]], bool]] = None
        self._on_exit: Optional[Callable[[], None]] = None

        self._name_service_stub: Optional[ServiceStub] = None
        self._health_service: Optional[Service] = None
        self._on_create_name_service_channel: Optional[Callable[[ClientChannel], None]] = None
        self._keepalive_info: list[KeepaliveInfo] = []

        self.listener: Optional[Callable[[Service], None]] = None
        self.connector: Optional[Callable[[Endpoint, int], None]] = None

        self._stopped = threading.Event()
        self._timer_lock = threading.Lock()
        self._keepalive_timer: Optional[threading.Timer] = None

        Server._instance = self

    @classmethod
    def instance(cls) -> Server:
        """Return the most recently created server."""
        if cls._instance is None:
            raise RuntimeError("no rpc server created")
        return cls._instance

    @property
    def services(self) -> Mapping[str, Service]:
        """Registered services by full name."""
        return types.MappingProxyType(self._services)

    @property
    def num_of_worker(self) -> int:
        return self._num_workers

    def add_service(self, service: Service) -> bool:
        """Register a service; False if one with that name exists."""
        name = service.full_name
        if name in self._services:
            return False
        log.info("AddService %s", name)
        self._services[name] = service
        service.on_register(self._num_workers)
        return True

    def add_service_stub(self, stub: ServiceStub) -> bool:
        """Register a stub for calling a remote service; False if one exists."""
        name = stub.full_name
        if name in self._stubs:
            return False
        log.info("AddServiceStub %s", name)
        self._stubs[name] = stub
        stub.set_endpoint_resolver(self._resolve_endpoints)
        if self.connector is not None:
            stub.set_connector(self.connector)
        stub.on_register(self._num_workers)
        return True

    def get_service_stub(self, name: str) -> Optional[ServiceStub]:
        return self._stubs.get(name)

    def set_num_of_worker(self, n: int) -> None:
        """Set the number of worker loops; only before services are added."""
        if self._services:
            raise RuntimeError("Don't change worker number after service added")
        if n < 1:
            raise ValueError("at least one worker is needed")
        self._num_workers = n

    def set_on_init(self, callback: Callable[[list[str]], bool]) -> None:
        """Run ``callback(argv)`` when the server starts; False stops it."""
        self._on_init = callback

    def set_on_exit(self, callback: Callable[[], None]) -> None:
        """Run ``callback()`` when the server stops."""
        self._on_exit = callback

    def set_name_server(self, url: str) -> None:
        """Use the name server at ``url`` (``;``-separated) for discovery."""
        if self._name_service_stub is not None:
            raise RuntimeError("name server already set")
        stub = ServiceStub(_NAME_SERVICE_DESCRIPTION)
        stub.set_url_list(url)
        stub.set_on_create_channel(
            self._on_create_name_service_channel or on_create_redis_channel
        )
        self._name_service_stub = stub
        log.debug("SetNameServer %s", stub.full_name)
        self.add_service_stub(stub)

    def set_on_create_name_server_channel(self, callback: Callable[[ClientChannel], None]) -> None:
        """Install the coders of name-server channels (Redis by default)."""
        self._on_create_name_service_channel = callback

    def set_health_service(self, url: str) -> None:
        """Serve an HTML status page at ``url``."""
        if self._health_service is not None:
            raise RuntimeError("health service already set")
        health = Service(HealthService(self))
        health.set_endpoint(endpoint_from_string(url))
        health.set_on_create_channel(on_create_health_channel)
        health.set_method_selector(dispatch_health_method)
        self._health_service = health
        log.debug("Enable health service on %s", url)
        self.add_service(health)

    def call(
        self,
        service: str,
        method: str,
        request: Any,
        response_type: Any = None,
        endpoint: Optional[Endpoint] = None,
    ) -> Future:
        """Call ``method`` of ``service``; return a future of the response."""
        stub = self.get_service_stub(service)
        result: Future = Future()
        if stub is None:
            result.set_exception(RpcError(ErrorCode.NO_SUCH_SERVICE, service))
            return result

        # The channel may arrive later; the caller may change its request meanwhile.
        request_copy = copy.deepcopy(request)

        def on_channel(done: Future) -> None:
            if done.cancelled():
                _settle(result, exc=CancelledError())
                return
            exc = done.exception()
            if exc is not None:
                _settle(result, exc=exc)
                return
            try:
                invocation = done.result().invoke(method, request_copy, response_type)
            except Exception as err:
                _settle(result, exc=err)
                return
            invocation.add_done_callback(lambda fut: _copy_outcome(fut, result))

        stub.get_channel(endpoint).add_done_callback(on_channel)
        return result

    def _resolve_endpoints(self, name: ServiceName) -> Future:
        return self.call(NAME_SERVICE, "GetEndpoints", name, EndpointList)

    def start(self, argv: Optional[list[str]] = None) -> bool:
        """Start every service and run until :meth:`shutdown`.

        Returns False if a service cannot start or the init callback fails.
        """
        argv = list(argv or [])
        self._stopped.clear()

        for name, service in self._services.items():
            if not service.endpoint.ip:
                log.error("start failed service %s", name)
                return False
            if self.listener is not None:
                self.listener(service)
            log.info("start succ service %s", name)

        if self._on_init is not None and not self._on_init(argv):
            log.error("init callback failed")
            return False

        if not self._services:
            log.warning("Warning: No available service")
        elif self._name_service_stub is not None:
            log.debug("Use nameservice %s", self._name_service_stub.full_name)
            self._keepalive_tick()

        self._stopped.wait()

        with self._timer_lock:
            timer, self._keepalive_timer = self._keepalive_timer, None
        if timer is not None:
            timer.cancel()
        if self._on_exit is not None:
            self._on_exit()
        return True

    def shutdown(self) -> None:
        """Stop the server started by :meth:`start`."""
        self._stopped.set()
        with self._timer_lock:
            timer, self._keepalive_timer = self._keepalive_timer, None
        if timer is not None:
            timer.cancel()

    def _keepalive_tick(self) -> None:
        self._send_keepalive()
        with self._timer_lock:
            if self._stopped.is_set():
                return
            timer = threading.Timer(KEEPALIVE_INTERVAL, self._keepalive_tick)
            timer.daemon = True
            self._keepalive_timer = timer
            timer.start()

    def _send_keepalive(self) -> None:
        if not self._keepalive_info:
            self._keepalive_info = [
                KeepaliveInfo(servicename=name, endpoint=service.endpoint)
                for name, service in self._services.items()
            ]
        log.debug("Call Keepalive")
        for info in self._keepalive_info:
            fut = self.call(NAME_SERVICE, "Keepalive", info, Status)
            fut.add_done_callback(_log_keepalive_failure)

    def __repr__(self) -> str:
        return f"Server(services={list(self._services)}, stubs={list(self._stubs)})"


def _log_keepalive_failure(fut: Future) -> None:
    if not fut.cancelled() and fut.exception() is not None:
        log.warning("Keepalive failed: %s", fut.exception())


def call(
    service: str,
    method: str,
    request: Any,
    response_type: Any = None,
    endpoint: Optional[Endpoint] = None,
) -> Future:
    """Call a remote method through the current server."""
    return Server.instance().call(service, method, request, response_type, endpoint)