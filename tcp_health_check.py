"""
TCP health-check listener for load balancers and other probes.
Accepts connections, echoes whatever arrives and drops connections that stay
silent for longer than the configured idle time.
"""

from __future__ import annotations

import abc
import enum
import logging
import selectors
import socket
import threading
import time
from typing import Optional, Tuple

from connection import ConnectionRegistry

log = logging.getLogger(__name__)

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 9000
DEFAULT_MAX_IDLE_MS = 3000

BUFFER_SIZE = 1024           # bytes per read
ACCEPT_POLL_TIMEOUT = 0.003  # seconds, paces the loop
STOP_JOIN_TIMEOUT = 1.0      # seconds
ERROR_BACKOFF = 0.01         # seconds per consecutive failed iteration
MAX_ERROR_BACKOFF = 0.1      # seconds
ERROR_LOG_EVERY = 100        # failed iterations between repeated warnings

_LISTENER = "listener"  # selector data tag of the listening socket


class State(enum.Enum):
    STOPPED = "stopped"
    RUNNING = "running"


class HealthCheckError(Exception):
    """Base class for listener errors."""


class AlreadyStartedError(HealthCheckError, RuntimeError):
    pass


class BindError(HealthCheckError, OSError):
    """The listening socket could not be set up."""

    def __init__(self, host: str, port: int, cause: OSError):
        super().__init__(f"cannot listen on {host}:{port}: {cause}")
        self.host = host
        self.port = port
        self.errno = cause.errno


class HealthCheck(abc.ABC):
    """Something a supervisor can start and stop."""

    @abc.abstractmethod
    def start(self):
        ...

    @abc.abstractmethod
    def stop(self):
        ...

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *exc_info):
        self.stop()


class _Resources:
    """Everything owned while Running."""

    __slots__ = ("server_sock", "selector", "thread")

    def __init__(self, server_sock: socket.socket, selector: selectors.BaseSelector, thread: threading.Thread):
        self.server_sock = server_sock
        self.selector = selector
        self.thread = thread


class TcpHealthCheck(HealthCheck):
    """Single-threaded echo listener.

    ``start()`` binds synchronously and hands the event loop to a background
    thread; ``stop()`` flips the state, waits for the loop to leave and closes
    everything. The connection registry is written by the loop thread only.
    """

    # ------------------------------------------------------------------  core setup
    def __init__(self, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT,
                 max_idle_ms: int = DEFAULT_MAX_IDLE_MS):
        if not 0 <= port <= 0xFFFF:
            raise ValueError(f"port out of range: {port}")
        if max_idle_ms <= 0:
            raise ValueError(f"max_idle_ms must be positive: {max_idle_ms}")
        self._host = host
        self._port = port
        self._max_idle_ms = max_idle_ms

        self._state = State.STOPPED
        self._lifecycle_lock = threading.Lock()
        self._resources: _Resources | None = None
        self._registry = ConnectionRegistry()
        self._buffer = bytearray(BUFFER_SIZE)

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def max_idle_ms(self) -> int:
        return self._max_idle_ms

    @property
    def state(self) -> State:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is State.RUNNING

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """Bound (host, port) while Running, None otherwise."""
        resources = self._resources
        if resources is None:
            return None
        try:
            return resources.server_sock.getsockname()[:2]
        except OSError:
            return None

    def get_alive_connection_count(self) -> int:
        return len(self._registry)

    # ------------------------------------------------------------------  lifecycle
    def start(self):
        with self._lifecycle_lock:
            if self._state is State.RUNNING:
                raise AlreadyStartedError(f"tcp health check already listening on {self._host}:{self._port}")
            server_sock, selector = self._open()
            for conn in self._registry.drain():
                conn.close()
            resources = _Resources(server_sock, selector, None)
            resources.thread = threading.Thread(target=self._loop, args=(resources,),
                                                name="tcp-health-check", daemon=True)
            self._resources = resources
            self._state = State.RUNNING
            resources.thread.start()
        log.info("tcp health check listening on %s:%d (max idle %d ms)",
                 self._host, self._port, self._max_idle_ms)

    def _open(self) -> Tuple[socket.socket, selectors.BaseSelector]:
        family = socket.AF_INET6 if ":" in self._host else socket.AF_INET
        server_sock = socket.socket(family, socket.SOCK_STREAM)
        selector = None
        try:
            server_sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            server_sock.bind((self._host, self._port))
            server_sock.listen()
            server_sock.setblocking(False)
            selector = selectors.DefaultSelector()
            selector.register(server_sock, selectors.EVENT_READ, _LISTENER)
        except OSError as exc:
            if selector is not None:
                selector.close()
            server_sock.close()
            raise BindError(self._host, self._port, exc) from exc
        return server_sock, selector

    def stop(self):
        with self._lifecycle_lock:
            self._state = State.STOPPED
            resources = self._resources
            if resources is None:
                return
            thread = resources.thread
            if thread is not threading.current_thread():
                thread.join(STOP_JOIN_TIMEOUT)
                if thread.is_alive():
                    log.warning("tcp health check loop did not exit within %.1f s", STOP_JOIN_TIMEOUT)
            self._close_component("server socket", resources.server_sock)
            self._close_component("selector", resources.selector)
            self._resources = None
            for conn in self._registry.drain():
                conn.close()
        log.info("tcp health check on %s:%d stopped", self._host, self._port)

    @staticmethod
    def _close_component(name: str, component):
        try:
            component.close()
        except Exception:
            log.exception("close: %s error", name)

    # ------------------------------------------------------------------  event loop
    def _loop(self, resources: _Resources):
        failures = 0
        while self._state is State.RUNNING and self._resources is resources:
            try:
                self._handle_loop_one(resources.selector)
                failures = 0
            except Exception:
                failures += 1
                if failures % ERROR_LOG_EVERY == 1:
                    log.warning("handle health check error (%d in a row)", failures, exc_info=True)
                time.sleep(min(ERROR_BACKOFF * failures, MAX_ERROR_BACKOFF))

    def _handle_loop_one(self, selector: selectors.BaseSelector):
        self._remove_idle_connections(selector)

        ready = []
        for key, mask in selector.select(timeout=ACCEPT_POLL_TIMEOUT):
            if key.data is _LISTENER:
                self._accept_connections(selector, key.fileobj)
            else:
                ready.append((key, mask))

        for key, mask in ready:
            if key.fileobj in self._registry:
                self._process_ready_key(selector, key, mask)

    def _remove_idle_connections(self, selector: selectors.BaseSelector):
        for conn in self._registry.evict_idle(self._max_idle_ms):
            log.debug("dropping idle connection %s:%s", conn.remote_addr[0], conn.remote_addr[1])
            self._unregister(selector, conn.sock)
            conn.close()

    def _accept_connections(self, selector: selectors.BaseSelector, server_sock: socket.socket):
        # drain the backlog; one readiness event may stand for several clients
        while True:
            try:
                sock, addr = server_sock.accept()
            except (BlockingIOError, InterruptedError):
                return
            try:
                sock.setblocking(False)
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
                selector.register(sock, selectors.EVENT_READ)
            except Exception:
                sock.close()
                raise
            self._registry.add(sock, addr[:2])
            log.debug("accepted %s:%s", addr[0], addr[1])

    def _process_ready_key(self, selector: selectors.BaseSelector, key: selectors.SelectorKey, mask: int):
        if mask & selectors.EVENT_WRITE:
            selector.modify(key.fileobj, selectors.EVENT_READ)
        if mask & selectors.EVENT_READ:
            self._process_readable(selector, key.fileobj)

    def _read(self, sock: socket.socket) -> int:
        return sock.recv_into(self._buffer)

    def _process_readable(self, selector: selectors.BaseSelector, sock: socket.socket):
        try:
            read_bytes = self._read(sock)
        except (BlockingIOError, InterruptedError):
            return
        except OSError as exc:
            # left registered: a dead peer shows up as EOF or goes idle
            log.info("I/O error at socket-reader: %s(%s)", type(exc).__name__, exc)
            return

        if read_bytes == 0:
            conn = self._close_connection(selector, sock)
            if conn is not None:
                log.debug("closed by peer %s:%s", conn.remote_addr[0], conn.remote_addr[1])
            return

        try:
            complete = self._echo(sock, memoryview(self._buffer)[:read_bytes])
        except OSError as exc:
            log.info("I/O error at socket-writer: %s(%s)", type(exc).__name__, exc)
            return
        if not complete:
            conn = self._close_connection(selector, sock)
            if conn is not None:
                log.info("dropping slow reader %s:%s", conn.remote_addr[0], conn.remote_addr[1])
            return
        self._registry.touch(sock)

    @staticmethod
    def _echo(sock: socket.socket, data: memoryview) -> bool:
        """Write *data* without blocking; False if the peer's buffers are full."""
        while data:
            try:
                sent = sock.send(data)
            except BlockingIOError:
                return False
            data = data[sent:]
        return True

    def _close_connection(self, selector: selectors.BaseSelector, sock: socket.socket):
        conn = self._registry.remove(sock)
        self._unregister(selector, sock)
        sock.close()
        return conn

    @staticmethod
    def _unregister(selector: selectors.BaseSelector, sock: socket.socket):
        try:
            selector.unregister(sock)
        except (KeyError, ValueError):
            pass  # already gone

    def __repr__(self) -> str:  # pragma: no cover
        return f"<TcpHealthCheck {self._host}:{self._port} {self._state.value} alive={len(self._registry)}>"
