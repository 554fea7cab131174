from __future__ import annotations

import socket
import time

import pytest

from tcp_health_check import TcpHealthCheck


@pytest.fixture
def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def make_check(free_port):
    """Build listeners on a free loopback port; all of them are stopped afterwards."""
    created = []

    def factory(max_idle_ms: int = 3000, port: int | None = None) -> TcpHealthCheck:
        check = TcpHealthCheck("127.0.0.1", free_port if port is None else port, max_idle_ms)
        created.append(check)
        return check

    yield factory
    for check in created:
        check.stop()


@pytest.fixture
def wait_until():
    def _wait(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait


@pytest.fixture
def connect():
    """Open loopback client sockets, closed at teardown."""
    opened = []

    def _connect(port: int, timeout: float = 2.0) -> socket.socket:
        sock = socket.create_connection(("127.0.0.1", port), timeout=timeout)
        opened.append(sock)
        return sock

    yield _connect
    for sock in opened:
        sock.close()


def recv_exactly(sock: socket.socket, n: int) -> bytes:
    data = bytearray()
    while len(data) < n:
        chunk = sock.recv(n - len(data))
        if not chunk:
            break
        data += chunk
    return bytes(data)


@pytest.fixture
def recv():
    return recv_exactly
