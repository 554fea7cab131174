"""
Bookkeeping for live probe connections.
The listener loop is the only writer; any thread may ask for the size.
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from typing import Iterator, List, Optional, Tuple

log = logging.getLogger(__name__)


def now_ms() -> float:
    """Monotonic clock in milliseconds."""
    return time.monotonic() * 1000.0


class Connection:
    """One accepted client socket and the time it was last heard from."""

    __slots__ = ("sock", "remote_addr", "last_activity")

    def __init__(self, sock: socket.socket, remote_addr: Tuple[str, int], last_activity: float):
        self.sock = sock
        self.remote_addr = remote_addr
        self.last_activity = last_activity

    def idle_for(self, now: float) -> float:
        return now - self.last_activity

    def close(self):
        try:
            self.sock.close()
        except OSError as exc:
            log.debug("close %s failed: %s", self.remote_addr, exc)

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Connection {self.remote_addr[0]}:{self.remote_addr[1]} last={self.last_activity:.0f}>"


class ConnectionRegistry:
    """Maps client sockets to their Connection entry.

    Each method holds the lock for a single dict operation, so readers never
    wait on more than one mutation.
    """

    def __init__(self):
        self._entries: dict[socket.socket, Connection] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------  writes (loop thread)
    def add(self, sock: socket.socket, remote_addr: Tuple[str, int], now: Optional[float] = None) -> Connection:
        conn = Connection(sock, remote_addr, now_ms() if now is None else now)
        with self._lock:
            self._entries[sock] = conn
        return conn

    def touch(self, sock: socket.socket, now: Optional[float] = None) -> bool:
        """Refresh last activity; False if the socket is not tracked."""
        with self._lock:
            conn = self._entries.get(sock)
            if conn is None:
                return False
            conn.last_activity = now_ms() if now is None else now
            return True

    def remove(self, sock: socket.socket) -> Optional[Connection]:
        with self._lock:
            return self._entries.pop(sock, None)

    def evict_idle(self, max_idle_ms: float, now: Optional[float] = None) -> List[Connection]:
        """Remove every entry idle for at least *max_idle_ms* and return them.

        The whole registry is scanned first, removals happen afterwards.
        """
        if now is None:
            now = now_ms()
        with self._lock:
            snapshot = list(self._entries.values())
        idle = [conn for conn in snapshot if conn.idle_for(now) >= max_idle_ms]
        for conn in idle:
            self.remove(conn.sock)
        return idle

    def drain(self) -> List[Connection]:
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        return entries

    # ------------------------------------------------------------------  reads (any thread)
    def get(self, sock: socket.socket) -> Optional[Connection]:
        with self._lock:
            return self._entries.get(sock)

    def __contains__(self, sock) -> bool:
        with self._lock:
            return sock in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[Connection]:
        with self._lock:
            return iter(list(self._entries.values()))
