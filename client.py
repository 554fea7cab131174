"""Probe a health-check listener the way a load balancer would: send bytes, expect them back."""

from __future__ import annotations

import argparse
import socket
import sys

from tcp_health_check import DEFAULT_PORT


def probe(host: str, port: int, payload: bytes = b"ping", timeout: float = 2.0) -> bytes:
    """Send *payload* and return whatever came back before the echo was complete or the peer closed."""
    reply = bytearray()
    with socket.create_connection((host, port), timeout=timeout) as sock:
        sock.sendall(payload)
        while len(reply) < len(payload):
            chunk = sock.recv(len(payload) - len(reply))
            if not chunk:
                break
            reply += chunk
    return bytes(reply)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Check that a TCP health-check listener echoes.")
    parser.add_argument("host")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--payload", default="ping")
    parser.add_argument("--timeout", type=float, default=2.0, help="seconds")
    args = parser.parse_args(argv)

    payload = args.payload.encode()
    try:
        reply = probe(args.host, args.port, payload, args.timeout)
    except OSError as exc:
        print(f"[client] {args.host}:{args.port} unreachable: {exc}")
        return 1
    print("[client] Reply:", reply)
    return 0 if reply == payload else 1


if __name__ == "__main__":
    sys.exit(main())
