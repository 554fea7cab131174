"""Run a TCP health-check listener until interrupted."""

from __future__ import annotations

import argparse
import logging
import sys
import time

from tcp_health_check import (
    DEFAULT_HOST,
    DEFAULT_MAX_IDLE_MS,
    DEFAULT_PORT,
    BindError,
    TcpHealthCheck,
)

log = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="TCP echo listener for load-balancer health checks.")
    parser.add_argument("--host", default=DEFAULT_HOST, help="bind address (default: %(default)s)")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="listen port (default: %(default)s)")
    parser.add_argument("--max-idle-ms", type=int, default=DEFAULT_MAX_IDLE_MS,
                        help="drop connections silent for this long (default: %(default)s)")
    parser.add_argument("--report-interval", type=float, default=1.0,
                        help="seconds between alive-connection reports (default: %(default)s)")
    parser.add_argument("-v", "--verbose", action="store_true", help="log every connection")
    return parser.parse_args(argv)


def main(argv=None, sleep=time.sleep) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s [%(levelname)s] %(message)s",
                        datefmt="%H:%M:%S")

    check = TcpHealthCheck(args.host, args.port, args.max_idle_ms)
    try:
        check.start()
    except BindError as exc:
        log.error("%s", exc)
        return 2
    print(f"[server] Listening on {args.host}:{args.port} …")

    try:
        while True:
            sleep(args.report_interval)
            print(f"[server] alive connections: {check.get_alive_connection_count()}")
    except KeyboardInterrupt:
        print("[server] Shutting down")
    finally:
        check.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
