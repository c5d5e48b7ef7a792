import argparse
import sys

import uvicorn

from tunnelwatch.dashboard import print_periodic
from tunnelwatch.logging_utility import logger
from tunnelwatch.vpn.config import DEFAULT_CONFIG_PATH
from tunnelwatch.vpn.exceptions import VPNError
from tunnelwatch.vpn.manager import ConnectionMonitor


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="VPN tunnel monitor")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to tunnelwatch.conf")
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    watch = sub.add_parser("watch", help="Print the status to the terminal")
    watch.add_argument("--interval", type=float, default=1.0)
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    monitor = ConnectionMonitor(args.config)

    if args.command == "watch":
        try:
            monitor.start()
        except VPNError as e:
            logger.error(f"Cannot start monitor: {str(e)}")
            return 1
        try:
            print_periodic(monitor, interval=args.interval)
        finally:
            monitor.stop()
        return 0

    from tunnelwatch.main import create_app

    logger.info("Starting TunnelWatch API")
    uvicorn.run(create_app(monitor), host=getattr(args, "host", "0.0.0.0"), port=getattr(args, "port", 8000))
    return 0


if __name__ == '__main__':
    sys.exit(main())
