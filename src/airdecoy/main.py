from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from typing import Any, Dict, List

from .config.config_parser import load_config
from .config.logging_config import init_logging
from .errors import BeaconError
from .service import BeaconService


def build_arg_parser() -> argparse.ArgumentParser:
    """Brief: Command-line interface; every option overrides the YAML file."""

    parser = argparse.ArgumentParser(
        prog="airdecoy",
        description="Advertise a fake AirPlay receiver over mDNS/DNS-SD",
    )
    parser.add_argument("--config", default=None, help="Path to YAML config")
    parser.add_argument("--instance", default=None, help="Service instance name")
    parser.add_argument("--port", type=int, default=None, help="Advertised TCP port")
    parser.add_argument(
        "--hostname", default=None, help="SRV target host (default: system hostname)"
    )
    parser.add_argument(
        "--interface",
        dest="interfaces",
        action="append",
        default=None,
        help="Interface to advertise on (repeatable; default: all eligible)",
    )
    parser.add_argument(
        "--type", dest="service_type", default=None, help="Service type, e.g. _airplay._tcp"
    )
    parser.add_argument(
        "--no-probe",
        dest="no_probe",
        action="store_true",
        help="Skip probing and announce immediately",
    )
    parser.add_argument(
        "--log-level",
        dest="log_level",
        default=None,
        choices=["debug", "info", "warn", "warning", "error", "crit", "critical"],
        help="Root log level",
    )
    return parser


def main(argv: List[str] | None = None) -> int:
    """
    Main entry point: load configuration, advertise, and wait for a signal.

    Args:
        argv: Command-line arguments.

    Returns:
        0 after a requested shutdown; 1 for invalid configuration, startup
        failures, or loss of every mDNS socket.

    Example use:
        CLI:
            airdecoy --instance Test-AirPlay --port 7000
            airdecoy --config example_configs/airplay.yaml
    """
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args)
    except (OSError, ValueError) as exc:
        print(str(exc), file=sys.stderr)
        return 1

    init_logging(config.logging)
    logger = logging.getLogger("airdecoy.main")
    if args.config:
        logger.info("Loaded config from %s", args.config)

    shutdown_event = threading.Event()

    def _request_shutdown(reason: str) -> None:
        if shutdown_event.is_set():
            return
        logger.info("Received %s, initiating shutdown", reason)
        shutdown_event.set()

    def _handler(signum, _frame):
        _request_shutdown(signal.Signals(signum).name)

    previous: Dict[int, Any] = {}
    for name in ("SIGINT", "SIGTERM", "SIGHUP"):
        signum = getattr(signal, name, None)
        if signum is None:
            continue
        try:
            previous[signum] = signal.signal(signum, _handler)
            logger.debug("Installed %s handler for clean shutdown", name)
        except (ValueError, OSError):  # not the main thread, or unsupported
            logger.warning("Could not install %s handler", name)

    service = BeaconService(config)
    exit_code = 0
    try:
        try:
            service.start()
        except (BeaconError, ValueError) as exc:
            logger.error("Startup failed: %s", exc)
            return 1

        logger.info("Startup Completed")
        exit_code = service.wait(shutdown_event)
    except KeyboardInterrupt:
        logger.info("Received interrupt, shutting down")
        exit_code = 0
    finally:
        service.shutdown()
        for signum, handler in previous.items():
            try:
                signal.signal(signum, handler)
            except (ValueError, OSError, TypeError):
                pass

    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())  # pragma: no cover
