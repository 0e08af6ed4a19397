#!/usr/bin/env python3
"""
Run a session fleet against a server you operate.

Launches ``total`` identities named ``<prefix><index>``, paced by the shared
admission controller, and keeps them connected until interrupted or until
``--duration-s`` elapses.

Usage:
    FLEET_REGISTRATION_SECRET=... python -m scripts.run_fleet --config fleet.json
    python -m scripts.run_fleet --config fleet.json --total 20 --start-index 100
    python -m scripts.run_fleet --config fleet.json --duration-s 600 --metrics-port 9090

Exit codes:
    0  clean shutdown (signal or duration elapsed)
    1  unexpected error while running
    2  invalid configuration
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import dataclasses
import logging
import signal
import sys
import time
from pathlib import Path
from typing import TYPE_CHECKING

from prometheus_client.registry import CollectorRegistry

from sessionfleet.config import FleetConfig, load_config
from sessionfleet.connectors.exporter import MetricsExporter
from sessionfleet.connectors.metrics_server import start_metrics_server, stop_metrics_server
from sessionfleet.connectors.supervisor import FleetSupervisor
from sessionfleet.connectors.transport import WebSocketTransport
from sessionfleet.logging_config import SYSTEM, setup_logging

if TYPE_CHECKING:
    from sessionfleet.connectors.transport import SessionTransport

logger = logging.getLogger(__name__)

# How often the main loop checks for shutdown requests
_POLL_INTERVAL_S = 0.25


class ShutdownFlag:
    """Set by signal handlers, polled by the main loop."""

    def __init__(self) -> None:
        self.requested = False

    def request(self) -> None:
        logger.info("Shutdown requested")
        self.requested = True


def setup_signal_handlers(flag: ShutdownFlag) -> None:
    """
    Install SIGINT/SIGTERM handlers.

    Handlers only set the flag; the main loop exits and its finally block
    calls supervisor.stop(), so stop() never runs twice concurrently.
    """

    def signal_handler(sig: int, frame: object) -> None:
        logger.info("Received signal %s, initiating shutdown", signal.Signals(sig).name)
        flag.request()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


async def run_fleet(
    config: FleetConfig,
    *,
    duration_s: float | None = None,
    transport: SessionTransport | None = None,
    flag: ShutdownFlag | None = None,
    install_signal_handlers: bool = True,
) -> int:
    """
    Run the fleet until shutdown is requested or the duration elapses.

    Args:
        config: Fleet configuration.
        duration_s: Optional run duration in seconds.
        transport: Session transport (default: WebSocketTransport).
        flag: Shutdown flag (default: a new one).
        install_signal_handlers: Install SIGINT/SIGTERM handlers.

    Returns:
        Exit code (0 = clean shutdown, 1 = unexpected error).
    """
    flag = flag or ShutdownFlag()
    supervisor = FleetSupervisor(config, transport or WebSocketTransport())

    metrics_runner = None
    if config.metrics_port > 0:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)

        def refresh() -> None:
            exporter.update(fleet_metrics=supervisor.get_metrics(), admission=supervisor.admission)

        metrics_runner = await start_metrics_server(
            registry,
            port=config.metrics_port,
            health_fn=supervisor.get_health_info,
            refresh_fn=refresh,
        )

    if install_signal_handlers:
        setup_signal_handlers(flag)

    launch_task: asyncio.Task[None] | None = None
    deadline = time.monotonic() + duration_s if duration_s else None
    try:
        launch_task = asyncio.create_task(supervisor.start())
        while not flag.requested:
            if launch_task.done():
                # Re-raises a launch failure
                launch_task.result()
            if deadline is not None and time.monotonic() >= deadline:
                logger.log(SYSTEM, "Duration of %ss elapsed", duration_s)
                break
            await asyncio.sleep(_POLL_INTERVAL_S)
        return 0
    except Exception as e:
        logger.critical("CRITICAL ERROR: %s", e, exc_info=True)
        return 1
    finally:
        if launch_task is not None and not launch_task.done():
            launch_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await launch_task
        await supervisor.stop()
        if metrics_runner is not None:
            await stop_metrics_server(metrics_runner)


def build_parser() -> argparse.ArgumentParser:
    """Build the command-line parser."""
    parser = argparse.ArgumentParser(
        description="Run a fleet of authenticated sessions against a server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        required=True,
        help="Fleet configuration JSON file",
    )
    parser.add_argument(
        "--total",
        type=int,
        default=None,
        help="Override number of identities to launch",
    )
    parser.add_argument(
        "--start-index",
        type=int,
        default=None,
        help="Override first slot index",
    )
    parser.add_argument(
        "--prefix",
        type=str,
        default=None,
        help="Override identity name prefix",
    )
    parser.add_argument(
        "--duration-s",
        type=float,
        default=None,
        help="Run for N seconds then stop gracefully (default: run until SIGINT/SIGTERM)",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        help="Prometheus /metrics port (0 to disable; default: from config)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit console logs as JSON lines",
    )
    return parser


def apply_overrides(config: FleetConfig, args: argparse.Namespace) -> FleetConfig:
    """
    Apply command-line overrides to a loaded config.

    Raises:
        ValueError: If an override is out of range.
    """
    overrides = {
        "total": args.total,
        "start_index": args.start_index,
        "prefix": args.prefix,
        "metrics_port": args.metrics_port,
    }
    changes = {k: v for k, v in overrides.items() if v is not None}
    if not changes:
        return config
    return dataclasses.replace(config, **changes)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    level = logging.DEBUG if args.verbose else logging.INFO
    setup_logging(level=level, json_format=args.json_logs, color=sys.stderr.isatty())

    try:
        config = apply_overrides(load_config(args.config), args)
    except ValueError as e:
        logger.error("Invalid configuration: %s", e)
        return 2

    if config.log_dir is not None:
        setup_logging(
            level=level,
            json_format=args.json_logs,
            color=sys.stderr.isatty(),
            log_dir=config.log_dir,
        )

    logger.log(SYSTEM, "Starting session fleet")
    for key, value in config.summary().items():
        logger.log(SYSTEM, "  %s: %s", key, value)

    return asyncio.run(run_fleet(config, duration_s=args.duration_s))


if __name__ == "__main__":
    sys.exit(main())
