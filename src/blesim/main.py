#!/usr/bin/env python3
import argparse
import asyncio
import os
import signal
import sys
import time

import uvicorn

from . import __version__
from .api import create_app
from .config_loader import TRANSPORT_MODES, Config
from .events import EventBus
from .identifiers import IdentifierMode, IdentifierRegistry, JsonFileStore
from .logging_setup import get_logger, has_console, setup_logging
from .monitor import SessionMonitor
from .peripheral import PeripheralSession
from .transport import TransportMode, create_transport

VERSION = f"v{__version__}"

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="blesim",
        description="Simulated BLE peripheral with an HTTP control API",
    )
    parser.add_argument("--config", help="Path to config JSON (default: /etc/blesim/config.json)")
    parser.add_argument("--transport", choices=TRANSPORT_MODES, help="Radio backend")
    parser.add_argument("--host", help="API bind address")
    parser.add_argument("--port", type=int, help="API port")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--log-file", help="Also log to this file")
    parser.add_argument("--version", action="version", version=VERSION)
    return parser


def apply_overrides(cfg: Config, args: argparse.Namespace) -> Config:
    """Command line beats config file and environment"""
    if args.transport:
        cfg.peripheral.transport = args.transport
    if args.host:
        cfg.api.host = args.host
    if args.port:
        cfg.api.port = args.port
    cfg.validate()
    return cfg


def build_peripheral(cfg: Config) -> tuple[PeripheralSession, SessionMonitor]:
    """Wire store, registry, transport, event bus, peripheral and monitor."""
    store = JsonFileStore(cfg.storage.identifier_path)
    registry = IdentifierRegistry(store, IdentifierMode(cfg.peripheral.identifier_mode))
    transport = create_transport(TransportMode(cfg.peripheral.transport), adapter=cfg.peripheral.adapter)

    bus = EventBus()
    monitor = SessionMonitor(bus)
    peripheral = PeripheralSession(
        transport,
        registry,
        bus,
        local_name=cfg.peripheral.local_name,
        device_name=cfg.peripheral.device_name,
        heartbeat_interval=cfg.peripheral.heartbeat_interval,
        stream_interval=cfg.peripheral.stream_interval,
        auto_advertise=cfg.peripheral.auto_advertise,
    )
    logger.debug("EventBus subscriptions: %s", bus.list_subscriptions())
    return peripheral, monitor


async def main(cfg: Config) -> None:
    peripheral, monitor = build_peripheral(cfg)
    app = create_app(peripheral, monitor, cfg.api)

    server = uvicorn.Server(uvicorn.Config(
        app,
        host=cfg.api.host,
        port=cfg.api.port,
        log_level="warning",  # Reduce uvicorn logging noise
        access_log=False,
    ))
    server_task = asyncio.create_task(server.serve())

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    _first_signal_time = None

    def handle_shutdown(signum=None, frame=None):
        nonlocal _first_signal_time
        logger.info("Signal %s received, stopping blesim ..", signum or 'SIGINT')
        if stop_event.is_set():
            now = time.monotonic()
            # Ignore duplicate signals within 5s of first (asyncio can double-fire)
            if _first_signal_time and (now - _first_signal_time) < 5.0:
                return
            logger.warning("Force shutdown - second signal received")
            os._exit(1)
        _first_signal_time = time.monotonic()
        stop_event.set()

    try:
        loop.add_signal_handler(signal.SIGINT, handle_shutdown, signal.SIGINT)
        loop.add_signal_handler(signal.SIGTERM, handle_shutdown, signal.SIGTERM)
    except NotImplementedError as e:
        logger.warning("Could not set asyncio signal handlers: %s", e)
        signal.signal(signal.SIGINT, handle_shutdown)
        signal.signal(signal.SIGTERM, handle_shutdown)

    logger.info("blesim %s: %s transport, API on http://%s:%d",
                VERSION, cfg.peripheral.transport, cfg.api.host, cfg.api.port)
    logger.info("Identifier mode: %s, SSE at /api/events", cfg.peripheral.identifier_mode)

    stop_task = asyncio.create_task(stop_event.wait())
    await asyncio.wait({server_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    stop_task.cancel()

    # Lifespan shutdown stops advertising and the transport
    server.should_exit = True
    try:
        await asyncio.wait_for(server_task, timeout=5.0)
    except asyncio.TimeoutError:
        logger.warning("API shutdown timeout")
        server_task.cancel()

    logger.info("Shutdown complete")


def run():
    """Entry point for blesim CLI."""
    args = build_parser().parse_args()

    is_dev = os.getenv("BLESIM_ENV") == "dev"
    # journald adds its own timestamps
    setup_logging(
        verbose=args.verbose or is_dev,
        log_file=args.log_file,
        simple_format=not has_console(),
    )

    if is_dev:
        logger.info("*** Debug and DEV Environment detected ***")

    try:
        cfg = apply_overrides(Config.load(args.config), args)
    except ValueError as e:
        logger.error("Invalid configuration: %s", e)
        sys.exit(2)

    try:
        asyncio.run(main(cfg))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    run()
