"""
Main entry point for the GPIO companion bridge.

This module is responsible for:
- Parsing command-line arguments and the YAML configuration.
- Resolving the board identity (fatal if its store is unavailable).
- Wiring PinManager, CommandDispatcher, BridgeWorker and ConnectionManager.
- Managing the overall application lifecycle, including an ordered
  teardown: pins are closed before the broker session is released.
"""

import argparse
import asyncio
import logging
import platform
import signal
import sys

from pathlib import Path
from typing import Dict, Any, Optional

from gpio_companion.server.config_loader import load_config
from gpio_companion.server.dispatcher import CommandDispatcher
from gpio_companion.server.errors import StorageUnavailable
from gpio_companion.server.hardware import PinManager
from gpio_companion.server.identity import BoardIdentity
from gpio_companion.server.mqtt import ConnectionManager
from gpio_companion.server.worker import BridgeWorker

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"


def setup_logging(level: str = "INFO"):
    """
    Configures the global logging settings for the entire application.
    This should be called as early as possible during startup.
    """
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format='%(asctime)s [%(levelname)-8s] %(name)s.%(funcName)s: %(message)s'
    )

logger = logging.getLogger(__name__)


def board_model() -> str:
    """Best-effort board description for the startup banner."""
    try:
        return Path("/proc/device-tree/model").read_text().strip("\x00\n ")
    except OSError:
        return f"{platform.system()} {platform.machine()}".strip() or "unknown"


def log_banner(board_id: str, connection: ConnectionManager):
    logger.info("*******************************************")
    logger.info("Please use the following values when configuring your companion app.")
    logger.info(f"Board Identifier = {board_id}")
    logger.info(f"Hardware Platform Board = {board_model()}")
    logger.info(f"Messaging Host = {connection.endpoint.host}")
    logger.info(f"Messaging Port = {connection.endpoint.port}")
    logger.info("*******************************************")


async def shutdown(signal_name: str, loop: asyncio.AbstractEventLoop, connection: ConnectionManager,
                   dispatcher: CommandDispatcher, pins: PinManager, worker: BridgeWorker):
    """
    Graceful shutdown handler.

    Order matters: stop taking messages, close every pin, and only then
    release the broker session.
    """
    logger.info(f"Received exit signal {signal_name}...")

    # Stop the worker (Sync) so nothing touches the pin registry any more
    worker.stop_worker_thread()
    dispatcher.close()

    # Pins first, to avoid leaving hardware mid-operation
    pins.close_all_pins()

    # Session last (Async)
    await connection.stop()

    # Cancel all remaining tasks
    tasks = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)

    loop.stop()


async def main_application_runner(config_path: Optional[str] = None):
    config: Dict[str, Any] = load_config(config_path or DEFAULT_CONFIG_PATH)
    setup_logging(config.get("log_level", "INFO"))
    logger.info("Starting GPIO companion bridge...")

    identity_conf = config.get("identity", {})
    board_identity = BoardIdentity(identity_conf.get("path", "board.yaml"), key=identity_conf.get("key", "board_identifier"))
    try:
        board_id = board_identity.get_or_create()
    except StorageUnavailable as e:
        # No identity means no topic to listen on.
        logger.critical(f"Board identity unavailable, cannot start: {e}")
        raise SystemExit(1)

    loop = asyncio.get_running_loop()

    # The dispatcher needs the publisher and the manager needs the worker,
    # so the connection is built last and bound in afterwards.
    pins = PinManager()
    connection: Optional[ConnectionManager] = None

    def publish(topic: str, payload: bytes):
        connection.publish(topic, payload)

    dispatcher = CommandDispatcher(board_identity, pins, publish,
                                   event_topic_template=config.get("event_topic", "{board_id}_events"))
    pins.publish_event = dispatcher.publish_event
    worker = BridgeWorker(handler=dispatcher.on_message, maxsize=int(config.get("inbound_queue_size", 100)))
    connection = ConnectionManager(config=config, board_identity=board_identity, on_message=worker.submit)

    log_banner(board_id, connection)

    # Start Services
    worker.start_worker_thread()
    await connection.start()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(
            sig,
            lambda s=sig: asyncio.create_task(shutdown(s.name, loop, connection, dispatcher, pins, worker))
        )

    logger.info("Bridge is fully operational. Press Ctrl+C to exit.")

    try:
        await asyncio.Future()
    except asyncio.CancelledError:
        pass


def main(argv=None):
    parser = argparse.ArgumentParser(description="Bridge MQTT pin commands to this board's GPIO pins.")
    parser.add_argument("-c", "--config", default=None, help=f"path to config.yaml (default: {DEFAULT_CONFIG_PATH})")
    args = parser.parse_args(argv)
    try:
        asyncio.run(main_application_runner(args.config))
    except KeyboardInterrupt:
        pass
    except RuntimeError as e:
        # loop.stop() from shutdown() ends asyncio.run() this way
        if "Event loop stopped before Future completed" not in str(e):
            raise
    return 0


if __name__ == "__main__":
    sys.exit(main())
