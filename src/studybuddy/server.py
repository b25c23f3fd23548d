"""
StudyBuddy - Message channel server entry point.

Wires the conversation store, the public key directory and the message
channel together from configuration, sets up logging and runs the channel
until it receives a termination signal.
"""

import argparse
import asyncio
import logging
import platform
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

from .channel import MessageChannel
from .config import Config
from .constants import (
    APP_NAME,
    LOG_BACKUP_COUNT,
    LOG_DATE_FORMAT,
    LOG_FILENAME,
    LOG_FORMAT,
    LOG_MAX_BYTES,
    LOGS_DIR,
    VERSION,
)
from .directory import UserDirectory
from .errors import StudyBuddyError
from .presence import PresenceTable
from .store import ConversationStore

logger = logging.getLogger(__name__)


def configure_logging(config: Config, data_dir: Path, debug: bool = False) -> None:
    """
    Configure root logging for the channel process.

    Console output goes through rich; file output (if enabled) rotates
    under ``<data_dir>/logs``.
    """
    level_name = "DEBUG" if debug else str(config.get("logging", "level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    if config.get("logging", "console_logging", True):
        console_handler = RichHandler(
            console=Console(stderr=True), show_path=debug, rich_tracebacks=True
        )
        console_handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        root.addHandler(console_handler)

    if config.get("logging", "file_logging", False):
        logs_dir = data_dir / LOGS_DIR
        logs_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            logs_dir / LOG_FILENAME, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
        root.addHandler(file_handler)


class ChannelServer:
    """Owns the storage backends and the message channel for one process."""

    def __init__(self, config: Config, data_dir: Path):
        """
        Initialize server.

        Args:
            config: Loaded configuration
            data_dir: Directory holding the databases and logs
        """
        self.config = config
        self.data_dir = data_dir

        self.store = ConversationStore(data_dir / config.get("storage", "conversations_db"))
        self.directory = UserDirectory(data_dir / config.get("storage", "directory_db"))
        self.channel = MessageChannel(
            self.store,
            self.directory,
            presence=PresenceTable(),
            host=config.get("channel", "host"),
            port=config.get("channel", "port"),
            read_timeout=config.get("channel", "read_timeout"),
        )

    async def start(self) -> bool:
        """
        Start the channel and install signal handlers.

        Returns:
            True if the channel is listening, False on startup failure
        """
        try:
            await self.channel.start()
        except StudyBuddyError as e:
            logger.error(f"Failed to start channel: {e}")
            self.close()
            return False

        signal.signal(signal.SIGINT, self._signal_handler)
        if platform.system() == "Windows":
            signal.signal(signal.SIGBREAK, self._signal_handler)
        else:
            signal.signal(signal.SIGTERM, self._signal_handler)

        logger.info(f"{APP_NAME} channel {VERSION} on {self.channel.host}:{self.channel.port}")
        logger.info(f"Data directory: {self.data_dir}")
        return True

    async def run(self) -> None:
        """Serve until a termination signal arrives, then release storage."""
        try:
            await self.channel.run()
        finally:
            self.close()

    def close(self) -> None:
        self.store.close()
        self.directory.close()

    def _signal_handler(self, signum, frame):
        """Handle termination signals."""
        logger.info(f"Received signal {signum}, shutting down...")
        self.channel.running = False


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=f"{APP_NAME} - end-to-end encrypted message channel"
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config.toml (default: <data dir>/config.toml)",
    )
    parser.add_argument(
        "--data-dir",
        type=str,
        default=None,
        help="Data directory for conversation and directory databases",
    )
    parser.add_argument("--host", type=str, default=None, help="Interface to listen on")
    parser.add_argument("--port", type=int, default=None, help="TCP port to listen on")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    return parser


async def async_main(argv: Optional[list] = None) -> int:
    """Async main entry point for the channel server."""
    args = build_parser().parse_args(argv)

    try:
        config = Config(Path(args.config).expanduser() if args.config else None)
    except StudyBuddyError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    if args.data_dir:
        config.set("storage", "data_dir", args.data_dir)
    if args.host:
        config.set("channel", "host", args.host)
    if args.port is not None:
        config.set("channel", "port", args.port)

    data_dir = config.data_dir.resolve()
    data_dir.mkdir(parents=True, exist_ok=True)
    configure_logging(config, data_dir, debug=args.debug)

    try:
        server = ChannelServer(config, data_dir)
    except StudyBuddyError as e:
        logger.error(f"Failed to open storage: {e}")
        return 1

    if not await server.start():
        return 1

    await server.run()
    return 0


def main():
    """Main entry point - runs async_main."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
