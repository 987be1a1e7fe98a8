"""
Chronos Server - Main entry point.

Starts the Chronos engine with its background loops:
- Counter rollup loop (when rollup is enabled)
- Retention sweeper loop (when the sweeper is enabled)

and keeps the process alive until SIGINT/SIGTERM, then drains buffered writes
and closes every pooled connection.

Usage:
    python -m dbaas.chronos_server.main

Configuration comes from the environment (CHRONOS_CONFIG_FILE or the
single-database variables). See config.py for all available settings.

Invariants:
    - Invalid configuration aborts startup before any connection is opened
    - Shutdown runs exactly once, whether triggered by signal or failure
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter

from .config import ChronosConfig
from .engine import Chronos
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


def setup_logging(config: ChronosConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Engine configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)


class Server:
    """Chronos process orchestrator.

    Example:
        >>> server = Server(config)
        >>> await server.start()  # returns after request_shutdown()
        >>> await server.stop()
    """

    def __init__(self, config: ChronosConfig | None = None) -> None:
        self.config = config or ChronosConfig.from_env()
        self.chronos: Chronos | None = None
        self._running = False
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Start the engine and wait for a shutdown request."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting Chronos server")
        self.config.log_config()

        try:
            self.chronos = Chronos(self.config)
            await self.chronos.start()
            self._running = True
            logger.info("Chronos server started successfully")

            await self._shutdown_event.wait()
        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if self.chronos is None:
            return
        logger.info("Stopping Chronos server")
        await self.chronos.admin.shutdown()
        self._running = False
        logger.info("Chronos server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ChronosConfig.from_env()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    server = Server(config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
