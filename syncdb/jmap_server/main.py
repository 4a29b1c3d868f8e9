"""
SyncDB Server - Main entry point.

This module starts the SyncDB server for one account:
- Record store (SQLite or in-memory), provisioned with the mail schema
- SyncEngine and Dispatcher for that account
- HTTP server

Usage:
    python -m syncdb.jmap_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The registry is frozen and the store provisioned before serving
    - The engine is owned by the Server and handed to the Dispatcher;
      there is no module-level instance
    - Graceful shutdown stops the HTTP server before closing the store

How to change safely:
    - Add new components to start() and stop() in mirrored order
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import json_log_formatter

from .api import Dispatcher, HttpServer
from .config import ServerConfig, StorageBackend
from .engine import SyncEngine
from .schema import build_mail_registry
from .store import RecordStore, create_record_store

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
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
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


class Server:
    """SyncDB Server orchestrator.

    Manages the lifecycle of all server components:
    - Record store
    - Sync engine and dispatcher
    - HTTP server

    Attributes:
        config: Server configuration
        store: Record store of the account
        engine: Sync engine for the account
        dispatcher: Method dispatcher bound to the engine
        http_server: HTTP adapter

    Example:
        >>> server = Server(config)
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.store: RecordStore | None = None
        self.engine: SyncEngine | None = None
        self.dispatcher: Dispatcher | None = None
        self.http_server: HttpServer | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start all components. Returns once the HTTP server is listening."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting SyncDB server")
        self.config.log_config()

        try:
            if self.config.storage.backend == StorageBackend.SQLITE:
                Path(self.config.storage.data_dir).mkdir(parents=True, exist_ok=True)

            registry = build_mail_registry()
            logger.info(f"Schema registry frozen, fingerprint: {registry.fingerprint}")

            self.store = create_record_store(self.config.storage, self.config.account_id)
            await self.store.provision(registry)

            self.engine = SyncEngine(
                account_id=self.config.account_id,
                store=self.store,
                registry=registry,
                max_objects_in_get=self.config.limits.max_objects_in_get,
                max_changes=self.config.limits.max_changes,
            )
            self.dispatcher = Dispatcher(self.engine, registry)

            self.http_server = HttpServer(self.dispatcher, self.config.http)
            await self.http_server.start()

            self._running = True
            logger.info(
                "SyncDB server started successfully",
                extra={"account_id": self.config.account_id, "methods": self.dispatcher.method_names},
            )

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def run(self) -> None:
        """Start, then serve until request_shutdown() is called."""
        await self.start()
        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the server gracefully, including after a failed start."""
        if self.store is None:
            return

        logger.info("Stopping SyncDB server")

        if self.http_server:
            await self.http_server.stop()

        if self.store:
            await self.store.close()

        self._running = False
        logger.info("SyncDB server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config)

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    # Create server
    server = Server(config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    # Run server
    try:
        loop.run_until_complete(server.run())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
