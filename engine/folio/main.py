"""
Folio Server - Main entry point.

This module starts the Folio server:
- Workspace (SQLite entity store + change notifier transport)
- HTTP API (FastAPI served by uvicorn)

Usage:
    python -m engine.folio.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The workspace is open before the HTTP server accepts requests
    - Graceful shutdown stops HTTP first, then closes the notifier

How to change safely:
    - Test the shutdown sequence when adding components
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter
import uvicorn

from .api import Settings, create_app
from .config import ServerConfig
from .workspace import Workspace

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiokafka").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


class Server:
    """Folio server orchestrator.

    Attributes:
        config: Server configuration
        workspace: Workspace served over HTTP

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running until request_shutdown()
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

        self.workspace: Workspace | None = None
        self._http: uvicorn.Server | None = None
        self._http_task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start the server and wait for shutdown."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting Folio server")
        self.config.log_config()

        try:
            self.workspace = Workspace.from_config(self.config)
            await self.workspace.open()
            logger.info("Workspace ready")

            settings = Settings(cors_origins=list(self.config.http.cors_origins))
            app = create_app(self.workspace, settings)
            self._http = uvicorn.Server(
                uvicorn.Config(
                    app,
                    host=self.config.http.host,
                    port=self.config.http.port,
                    log_config=None,
                )
            )
            self._http_task = asyncio.create_task(self._http.serve())

            self._running = True
            logger.info(
                "Folio server started",
                extra={"http_bind": f"{self.config.http.host}:{self.config.http.port}"},
            )

            shutdown = asyncio.create_task(self._shutdown_event.wait())
            await asyncio.wait({self._http_task, shutdown}, return_when=asyncio.FIRST_COMPLETED)
            shutdown.cancel()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if self._http is not None:
            self._http.should_exit = True
        if self._http_task is not None:
            await asyncio.gather(self._http_task, return_exceptions=True)
            self._http_task = None

        if self.workspace is not None:
            await self.workspace.close()

        if self._running:
            self._running = False
            logger.info("Folio server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
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
