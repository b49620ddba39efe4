"""
Main entry point for the STREAM-LEASE consumer.

Loads configuration, wires stores, event source, lease manager and
dispatcher together, serves the status API and handles graceful shutdown.
Fatal dispatcher errors end the process with a non-zero exit code.
"""

import asyncio
import signal
import sys
from typing import List, Optional

import structlog
import uvicorn

from .api import create_app
from .config import ConfigurationError, StreamLeaseConfig, load_config, validate_config_at_startup
from .dispatcher import DispatcherFatalError, PartitionDispatcher, ShutdownTimeoutError
from .event_source import EventSource, InMemoryEventSource
from .lease_manager import LeaseManager
from .logging_config import ErrorContext, configure_logging
from .processor import EventProcessor, LoggingProcessor
from .storage import CheckpointStoreInterface, LeaseStoreInterface
from .storage_factory import (
    close_storage_backends,
    create_storage_backends,
    initialize_storage_backends,
)
from .telemetry import TelemetrySink, create_telemetry_sink

logger = structlog.get_logger(__name__)


def create_event_source(config: StreamLeaseConfig) -> EventSource:
    """Build the event source selected by source_mode."""
    if config.source_mode == "eventhub":
        from .eventhub_source import EventHubSource
        return EventHubSource(config)
    return InMemoryEventSource(config.partition_ids or ["0"])


class StreamLeaseApplication:
    """
    Main STREAM-LEASE application class.

    Owns every component of one consumer process; nothing is kept in
    module-level state.
    """

    def __init__(
        self,
        config: Optional[StreamLeaseConfig] = None,
        processor: Optional[EventProcessor] = None,
        event_source: Optional[EventSource] = None
    ):
        self.config = config
        self.processor = processor or LoggingProcessor()
        self.event_source = event_source
        self.lease_store: Optional[LeaseStoreInterface] = None
        self.checkpoint_store: Optional[CheckpointStoreInterface] = None
        self.telemetry: Optional[TelemetrySink] = None
        self.lease_manager: Optional[LeaseManager] = None
        self.dispatcher: Optional[PartitionDispatcher] = None
        self.fastapi_app = None
        self.uvicorn_server: Optional[uvicorn.Server] = None
        self.shutdown_event = asyncio.Event()

    async def initialize(self) -> None:
        """
        Load configuration and build all components.

        Raises:
            ConfigurationError: If configuration is invalid
            StorageError: If a store cannot be initialized
        """
        if self.config is None:
            self.config = load_config()
        configure_logging(self.config)
        validate_config_at_startup(self.config)

        logger.info(
            "Configuration loaded and validated successfully",
            consumer_id=self.config.consumer_id,
            storage_mode=self.config.storage_mode,
            source_mode=self.config.source_mode,
            balancing_mode=self.config.balancing_mode,
            lease_duration_seconds=self.config.lease_duration_seconds,
            renew_interval_seconds=self.config.effective_renew_interval_seconds,
        )

        with ErrorContext(logger, "initialize_storage", storage_mode=self.config.storage_mode):
            self.lease_store, self.checkpoint_store = create_storage_backends(self.config)
            await initialize_storage_backends(self.lease_store, self.checkpoint_store)

        if self.event_source is None:
            self.event_source = create_event_source(self.config)

        self.telemetry = create_telemetry_sink(self.config)
        self.lease_manager = LeaseManager(self.lease_store, self.config, self.telemetry)
        self.dispatcher = PartitionDispatcher(
            self.lease_manager,
            self.checkpoint_store,
            self.event_source,
            self.processor,
            self.config,
            self.telemetry,
        )

        if self.config.api_enabled:
            self.fastapi_app = create_app(
                self.dispatcher, self.lease_store, self.checkpoint_store, self.config
            )

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._signal_handler, sig)
            except NotImplementedError:
                signal.signal(sig, lambda signum, frame: self._signal_handler(signum))

    def _signal_handler(self, signum: int) -> None:
        """Handle shutdown signals gracefully."""
        logger.info(f"Received signal {signum}, initiating shutdown")
        if self.uvicorn_server:
            self.uvicorn_server.should_exit = True
        self.shutdown_event.set()

    async def run(self) -> None:
        """
        Run the dispatcher (and the status API when enabled) until shutdown.

        Raises:
            DispatcherFatalError: If the dispatcher gave up
            ShutdownTimeoutError: If workers outlived the grace period
        """
        await self.telemetry.start()
        self._install_signal_handlers()

        tasks: List[asyncio.Task] = []
        dispatcher_task = asyncio.create_task(
            self.dispatcher.run(self.shutdown_event), name="partition_dispatcher"
        )
        tasks.append(dispatcher_task)

        server_task = None
        if self.fastapi_app is not None:
            self.uvicorn_server = uvicorn.Server(uvicorn.Config(
                app=self.fastapi_app,
                host=self.config.api_host,
                port=self.config.api_port,
                log_level=self.config.log_level.lower(),
                access_log=False,
                loop="asyncio",
            ))
            server_task = asyncio.create_task(self.uvicorn_server.serve(), name="status_api")
            tasks.append(server_task)
            logger.info(
                f"Status API listening on {self.config.api_host}:{self.config.api_port}",
                api_host=self.config.api_host,
                api_port=self.config.api_port,
            )

        shutdown_waiter = asyncio.create_task(self.shutdown_event.wait(), name="shutdown_waiter")
        tasks.append(shutdown_waiter)

        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            self.shutdown_event.set()
            if self.uvicorn_server:
                self.uvicorn_server.should_exit = True
            if server_task is not None:
                await asyncio.gather(server_task, return_exceptions=True)
            shutdown_waiter.cancel()

        await dispatcher_task

    async def stop(self) -> None:
        """Flush telemetry and close the event source and the stores."""
        logger.info("STREAM-LEASE application stopping")

        if self.telemetry is not None:
            await self.telemetry.stop()

        if self.event_source is not None:
            try:
                await self.event_source.close()
            except Exception as e:
                logger.error(f"Error closing event source: {e}")

        if self.lease_store is not None:
            await close_storage_backends(self.lease_store, self.checkpoint_store)

        logger.info("STREAM-LEASE application stopped")


async def async_main() -> None:
    """Async main function for running the consumer."""
    app = StreamLeaseApplication()
    try:
        await app.initialize()
        await app.run()
    finally:
        await app.stop()


def main() -> None:
    """
    Console script entry point.

    Exits non-zero on configuration errors and fatal dispatcher errors.
    """
    try:
        asyncio.run(async_main())
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
        sys.exit(0)
    except ConfigurationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)
    except (DispatcherFatalError, ShutdownTimeoutError) as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
