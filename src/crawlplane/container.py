"""
Dependency injection container for the control plane components.
"""

from __future__ import annotations

import asyncio
import signal
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Dict, Generic, List, Optional, TypeVar
from uuid import uuid4

import structlog
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from crawlplane.config import Config

if TYPE_CHECKING:
    from crawlplane.crawler import AccountPool, HostRateControllers, RateController, RobotsPolicyEngine
    from crawlplane.messaging import InMemoryBroker, TaskStatusConsumer
    from crawlplane.observability import MetricsManager
    from crawlplane.stats import HourlyStatsStore, SQLiteStatsStore
    from crawlplane.task_store import InMemoryTaskStore

T = TypeVar("T")


class LazyInstance(Generic[T]):
    """Lazy-loaded instance with lifecycle management."""

    def __init__(self, factory: Callable[..., T], *args: Any, **kwargs: Any) -> None:
        self._factory = factory
        self._args = args
        self._kwargs = kwargs
        self._instance: Optional[T] = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def get(self) -> T:
        """Get or create the instance."""
        if not self._initialized:
            self._instance = self._factory(*self._args, **self._kwargs)
            if callable(getattr(self._instance, "initialize", None)):
                await self._instance.initialize()  # type: ignore
            self._initialized = True
        assert self._instance is not None
        return self._instance

    async def cleanup(self) -> None:
        """Clean up the instance."""
        if self._instance is not None and callable(getattr(self._instance, "close", None)):
            await self._instance.close()  # type: ignore
        self._instance = None
        self._initialized = False


class ConfigWatcher(FileSystemEventHandler):
    """Watches the configuration file for changes."""

    def __init__(self, container: DependencyContainer, loop: asyncio.AbstractEventLoop) -> None:
        self.container = container
        self.loop = loop
        self.logger = structlog.get_logger(self.__class__.__name__)

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory or self.container.config_path is None:
            return
        if Path(str(event.src_path)).resolve() != self.container.config_path.resolve():
            return
        self.logger.info("Configuration file changed, reloading", path=event.src_path)
        # watchdog calls us from its own thread
        asyncio.run_coroutine_threadsafe(self.container.reload_config(), self.loop)


class DependencyContainer:
    """
    Wires the rate controller, robots engine, account pool, stats stores,
    broker and consumer from one configuration. Provides lazy initialization,
    lifecycle management, and configuration hot-reloading.
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        config: Optional[Config] = None,
        watch_config: bool = False,
        install_signal_handlers: bool = False,
    ) -> None:
        self.config_path = config_path
        self.config: Optional[Config] = config
        self.watch_config = watch_config
        self.install_signal_handlers = install_signal_handlers
        self.logger = structlog.get_logger(self.__class__.__name__)

        self._instances: Dict[str, LazyInstance[Any]] = {}
        self._instances_lock = asyncio.Lock()
        self._observer: Optional[Any] = None
        self._shutdown_handlers: List[Callable[[], Any]] = []

        self.instance_id = str(uuid4())
        self.is_running = False

    async def initialize(self) -> None:
        """Initialize the container and load configuration."""
        if self.config is None:
            await self.load_config()
        else:
            await self._create_instances()

        if self.watch_config:
            await self._setup_config_watching()
        if self.install_signal_handlers:
            await self._setup_signal_handlers()

        self.is_running = True
        self.logger.info(
            "Dependency container initialized",
            instance_id=self.instance_id,
            config_path=str(self.config_path) if self.config_path else "default",
        )

    async def load_config(self) -> None:
        """Load or reload configuration."""
        if self.config_path and self.config_path.exists():
            self.config = Config.from_yaml(self.config_path)
        else:
            self.config = Config()

        await self._create_instances()

    async def _create_instances(self) -> None:
        """Create lazy instances with current configuration."""
        if self.config is None:
            raise RuntimeError("Configuration must be loaded before creating instances")

        await self._cleanup_instances()
        self._instances.clear()

        from crawlplane.crawler import AccountPool, HostRateControllers, RateController, RobotsPolicyEngine
        from crawlplane.messaging import InMemoryBroker
        from crawlplane.observability import MetricsManager
        from crawlplane.stats import HourlyStatsStore, SQLiteStatsStore
        from crawlplane.task_store import InMemoryTaskStore

        config = self.config
        self._instances = {
            "metrics": LazyInstance(MetricsManager, config.monitoring),
            "rate_controller": LazyInstance(RateController, config.rate_monitoring),
            "host_rates": LazyInstance(HostRateControllers, config.rate_monitoring),
            "robots": LazyInstance(RobotsPolicyEngine, config.robots),
            "accounts": LazyInstance(AccountPool, config.accounts),
            "stats_store": LazyInstance(
                SQLiteStatsStore, config.stats.db_path, max_samples=config.stats.max_processing_time_samples
            ),
            "hourly_stats": LazyInstance(
                HourlyStatsStore,
                config.stats.db_path.parent / "hourly_stats.db",
                max_query_days=config.stats.max_query_days,
                retention_days=config.stats.hourly_retention_days,
            ),
            "broker": LazyInstance(InMemoryBroker),
            "task_store": LazyInstance(InMemoryTaskStore),
            "consumer": LazyInstance(_ConsumerHandle, self),
        }

    async def reload_config(self) -> None:
        """Hot-reload configuration and reinitialize affected modules."""
        old_config = self.config
        async with self._instances_lock:
            await self.load_config()

        self.logger.info(
            "Configuration reloaded",
            instance_id=self.instance_id,
            changes_detected=old_config != self.config,
        )

    async def _get(self, name: str) -> Any:
        async with self._instances_lock:
            return await self._instances[name].get()

    async def get_metrics(self) -> MetricsManager:
        return await self._get("metrics")  # type: ignore[no-any-return]

    async def get_rate_controller(self) -> RateController:
        return await self._get("rate_controller")  # type: ignore[no-any-return]

    async def get_host_rates(self) -> HostRateControllers:
        return await self._get("host_rates")  # type: ignore[no-any-return]

    async def get_robots(self) -> RobotsPolicyEngine:
        return await self._get("robots")  # type: ignore[no-any-return]

    async def get_accounts(self) -> AccountPool:
        return await self._get("accounts")  # type: ignore[no-any-return]

    async def get_stats_store(self) -> SQLiteStatsStore:
        return await self._get("stats_store")  # type: ignore[no-any-return]

    async def get_hourly_stats(self) -> HourlyStatsStore:
        return await self._get("hourly_stats")  # type: ignore[no-any-return]

    async def get_broker(self) -> InMemoryBroker:
        return await self._get("broker")  # type: ignore[no-any-return]

    async def get_task_store(self) -> InMemoryTaskStore:
        return await self._get("task_store")  # type: ignore[no-any-return]

    async def get_consumer(self) -> TaskStatusConsumer:
        handle = await self._get("consumer")
        return handle.consumer  # type: ignore[no-any-return]

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator[DependencyContainer]:
        """Context manager for proper lifecycle management."""
        try:
            await self.initialize()
            yield self
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Graceful shutdown of all managed instances."""
        if not self.is_running:
            return

        self.logger.info("Shutting down dependency container", instance_id=self.instance_id)

        if self._observer:
            self._observer.stop()
            self._observer.join()
            self._observer = None

        for handler in self._shutdown_handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler()
                else:
                    handler()
            except Exception as e:
                self.logger.error("Error in shutdown handler", error=str(e))

        await self._cleanup_instances()

        self.is_running = False
        self.logger.info("Dependency container shutdown complete")

    async def _setup_config_watching(self) -> None:
        """Set up file system watching for configuration changes."""
        if not self.config_path:
            return

        self._observer = Observer()
        handler = ConfigWatcher(self, asyncio.get_running_loop())
        self._observer.schedule(handler, str(self.config_path.parent), recursive=False)
        self._observer.start()

    async def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum: int) -> None:
            self.logger.info("Received signal, initiating shutdown", signal=signum)
            asyncio.ensure_future(self.shutdown())

        for signum in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(signum, signal_handler, signum)

    async def _cleanup_instances(self) -> None:
        """Clean up all managed instances, the consumer first."""
        for name in sorted(self._instances, key=lambda n: n != "consumer"):
            try:
                await self._instances[name].cleanup()
            except Exception as e:
                self.logger.error("Error cleaning up instance", instance=name, error=str(e))

    def add_shutdown_handler(self, handler: Callable[[], Any]) -> None:
        """Add a custom shutdown handler."""
        self._shutdown_handlers.append(handler)

    def get_health_status(self) -> Dict[str, Any]:
        """Get health status of all managed components."""
        return {
            "instance_id": self.instance_id,
            "is_running": self.is_running,
            "config_loaded": self.config is not None,
            "instances_count": len(self._instances),
            "initialized": sorted(name for name, lazy in self._instances.items() if lazy.initialized),
            "config_path": str(self.config_path) if self.config_path else None,
        }


class _ConsumerHandle:
    """
    Builds the consumer from the container's other instances on
    ``initialize()`` and stops it on ``close()``.
    """

    def __init__(self, container: DependencyContainer) -> None:
        self.container = container
        self.consumer: Optional[TaskStatusConsumer] = None

    async def initialize(self) -> None:
        from crawlplane.messaging import TaskStatusConsumer, get_consumer_settings

        container = self.container
        assert container.config is not None
        # Resolved without the container lock, which the caller already holds
        instances = container._instances
        self.consumer = TaskStatusConsumer(
            broker=await instances["broker"].get(),
            task_store=await instances["task_store"].get(),
            stats_store=await instances["stats_store"].get(),
            settings=get_consumer_settings(container.config.consumer),
            hourly_stats=await instances["hourly_stats"].get(),
        )

    async def close(self) -> None:
        if self.consumer is not None:
            await self.consumer.stop()
            self.consumer = None
