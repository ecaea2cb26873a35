"""Main daemon process for StackMind."""

import asyncio
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import psutil
from aiohttp import web
from loguru import logger

from .api import create_api_app
from .bus import EventBus
from .config import Config
from .messages import MessageRouter
from .pipeline import EnrichmentPipeline
from .providers import EmbeddingProvider, TextGenerator, build_embedder, build_generator
from .search import SemanticSearchEngine
from .store import RecordStore
from .tasks import TaskTable

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


class StackMindDaemon:
    """Main daemon coordinating all services."""

    def __init__(
        self,
        config: Config,
        generator: Optional[TextGenerator] = None,
        embedder: Optional[EmbeddingProvider] = None,
    ):
        self.config = config
        self.start_time = datetime.utcnow()

        # Core services, wired explicitly
        self.event_bus = EventBus()
        self.store = RecordStore(config.data_path, compact_after=config.store.compact_after)
        self.tasks = TaskTable(config.data_path)
        self.generator = generator or build_generator(config.llm)
        self.embedder = embedder or build_embedder(config.embedding)
        self.pipeline = EnrichmentPipeline(
            store=self.store,
            tasks=self.tasks,
            generator=self.generator,
            bus=self.event_bus,
            config=config.pipeline,
            embedder=self.embedder,
            embed_on_capture=config.embedding.embed_on_capture,
        )
        self.search_engine = SemanticSearchEngine(
            self.store, self.embedder, default_top_k=config.search.default_top_k
        )
        self.router = MessageRouter(self.store, self.pipeline, self.search_engine, self.generator)

        # HTTP API
        self.api_app = None
        self.api_runner = None
        self.api_site = None

    async def start(self, serve_api: bool = True) -> None:
        """Start all daemon services."""
        logger.info("Starting StackMind daemon...")

        await self.event_bus.start()
        await self.store.initialize()
        if self.config.pipeline.resume_on_start:
            resumed = await self.pipeline.resume()
            if resumed:
                logger.info(f"Resumed {resumed} background tasks")

        if serve_api:
            await self._start_api()

        logger.info("StackMind daemon started successfully")

    async def stop(self) -> None:
        """Stop all daemon services."""
        logger.info("Stopping StackMind daemon...")

        if self.api_site:
            await self.api_site.stop()
            self.api_site = None
        if self.api_runner:
            await self.api_runner.cleanup()
            self.api_runner = None

        await self.pipeline.close()
        await self.store.close()
        close = getattr(self.generator, "close", None)
        if close is not None:
            await close()
        await self.event_bus.stop()

        logger.info("StackMind daemon stopped")

    async def _start_api(self) -> None:
        """Start the HTTP API server."""
        self.api_app = create_api_app(self)
        self.api_runner = web.AppRunner(self.api_app)
        await self.api_runner.setup()

        self.api_site = web.TCPSite(
            self.api_runner,
            self.config.api.host,
            self.config.api.port
        )
        await self.api_site.start()

        logger.info(f"API server started on http://{self.config.api.host}:{self.config.api.port}")

    def llm_health(self) -> str:
        breaker = getattr(self.generator, "breaker", None)
        return breaker.health.state.value if breaker else "unknown"

    async def get_status(self) -> dict:
        """Get daemon status and statistics."""
        process = psutil.Process()
        uptime = (datetime.utcnow() - self.start_time).total_seconds()

        return {
            "status": "running",
            "version": "0.1.0",
            "uptime": f"{uptime:.0f}s",
            "stats": {
                "records": await self.store.count(),
                "active_tasks": len(self.pipeline.active_tasks()),
                "pipeline": dict(self.pipeline.stats),
                "search": dict(self.search_engine.stats),
                "events": self.event_bus.get_stats(),
                "memory_mb": process.memory_info().rss / 1024 / 1024,
                "cpu_percent": process.cpu_percent(),
            },
            "llm": self.llm_health(),
            "embeddings_ready": self.embedder.is_ready,
            "config": {
                "data_path": str(self.config.data_path),
                "llm_model": self.config.llm.model,
                "embedding_model": self.config.embedding.model,
            },
        }


def setup_logging(config: Config) -> None:
    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level=config.logging.level)

    log_dir = config.logging.log_dir
    if log_dir:
        log_dir = Path(log_dir).expanduser()
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_dir / "daemon.log",
            rotation="1 day",
            retention="7 days",
            level="DEBUG"
        )


async def main(config_path: Optional[str] = None, data_path: Optional[str] = None):
    """Main entry point for the daemon."""
    try:
        if config_path:
            config = Config.load(Path(config_path))
        elif data_path:
            config = Config(data_path=Path(data_path))
        else:
            config = Config.load()
    except FileNotFoundError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    setup_logging(config)

    daemon = StackMindDaemon(config)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await daemon.start()
        await stop_event.wait()
        logger.info("Shutdown signal received")
    except Exception as e:
        logger.exception(f"Daemon error: {e}")
    finally:
        await daemon.stop()


if __name__ == "__main__":
    asyncio.run(main())
