"""Shared fixtures for StackMind tests."""

import pytest
import pytest_asyncio
from loguru import logger

from stackmind.daemon.bus import EventBus
from stackmind.daemon.config import PipelineConfig
from stackmind.daemon.pipeline import EnrichmentPipeline
from stackmind.daemon.store import RecordStore
from stackmind.daemon.tasks import TaskTable
from stackmind.tests.fakes import EventRecorder, FakeEmbedder, FakeGenerator


@pytest.fixture
def caplog_loguru(caplog):
    """Route loguru records into pytest's caplog."""
    handler_id = logger.add(caplog.handler, format="{message}", level="DEBUG")
    yield caplog
    logger.remove(handler_id)


@pytest.fixture
def data_path(tmp_path):
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest_asyncio.fixture
async def store(data_path):
    store = RecordStore(data_path)
    await store.initialize()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def bus():
    bus = EventBus()
    await bus.start()
    yield bus
    await bus.stop()


@pytest.fixture
def recorder(bus):
    recorder = EventRecorder()
    bus.subscribe("task.*", recorder)
    return recorder


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def pipeline_config():
    return PipelineConfig(step_timeout_s=1.0, grace_period_s=60.0)


@pytest_asyncio.fixture
async def pipeline(store, data_path, generator, bus, pipeline_config):
    pipeline = EnrichmentPipeline(
        store=store,
        tasks=TaskTable(data_path),
        generator=generator,
        bus=bus,
        config=pipeline_config,
    )
    yield pipeline
    await pipeline.close()
