"""
Shared fixtures: a temp-file SQLite database, an in-memory queue and an
engine wired the way core.container wires it.
"""

import pytest

from core.config import Settings
from core.database import Database
from services.engine import Engine, EventBus, StepWorker
from services.plugins import PluginExecutor
from services.queue import MemoryWorkQueue


@pytest.fixture
def settings(tmp_path):
    """Fast settings: tiny backoff and a low inline delay threshold"""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}",
        default_backoff_ms=1,
        delay_inline_threshold_ms=20,
        plugin_timeout_ms=5000,
    )


@pytest.fixture
async def database(settings):
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


@pytest.fixture
def queue():
    return MemoryWorkQueue(keep_failed_jobs=10)


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def plugins(settings):
    return PluginExecutor(settings)


@pytest.fixture
def engine(database, queue, plugins, events, settings):
    return Engine(database=database, queue=queue, plugins=plugins, events=events, settings=settings)


@pytest.fixture
def worker(engine, queue):
    return StepWorker(engine, queue, concurrency=1, poll_interval=0.05)


@pytest.fixture
def drain(worker):
    """Process queued jobs inline until nothing becomes ready within the timeout"""
    async def _drain(max_jobs: int = 200, timeout: float = 0.3) -> int:
        processed = 0
        while processed < max_jobs and await worker.run_once(timeout=timeout):
            processed += 1
        return processed
    return _drain


@pytest.fixture
def start_run(engine):
    """Store a definition as workflow "wf" and start a run of it"""
    async def _start(definition, trigger_input=None, workflow_id: str = "wf") -> str:
        await engine.create_workflow_version(workflow_id, definition)
        return await engine.start_execution(workflow_id, trigger_input or {})
    return _start


def node(node_id: str, node_type: str = "TEXT_TRANSFORM", **config):
    return {"id": node_id, "type": node_type, "config": config}


def edge(source: str, target: str, condition=None):
    data = {"from": source, "to": target}
    if condition is not None:
        data["condition"] = condition
    return data
