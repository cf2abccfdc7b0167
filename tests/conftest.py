"""
Pytest fixtures for TaskGate tests.
"""

import pytest
from httpx import ASGITransport, AsyncClient

from taskgate.config import Settings
from taskgate.observability.metrics import metrics
from taskgate.processors.registry import ProcessorRegistry
from taskgate.runtime import build_runtime

from fakes import (
    EchoProcessor,
    EmptyProcessor,
    FailingProcessor,
    GatedProcessor,
    PendingProcessor,
    ProcessorFailureProcessor,
    RaisingProcessor,
    RefLessPendingProcessor,
    SlowProcessor,
    FakeServiceClient,
)

pytest_plugins = ("pytest_asyncio",)

ACCOUNT = "acct-1"


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "database_url": f"sqlite+aiosqlite:///{tmp_path / 'taskgate.db'}",
        "worker_count": 2,
        "dispatch_interval_seconds": 0.05,
        "processor_timeout_seconds": 0.5,
        "external_poll_interval_seconds": 0,
        "recover_interrupted_on_start": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def processors() -> dict:
    return {
        "echo": EchoProcessor(),
        "gated": GatedProcessor(),
        "pending": PendingProcessor(ready_after=2),
    }


@pytest.fixture
def registry(processors) -> ProcessorRegistry:
    """Registry of fake task types; every one costs 5 credits unless noted."""
    registry = ProcessorRegistry()
    registry.register("echo", processors["echo"], credit_cost=5)
    registry.register("echo_approval", EchoProcessor(), credit_cost=5, requires_approval=True)
    registry.register("expensive", EchoProcessor(), credit_cost=10)
    registry.register("fail", FailingProcessor(), credit_cost=5)
    registry.register("raise", RaisingProcessor(), credit_cost=5)
    registry.register("upstream_error", ProcessorFailureProcessor(), credit_cost=5)
    registry.register("empty", EmptyProcessor(), credit_cost=5)
    registry.register("slow", SlowProcessor(), credit_cost=5)
    registry.register("gated", processors["gated"], credit_cost=5)
    registry.register("pending", processors["pending"], credit_cost=5)
    registry.register("pending_no_ref", RefLessPendingProcessor(), credit_cost=5)
    return registry


@pytest.fixture
def service_client() -> FakeServiceClient:
    return FakeServiceClient()


@pytest.fixture
async def runtime(settings, registry, service_client):
    """A runtime over a fresh SQLite file; workers are not started."""
    runtime = build_runtime(settings, service_client=service_client, registry=registry)
    await runtime.start(run_workers=False)
    yield runtime
    await runtime.stop()


@pytest.fixture
def engine(runtime):
    return runtime.engine


@pytest.fixture
def ledger(runtime):
    return runtime.ledger


@pytest.fixture
def executor(runtime):
    return runtime.executor


@pytest.fixture
def scheduler(runtime):
    return runtime.scheduler


@pytest.fixture
async def funded(ledger):
    """ACCOUNT topped up with 100 credits."""
    await ledger.topup(ACCOUNT, 100, note="test funding")
    return ACCOUNT


@pytest.fixture
def events(runtime):
    """Every lifecycle event published during the test, in order."""
    received = []

    async def record(event):
        received.append(event)

    runtime.bus.subscribe(record)
    return received


@pytest.fixture
async def client(runtime):
    """Async test client over the runtime; lifespan is driven by the fixture."""
    from taskgate.main import create_app

    app = create_app(runtime.settings, runtime=runtime, run_workers=False)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
