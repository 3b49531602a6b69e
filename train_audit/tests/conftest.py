"""
Centralized Test Configuration.
"""

import asyncio
import pytest
from httpx import AsyncClient, ASGITransport

from train_audit.app.main import app
from train_audit.app.core.config import Settings
from train_audit.app.core.exceptions import NetworkFailureError
from train_audit.app.db.session import get_db, create_engine, create_session_factory, create_tables
from train_audit.app.schemas.telemetry import TelemetryRecord, Position, PositionFix, utcnow
from train_audit.app.services.record_store import RecordStore
from train_audit.app.services.recorder import BackgroundRecorder
from train_audit.app.services.status_reporter import StatusReporter
from train_audit.app.services.strategies import HostCapabilities


class FakeSink:
    """In-memory sink recording every submission."""
    
    def __init__(self, ack=None, fail=False):
        self.calls = []
        self.ack = ack  # callable(ids) -> set of acknowledged ids, or None
        self.fail = fail
        self.gate = None
        self.closed = False
    
    async def submit(self, records):
        ids = [record.id for record in records]
        self.calls.append(ids)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise NetworkFailureError("Sink returned HTTP 500", details={"status_code": 500})
        return self.ack(ids) if self.ack else None
    
    async def aclose(self):
        self.closed = True


def make_record(lat=-34.6, lng=-58.38, **kwargs) -> TelemetryRecord:
    return TelemetryRecord(
        captured_at=kwargs.pop("captured_at", utcnow()),
        position=Position(latitude=lat, longitude=lng, speed=kwargs.pop("speed", 10.0), accuracy=5.0),
        **kwargs
    )


def make_fix(lat=-34.6, lng=-58.38) -> PositionFix:
    return PositionFix(latitude=lat, longitude=lng, speed=12.5, heading=90.0, accuracy=8.0)


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'recorder.db'}"


@pytest.fixture
async def engine(database_url):
    engine = create_engine(database_url)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def store(engine):
    return RecordStore(create_session_factory(engine))


@pytest.fixture
def reporter():
    return StatusReporter()


@pytest.fixture
def fake_sink():
    return FakeSink()


@pytest.fixture
def test_settings(database_url):
    return Settings(
        database_url=database_url,
        sync_interval_ms=0,
        max_stored_records=0,
        record_interval_ms=10000,
        sync_threshold=10,
        auto_resume=True,
    )


@pytest.fixture
async def recorder(engine, test_settings, fake_sink):
    """Foreground-only recorder over the test store."""
    recorder = BackgroundRecorder(
        test_settings,
        engine=engine,
        sink_factory=lambda: fake_sink,
        capabilities=HostCapabilities(),
    )
    await recorder.start()
    yield recorder
    await recorder.shutdown()


@pytest.fixture
async def client(engine, recorder):
    """Async client for testing, wired to the test recorder and store."""
    session_factory = create_session_factory(engine)
    
    async def override_get_db():
        async with session_factory() as session:
            yield session
    
    app.dependency_overrides[get_db] = override_get_db
    app.state.recorder = recorder
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides = {}
    app.state.recorder = None


async def wait_until(predicate, timeout=5.0, interval=0.02):
    """Poll ``predicate`` (sync or async) until truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return result
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
