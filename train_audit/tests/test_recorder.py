"""
Background Recorder Tests.

Session persistence across restarts, the final sync on stop and the status
surface.
"""

import pytest

from train_audit.app.core.config import Settings
from train_audit.app.db.session import create_engine
from train_audit.app.schemas.telemetry import DerivedFields
from train_audit.app.services.recorder import BackgroundRecorder
from train_audit.app.services.status_reporter import StatusEvent
from train_audit.app.services.strategies import HostCapabilities

from conftest import FakeSink, make_record


async def boot(engine, cfg, sink=None):
    recorder = BackgroundRecorder(
        cfg,
        engine=engine,
        sink_factory=lambda: sink or FakeSink(),
        capabilities=HostCapabilities(),
    )
    await recorder.start()
    return recorder


@pytest.mark.asyncio
async def test_active_session_resumes_after_restart(engine, test_settings):
    first = await boot(engine, test_settings)
    session = await first.start_recording(5000, DerivedFields(trip_id="TRIP_7", route_line="L1"))
    # Unplanned restart: shutdown leaves the persisted flag alone
    await first.shutdown()
    
    second = await boot(engine, test_settings)
    try:
        assert second.is_recording
        assert second.session.interval_ms == 5000
        assert second.session.started_at == session.started_at
        assert second.session.derived.trip_id == "TRIP_7"
        assert second.strategy.sampler.is_active
    finally:
        await second.shutdown()


@pytest.mark.asyncio
async def test_explicit_stop_prevents_resume(engine, test_settings):
    first = await boot(engine, test_settings)
    await first.start_recording(5000)
    await first.stop_recording()
    await first.shutdown()
    
    second = await boot(engine, test_settings)
    try:
        assert not second.is_recording
        assert second.session.interval_ms == 5000
    finally:
        await second.shutdown()


@pytest.mark.asyncio
async def test_resume_disabled(engine, test_settings):
    first = await boot(engine, test_settings)
    await first.start_recording(5000)
    await first.shutdown()
    
    cfg = test_settings.model_copy(update={"auto_resume": False})
    second = await boot(engine, cfg)
    try:
        assert not second.is_recording
        assert await second.restore_session() is True
        assert second.is_recording
    finally:
        await second.shutdown()


@pytest.mark.asyncio
async def test_start_and_stop_raise_notifications(recorder):
    received = []
    recorder.reporter.add_notifier(lambda title, body: received.append((title, body)))
    
    await recorder.start_recording(1000)
    await recorder.start_recording(50)  # already active
    await recorder.stop_recording()
    await recorder.stop_recording()  # already stopped
    await recorder.queue.wait_for_sync()
    
    assert received == [
        ("Auditoría Ferroviaria", "Grabación en background iniciada"),
        ("Auditoría Ferroviaria", "Grabación en background detenida"),
    ]
    assert recorder.session.interval_ms == 1000


@pytest.mark.asyncio
async def test_default_trip_id_assigned(recorder):
    session = await recorder.start_recording(1000)
    assert session.derived.trip_id.startswith("BACKGROUND_")
    await recorder.stop_recording()


@pytest.mark.asyncio
async def test_stop_fires_final_sync(recorder, fake_sink):
    await recorder.start_recording(60000)
    for i in range(3):
        await recorder.queue.accept(make_record(lat=-34.0 - i * 0.01))
    
    await recorder.stop_recording()
    await recorder.queue.wait_for_sync()
    
    assert len(fake_sink.calls) == 1
    assert await recorder.store.count_undelivered() == 0
    assert recorder.last_sync.acknowledged == fake_sink.calls[0]


@pytest.mark.asyncio
async def test_sync_now_returns_result(recorder, fake_sink):
    assert (await recorder.sync_now()).status == "noop"
    await recorder.queue.accept(make_record())
    result = await recorder.sync_now("online")
    assert result.status == "success"
    assert len(fake_sink.calls) == 1


@pytest.mark.asyncio
async def test_failed_sync_leaves_records_pending(recorder, fake_sink):
    fake_sink.fail = True
    await recorder.queue.accept(make_record())
    result = await recorder.sync_now()
    
    assert result.status == "failed"
    status = await recorder.status()
    assert status["pending_records"] == 1
    assert status["last_sync"].status == "failed"
    assert len(status["recent_records"]) == 1


@pytest.mark.asyncio
async def test_status_reports_session(recorder):
    await recorder.start_recording(2500)
    status = await recorder.status()
    
    assert status["is_recording"] is True
    assert status["interval_ms"] == 2500
    assert status["strategy"] == "foreground_timer"
    assert status["pending_records"] == 0
    assert status["last_sync"] is None
    await recorder.stop_recording()


@pytest.mark.asyncio
async def test_unavailable_store_does_not_prevent_startup(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'recorder.db'}"
    engine = create_engine(url)
    cfg = Settings(database_url=url, sync_interval_ms=0, max_stored_records=0)
    recorder = await boot(engine, cfg)
    try:
        assert recorder.strategy is not None
        assert not recorder.is_recording
        errors = [m for m in recorder.reporter.history if m.event is StatusEvent.ERROR]
        assert errors and all(m.payload["source"] == "store" for m in errors)
    finally:
        await recorder.shutdown()
        await engine.dispose()


@pytest.mark.asyncio
async def test_update_config_while_recording(engine, test_settings):
    first = await boot(engine, test_settings)
    await first.start_recording(60000, DerivedFields(trip_id="TRIP_9"))
    session = await first.update_config(interval_ms=1500, sync_threshold=3)
    
    assert session.active
    assert session.interval_ms == 1500
    assert first.strategy.sampler.is_active
    assert first.strategy.sampler.interval_ms == 1500
    assert first.strategy.sampler.derived.trip_id == "TRIP_9"
    assert first.queue.sync_threshold == 3
    await first.shutdown()
    
    second = await boot(engine, test_settings)
    try:
        assert second.is_recording
        assert second.session.interval_ms == 1500
        assert second.session.derived.trip_id == "TRIP_9"
    finally:
        await second.shutdown()


@pytest.mark.asyncio
async def test_update_config_while_idle_applies_to_next_start(recorder):
    session = await recorder.update_config(interval_ms=2000)
    
    assert not session.active
    assert not recorder.strategy.sampler.is_active
    assert (await recorder.store.load_session()).interval_ms == 2000
    
    started = await recorder.start_recording()
    assert started.interval_ms == 2000
    await recorder.stop_recording()
    await recorder.queue.wait_for_sync()


@pytest.mark.asyncio
async def test_update_config_rejects_invalid_values(recorder):
    with pytest.raises(ValueError):
        await recorder.update_config(interval_ms=0)
    with pytest.raises(ValueError):
        await recorder.update_config(sync_threshold=-1)
    assert recorder.session.interval_ms == 10000


@pytest.mark.asyncio
async def test_start_creates_tables_on_fresh_store(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'fresh.db'}"
    engine = create_engine(url)
    cfg = Settings(database_url=url, sync_interval_ms=0, max_stored_records=0)
    recorder = await boot(engine, cfg)
    try:
        await recorder.queue.accept(make_record())
        assert await recorder.store.count_undelivered() == 1
        assert not any(m.event is StatusEvent.ERROR for m in recorder.reporter.history)
    finally:
        await recorder.shutdown()
        await engine.dispose()
