"""
Execution Strategy Tests.

Capability probing, fallback order and the worker-backed strategies running
against a shared file store.
"""

import asyncio

import pytest

from train_audit.app.core.config import Settings
from train_audit.app.core.exceptions import CapabilityUnavailableError
from train_audit.app.services.recorder import BackgroundRecorder
from train_audit.app.services.strategies import (
    ExecutionStrategy, HostCapabilities, PREFERENCE_ORDER,
    candidate_strategies, probe_capabilities, select_strategy
)
from train_audit.app.services.workers import SamplerWorker, SyncWorker

from conftest import FakeSink, make_fix, make_record, wait_until


class SlowSink(FakeSink):
    """Sink that holds each submission open for a while."""
    
    async def submit(self, records):
        acknowledged = await super().submit(records)
        await asyncio.sleep(0.3)
        return acknowledged


ALL_CAPABILITIES = HostCapabilities(
    threads=True,
    shared_store=True,
    sync_worker=True,
    background_sync=True,
    periodic_sync=True,
    dedicated_worker=True,
)


def test_probe_follows_settings(database_url):
    caps = probe_capabilities(Settings(database_url=database_url))
    assert caps.threads and caps.shared_store
    assert caps.sync_worker and caps.dedicated_worker
    
    caps = probe_capabilities(Settings(database_url=database_url, enable_sync_worker=False, enable_periodic_sync=False))
    assert not caps.sync_worker
    assert not caps.periodic_sync
    assert caps.dedicated_worker


def test_in_memory_store_cannot_back_a_sync_worker():
    caps = probe_capabilities(Settings(database_url="sqlite+aiosqlite:///:memory:"))
    assert not caps.shared_store
    assert not caps.sync_worker


def test_candidates_in_preference_order():
    assert candidate_strategies(ALL_CAPABILITIES) == PREFERENCE_ORDER
    assert select_strategy(ALL_CAPABILITIES) is ExecutionStrategy.INSTALLABLE_WORKER
    
    only_threads = HostCapabilities(threads=True, dedicated_worker=True)
    assert select_strategy(only_threads) is ExecutionStrategy.DEDICATED_WORKER


def test_foreground_timer_always_available():
    assert candidate_strategies(HostCapabilities()) == [ExecutionStrategy.FOREGROUND_TIMER]


@pytest.mark.asyncio
async def test_fallback_when_worker_fails_to_start(engine, test_settings, monkeypatch):
    async def broken_start(self):
        raise CapabilityUnavailableError(self.name)
    
    monkeypatch.setattr(SyncWorker, "start", broken_start)
    monkeypatch.setattr(SamplerWorker, "start", broken_start)
    sink = FakeSink()
    recorder = BackgroundRecorder(test_settings, engine=engine, sink_factory=lambda: sink, capabilities=ALL_CAPABILITIES)
    await recorder.start()
    try:
        assert recorder.strategy.kind is ExecutionStrategy.FOREGROUND_TIMER
    finally:
        await recorder.shutdown()


@pytest.mark.asyncio
async def test_foreground_timer_records_and_syncs(recorder, fake_sink):
    recorder.push_position(make_fix())
    await recorder.start_recording(20)
    await wait_until(lambda: len(recorder.queue.recent) >= 2)
    await recorder.stop_recording()
    await recorder.queue.wait_for_sync()
    
    assert recorder.strategy.kind is ExecutionStrategy.FOREGROUND_TIMER
    assert fake_sink.calls
    assert recorder.last_sync.status == "success"


@pytest.mark.asyncio
async def test_dedicated_worker_posts_records_to_host(engine, test_settings):
    sink = FakeSink()
    recorder = BackgroundRecorder(
        test_settings,
        engine=engine,
        sink_factory=lambda: sink,
        capabilities=HostCapabilities(threads=True, dedicated_worker=True),
    )
    await recorder.start()
    try:
        assert recorder.strategy.kind is ExecutionStrategy.DEDICATED_WORKER
        recorder.push_position(make_fix(lat=-34.7))
        await recorder.start_recording(20)
        await wait_until(recorder.store.count_undelivered)
        await recorder.stop_recording()
        await recorder.queue.wait_for_sync()
        
        assert sink.calls
        assert recorder.last_sync.status == "success"
        delivered_ids = sink.calls[0]
        assert all(record_id for record_id in delivered_ids)
    finally:
        await recorder.shutdown()


@pytest.mark.asyncio
async def test_dedicated_worker_position_error_reported(engine, test_settings):
    sink = FakeSink()
    recorder = BackgroundRecorder(
        test_settings,
        engine=engine,
        sink_factory=lambda: sink,
        capabilities=HostCapabilities(threads=True, dedicated_worker=True),
    )
    await recorder.start()
    try:
        await recorder.start_recording(20)
        recorder.push_position_error("GPS timeout")
        await wait_until(lambda: any(
            m.payload.get("error") == "GPS timeout" for m in recorder.reporter.history
        ))
    finally:
        await recorder.shutdown()


@pytest.mark.asyncio
async def test_installable_worker_delegates_sync(engine, test_settings):
    sink = FakeSink()
    caps = HostCapabilities(threads=True, shared_store=True, sync_worker=True, background_sync=True)
    recorder = BackgroundRecorder(test_settings, engine=engine, sink_factory=lambda: sink, capabilities=caps)
    await recorder.start()
    try:
        assert recorder.strategy.kind is ExecutionStrategy.INSTALLABLE_WORKER
        for i in range(3):
            await recorder.queue.accept(make_record(lat=-34.0 - i * 0.01))
        
        assert await recorder.sync_now() is None
        await wait_until(lambda: recorder.last_sync is not None)
        
        assert recorder.last_sync.status == "success"
        assert len(sink.calls) == 1 and len(sink.calls[0]) == 3
        assert await recorder.store.count_undelivered() == 0
        assert list(recorder.queue.recent) == []
        # Notification raised in the worker reaches the host reporter
        assert recorder.reporter.notifications[-1].notification == "3 puntos sincronizados"
    finally:
        await recorder.shutdown()


@pytest.mark.asyncio
async def test_installable_worker_periodic_registration(engine, database_url):
    cfg = Settings(
        database_url=database_url,
        sync_interval_ms=0,
        max_stored_records=0,
        periodic_sync_min_interval_ms=50,
        auto_resume=False,
    )
    sink = FakeSink()
    recorder = BackgroundRecorder(cfg, engine=engine, sink_factory=lambda: sink, capabilities=ALL_CAPABILITIES)
    await recorder.start()
    try:
        await recorder.store.append(make_record())
        # No explicit trigger: the periodic registration picks it up
        async def drained():
            return await recorder.store.count_undelivered() == 0
        
        await wait_until(drained)
        assert len(sink.calls) == 1
    finally:
        await recorder.shutdown()


@pytest.mark.asyncio
async def test_installable_worker_without_background_sync_syncs_on_host(engine, test_settings):
    sink = FakeSink()
    caps = HostCapabilities(threads=True, shared_store=True, sync_worker=True)
    recorder = BackgroundRecorder(test_settings, engine=engine, sink_factory=lambda: sink, capabilities=caps)
    await recorder.start()
    try:
        await recorder.queue.accept(make_record())
        result = await recorder.sync_now()
        assert result.status == "success"
    finally:
        await recorder.shutdown()


@pytest.mark.asyncio
async def test_host_owned_sync_is_not_raced_by_periodic_worker(engine, database_url):
    cfg = Settings(
        database_url=database_url,
        sync_interval_ms=0,
        max_stored_records=0,
        periodic_sync_min_interval_ms=100,
        auto_resume=False,
    )
    sink = SlowSink()
    caps = HostCapabilities(threads=True, shared_store=True, sync_worker=True, periodic_sync=True)
    recorder = BackgroundRecorder(cfg, engine=engine, sink_factory=lambda: sink, capabilities=caps)
    await recorder.start()
    try:
        for i in range(5):
            await recorder.queue.accept(make_record(lat=-34.0 - i * 0.01))
        
        await asyncio.sleep(0.25)
        assert sink.calls == []
        
        result = await recorder.sync_now("online")
        await asyncio.sleep(0.25)
        
        assert result.status == "success"
        assert len(sink.calls) == 1 and len(sink.calls[0]) == 5
        assert await recorder.store.count_undelivered() == 0
    finally:
        await recorder.shutdown()


@pytest.mark.asyncio
async def test_dedicated_worker_updates_interval(engine, test_settings):
    sink = FakeSink()
    recorder = BackgroundRecorder(
        test_settings,
        engine=engine,
        sink_factory=lambda: sink,
        capabilities=HostCapabilities(threads=True, dedicated_worker=True),
    )
    await recorder.start()
    try:
        await recorder.start_recording(60000)
        worker_sampler = recorder.strategy.worker.sampler
        await wait_until(lambda: worker_sampler.is_active)
        
        await recorder.update_config(interval_ms=20)
        await wait_until(lambda: worker_sampler.interval_ms == 20)
        
        recorder.push_position(make_fix())
        await wait_until(recorder.store.count_undelivered)
        assert worker_sampler.derived.trip_id == recorder.session.derived.trip_id
    finally:
        await recorder.shutdown()
