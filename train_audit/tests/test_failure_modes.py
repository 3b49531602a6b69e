"""
Failure Injection Tests.

Validates resilience against an unreachable sink and a failing store.
"""

import httpx
import pytest

from train_audit.app.core.exceptions import NetworkFailureError, StorageUnavailableError
from train_audit.app.core.reliability import CircuitBreaker, CircuitOpenError
from train_audit.app.services.sink_client import HttpSink
from train_audit.app.services.sync_engine import SyncEngine

from conftest import make_record


@pytest.mark.asyncio
async def test_circuit_breaker_activates():
    """Test that circuit breaker opens after threshold failures."""
    cb = CircuitBreaker(failure_threshold=2, reset_timeout=1)
    
    async def failing_func():
        raise ValueError("Boom")
    
    # Fail 1
    with pytest.raises(ValueError):
        await cb.call(failing_func)
    
    # Fail 2 (Threshold reached)
    with pytest.raises(ValueError):
        await cb.call(failing_func)
    
    # Call 3 (Should be CircuitOpenError)
    with pytest.raises(CircuitOpenError):
        await cb.call(failing_func)


@pytest.mark.asyncio
async def test_circuit_breaker_half_open_probe(mocker):
    cb = CircuitBreaker(failure_threshold=1, reset_timeout=10)
    clock = mocker.patch("train_audit.app.core.reliability.time.time", return_value=1000.0)
    
    async def failing_func():
        raise ValueError("Boom")
    
    async def ok_func():
        return "ok"
    
    with pytest.raises(ValueError):
        await cb.call(failing_func)
    assert cb.state == "OPEN"
    
    # Probe after the reset timeout fails: open again
    clock.return_value = 1011.0
    with pytest.raises(ValueError):
        await cb.call(failing_func)
    assert cb.state == "OPEN"
    
    clock.return_value = 1022.0
    assert await cb.call(ok_func) == "ok"
    assert cb.state == "CLOSED"
    assert cb.failures == 0


@pytest.mark.asyncio
async def test_open_circuit_short_circuits_sink(store, reporter):
    hits = []
    
    def handler(request):
        hits.append(request)
        return httpx.Response(503)
    
    sink = HttpSink(
        "http://collector.test/exec",
        transport=httpx.MockTransport(handler),
        breaker=CircuitBreaker(failure_threshold=2, reset_timeout=60),
    )
    await store.append(make_record())
    engine = SyncEngine(store, sink, reporter)
    
    results = [await engine.sync_once() for _ in range(4)]
    await sink.aclose()
    
    assert [r.status for r in results] == ["failed"] * 4
    assert len(hits) == 2
    assert results[-1].error == "Sink circuit is open"
    assert await store.count_undelivered() == 1


@pytest.mark.asyncio
async def test_sink_timeout_is_network_failure():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)
    
    sink = HttpSink("http://collector.test/exec", transport=httpx.MockTransport(handler))
    with pytest.raises(NetworkFailureError) as exc_info:
        await sink.submit([make_record()])
    await sink.aclose()
    assert exc_info.value.error_code == "ERR_SINK_001"


@pytest.mark.asyncio
async def test_store_failure_during_sync(store, reporter, fake_sink, mocker):
    await store.append(make_record())
    mocker.patch.object(store, "list_undelivered", side_effect=StorageUnavailableError("locked"))
    engine = SyncEngine(store, fake_sink, reporter)
    
    result = await engine.sync_once()
    
    assert result.status == "failed"
    assert result.error == "locked"
    assert fake_sink.calls == []


@pytest.mark.asyncio
async def test_failure_to_mark_keeps_records_pending(store, reporter, fake_sink, mocker):
    await store.append(make_record())
    mocker.patch.object(store, "mark_delivered", side_effect=StorageUnavailableError("locked"))
    engine = SyncEngine(store, fake_sink, reporter)
    
    result = await engine.sync_once()
    
    assert result.status == "failed"
    assert len(fake_sink.calls) == 1
    assert await store.count_undelivered() == 1


@pytest.mark.asyncio
async def test_unexpected_sink_error_does_not_escape(store, reporter, mocker):
    await store.append(make_record())
    sink = mocker.Mock()
    sink.submit = mocker.AsyncMock(side_effect=KeyError("row"))
    engine = SyncEngine(store, sink, reporter)
    
    result = await engine.sync_once()
    
    assert result.status == "failed"
    assert not engine.in_flight
