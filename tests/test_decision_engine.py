from unittest.mock import AsyncMock

import pytest

from pod_sentinel.decision_engine import IdleDecisionEngine
from pod_sentinel.errors import ProviderError
from pod_sentinel.expiry_detector import ExpiryDetector
from pod_sentinel.lifecycle_controller import LifecycleController
from pod_sentinel.models import Outcome, TerminateStatus, UtilizationReading
from pod_sentinel.runpod_manager import RunPodManager


@pytest.fixture
def runpod():
    manager = AsyncMock(spec=RunPodManager)
    manager.stop_pod.return_value = {"data": {"podStop": {"id": "pod-1", "desiredStatus": "EXITED"}}}
    return manager


@pytest.fixture
def engine(runpod, timer_store):
    controller = LifecycleController(runpod, timer_store)
    return IdleDecisionEngine(runpod, timer_store, controller, idle_threshold=5.0, extension_seconds=3600)


@pytest.mark.asyncio
async def test_idle_pod_is_stopped_once(engine, runpod, timer_store, fake_redis, clock):
    await timer_store.arm("pod-1", 60)
    clock.advance(61)
    runpod.get_utilization.return_value = UtilizationReading(gpu_percent=2, memory_percent=1)

    detector = ExpiryDetector(fake_redis, timer_store, engine.decide, mode="poll")
    for event in await detector.scan_once():
        await detector.dispatch(event)
    # A second cycle finds nothing left to act on
    assert await detector.scan_once() == []

    runpod.stop_pod.assert_awaited_once_with("pod-1")
    assert await fake_redis.get("shutdown:pod-1") is None


@pytest.mark.asyncio
async def test_busy_pod_is_rearmed(engine, runpod, timer_store, clock):
    await timer_store.arm("pod-2", 60)
    clock.advance(61)
    assert await timer_store.claim("pod-2")
    runpod.get_utilization.return_value = UtilizationReading(gpu_percent=40, memory_percent=10)

    decision = await engine.decide("pod-2")

    assert decision.outcome == Outcome.REARM
    assert decision.score == 40
    runpod.stop_pod.assert_not_awaited()
    assert await timer_store.remaining("pod-2") == pytest.approx(3600)


@pytest.mark.asyncio
async def test_memory_utilization_counts_as_busy(engine, runpod):
    runpod.get_utilization.return_value = UtilizationReading(gpu_percent=0, memory_percent=50)

    decision = await engine.decide("pod-1")

    assert decision.outcome == Outcome.REARM


@pytest.mark.asyncio
async def test_threshold_is_inclusive_for_idle(engine, runpod):
    runpod.get_utilization.return_value = UtilizationReading(gpu_percent=5, memory_percent=5)

    decision = await engine.decide("pod-1")

    assert decision.outcome == Outcome.TERMINATE
    assert decision.terminate_result.status == TerminateStatus.ACKNOWLEDGED


@pytest.mark.asyncio
async def test_missing_data_is_treated_as_busy(engine, runpod, timer_store):
    runpod.get_utilization.return_value = None

    decision = await engine.decide("pod-7")

    assert decision.outcome == Outcome.REARM
    assert decision.reading.available is False
    runpod.stop_pod.assert_not_awaited()
    assert await timer_store.remaining("pod-7") == pytest.approx(3600)


@pytest.mark.asyncio
async def test_provider_failure_is_treated_as_busy(engine, runpod):
    runpod.get_utilization.side_effect = ProviderError("502 Bad Gateway")

    decision = await engine.decide("pod-8")

    assert decision.outcome == Outcome.REARM
    runpod.stop_pod.assert_not_awaited()


@pytest.mark.asyncio
async def test_rearm_twice_keeps_single_timer(engine, runpod, timer_store, fake_redis):
    runpod.get_utilization.return_value = UtilizationReading(gpu_percent=90, memory_percent=90)

    await engine.decide("pod-2")
    await engine.decide("pod-2")

    keys = [k async for k in fake_redis.scan_iter(match="shutdown:*")]
    assert keys == ["shutdown:pod-2"]
