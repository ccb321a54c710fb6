import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from cycle_engine.config import settings
from cycle_engine.services.cycle_scheduler import CycleScheduler
from cycle_engine.services.execution_guard import ExecutionGuard


T0 = datetime(2025, 1, 15, 12, 0, 0)


def make_scheduler(redis_client):
    reconciliation = MagicMock()
    reconciliation.sync_plan_tag_changes = AsyncMock(return_value='tag-stats')
    reconciliation.fix_reset_drift = AsyncMock(return_value='drift-stats')
    early_reset = MagicMock()
    early_reset.run = AsyncMock(return_value='early-stats')
    guard = ExecutionGuard(redis_client, lock_ttl_seconds=300, key_prefix='test')
    return CycleScheduler(guard, reconciliation, early_reset), reconciliation, early_reset


def free_redis():
    redis_client = AsyncMock()
    redis_client.get.return_value = None
    redis_client.set.return_value = True
    redis_client.eval.return_value = 1
    return redis_client


async def test_due_job_runs_under_lock_and_is_marked():
    redis_client = free_redis()
    scheduler, reconciliation, _ = make_scheduler(redis_client)

    result = await scheduler.run_job('plan_tag_sync', now=T0)

    assert result == 'tag-stats'
    reconciliation.sync_plan_tag_changes.assert_awaited_once_with(T0)
    redis_client.set.assert_any_await('test:last_run:plan_tag_sync', T0.isoformat(), ex=7 * 24 * 60 * 60)
    redis_client.eval.assert_awaited_once()


async def test_held_lock_skips_the_run():
    redis_client = free_redis()
    redis_client.set.return_value = None
    scheduler, _, early_reset = make_scheduler(redis_client)

    assert await scheduler.run_job('early_reset', now=T0) is None
    early_reset.run.assert_not_awaited()


async def test_job_not_due_is_skipped():
    redis_client = free_redis()
    redis_client.get.return_value = (T0 - timedelta(minutes=1)).isoformat()
    scheduler, reconciliation, _ = make_scheduler(redis_client)

    assert await scheduler.run_job('reset_drift_fix', now=T0) is None
    reconciliation.fix_reset_drift.assert_not_awaited()


async def test_force_ignores_cadence():
    redis_client = free_redis()
    redis_client.get.return_value = (T0 - timedelta(minutes=1)).isoformat()
    scheduler, reconciliation, _ = make_scheduler(redis_client)

    assert await scheduler.run_job('reset_drift_fix', now=T0, force=True) == 'drift-stats'


async def test_zero_interval_disables_job(monkeypatch):
    monkeypatch.setattr(settings, 'EARLY_RESET_INTERVAL_MINUTES', 0)
    scheduler, _, early_reset = make_scheduler(free_redis())

    assert await scheduler.run_job('early_reset', now=T0) is None
    early_reset.run.assert_not_awaited()


async def test_disabled_engine_runs_nothing(monkeypatch):
    monkeypatch.setattr(settings, 'CYCLE_ENGINE_ENABLED', False)
    scheduler, reconciliation, _ = make_scheduler(free_redis())

    assert await scheduler.run_job('plan_tag_sync', now=T0, force=True) is None
    reconciliation.sync_plan_tag_changes.assert_not_awaited()


async def test_unknown_job_is_rejected():
    scheduler, _, _ = make_scheduler(free_redis())

    with pytest.raises(ValueError):
        await scheduler.run_job('ban_users', now=T0)


async def test_failing_job_does_not_stop_the_others():
    scheduler, reconciliation, early_reset = make_scheduler(free_redis())
    reconciliation.sync_plan_tag_changes.side_effect = RuntimeError('database unavailable')

    results = await scheduler.run_all(now=T0)

    assert results['plan_tag_sync'] is None
    assert results['reset_drift_fix'] == 'drift-stats'
    assert results['early_reset'] == 'early-stats'


async def test_start_and_stop_loop():
    scheduler, reconciliation, _ = make_scheduler(free_redis())

    scheduler.start(poll_seconds=3600)
    assert scheduler.is_running

    async def first_pass_done():
        while not reconciliation.sync_plan_tag_changes.await_count:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(first_pass_done(), timeout=5)
    await scheduler.stop()

    assert not scheduler.is_running
    reconciliation.sync_plan_tag_changes.assert_awaited()
