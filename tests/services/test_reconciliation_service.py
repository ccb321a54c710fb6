from datetime import datetime, timedelta

from sqlalchemy.exc import OperationalError

from cycle_engine.config import settings
from cycle_engine.database.crud.engine_state import get_checkpoint
from cycle_engine.database.models import Plan
from cycle_engine.services import reconciliation_service
from cycle_engine.services.reconciliation_service import ReconciliationService


T0 = datetime(2025, 1, 15, 12, 0, 0)


async def update_plan(session_factory, plan_id, tags, updated_at):
    async with session_factory() as db:
        plan = await db.get(Plan, plan_id)
        plan.tags = tags
        plan.updated_at = updated_at
        await db.commit()


async def read_checkpoint(session_factory):
    async with session_factory() as db:
        return await get_checkpoint(db)


# Drift fix


async def test_drift_fix_catches_up_missed_cycles(session_factory, create_plan, create_subscriber, load_subscriber):
    plan = await create_plan(tags=['interval_days:7'])
    subscriber = await create_subscriber(
        plan_id=plan.id,
        expired_at=T0 + timedelta(days=100),
        last_reset_at=T0 - timedelta(days=40),
        next_reset_at=None,
    )

    stats = await ReconciliationService(session_factory).fix_reset_drift(now=T0)

    stored = await load_subscriber(subscriber.id)
    assert stats.updated == 1
    assert stored.next_reset_at == T0 + timedelta(days=2)


async def test_drift_within_tolerance_is_kept(session_factory, create_plan, create_subscriber, load_subscriber):
    plan = await create_plan(tags=['interval_days:7'])
    stored_value = T0 + timedelta(days=2, hours=12)
    subscriber = await create_subscriber(
        plan_id=plan.id,
        expired_at=T0 + timedelta(days=100),
        last_reset_at=T0 - timedelta(days=5),
        next_reset_at=stored_value,
    )

    stats = await ReconciliationService(session_factory).fix_reset_drift(now=T0)

    stored = await load_subscriber(subscriber.id)
    assert stats.updated == 0
    assert stored.next_reset_at == stored_value


async def test_drift_tolerance_is_configurable(
    monkeypatch, session_factory, create_plan, create_subscriber, load_subscriber
):
    monkeypatch.setattr(settings, 'DRIFT_TOLERANCE_SECONDS', 3600)
    plan = await create_plan(tags=['interval_days:7'])
    subscriber = await create_subscriber(
        plan_id=plan.id,
        expired_at=T0 + timedelta(days=100),
        last_reset_at=T0 - timedelta(days=5),
        next_reset_at=T0 + timedelta(days=2, hours=12),
    )

    await ReconciliationService(session_factory).fix_reset_drift(now=T0)

    stored = await load_subscriber(subscriber.id)
    assert stored.next_reset_at == T0 + timedelta(days=2)


async def test_drift_fix_skips_structured_and_expired(
    session_factory, create_plan, create_subscriber, load_subscriber
):
    custom = await create_plan(tags=['interval_days:7'])
    structured = await create_plan(reset_method='monthly_anniversary')
    expired = await create_subscriber(plan_id=custom.id, expired_at=T0 - timedelta(days=1))
    calendar = await create_subscriber(plan_id=structured.id, expired_at=T0 + timedelta(days=30))

    stats = await ReconciliationService(session_factory).fix_reset_drift(now=T0)

    assert stats.scanned == 1
    assert stats.updated == 0
    assert (await load_subscriber(expired.id)).next_reset_at is None
    assert (await load_subscriber(calendar.id)).next_reset_at is None


async def test_second_sweep_writes_nothing(monkeypatch, session_factory, create_plan, create_subscriber):
    monkeypatch.setattr(settings, 'CYCLE_BATCH_SIZE', 2)
    plan = await create_plan(tags=['interval_days:7'], updated_at=T0 - timedelta(days=30))
    for offset in range(5):
        await create_subscriber(
            plan_id=plan.id,
            expired_at=T0 + timedelta(days=10 + offset),
            last_reset_at=T0 - timedelta(days=offset * 9) if offset % 2 else None,
        )
    service = ReconciliationService(session_factory)

    first = await service.run(now=T0)
    second = await service.run(now=T0 + timedelta(minutes=5))

    assert first.updated == 5
    assert second.updated == 0
    assert second.failed == 0


# Plan tag sync


async def test_first_tag_sync_only_records_baseline(session_factory, create_plan, create_subscriber, load_subscriber):
    plan = await create_plan(tags=['interval_days:7'], updated_at=T0 - timedelta(days=10))
    subscriber = await create_subscriber(plan_id=plan.id, expired_at=T0 + timedelta(days=100))

    stats = await ReconciliationService(session_factory).sync_plan_tag_changes(now=T0)

    stored = await load_subscriber(subscriber.id)
    assert stats.updated == 0
    assert stored.expired_at == T0 + timedelta(days=100)
    assert await read_checkpoint(session_factory) == T0 - timedelta(days=10)


async def test_tag_change_rederives_plan_subscribers(
    session_factory, create_plan, create_subscriber, load_subscriber
):
    plan = await create_plan(tags=['vip'], updated_at=T0 - timedelta(days=10))
    other = await create_plan(tags=['interval_days:3'], updated_at=T0 - timedelta(days=10))
    live = await create_subscriber(plan_id=plan.id, expired_at=T0 + timedelta(days=100))
    lapsed = await create_subscriber(plan_id=plan.id, expired_at=T0 - timedelta(days=1))
    bystander = await create_subscriber(plan_id=other.id, expired_at=T0 + timedelta(days=100))
    service = ReconciliationService(session_factory)
    await service.sync_plan_tag_changes(now=T0 - timedelta(days=1))

    await update_plan(session_factory, plan.id, ['interval_days:7', 'expired_days:30'], T0 - timedelta(hours=1))
    stats = await service.sync_plan_tag_changes(now=T0)

    stored_live = await load_subscriber(live.id)
    assert stats.plans == 1
    assert stored_live.expired_at == T0 + timedelta(days=30)
    assert stored_live.next_reset_at == T0 + timedelta(days=7)

    stored_lapsed = await load_subscriber(lapsed.id)
    assert stored_lapsed.expired_at == T0 - timedelta(days=1)
    assert stored_lapsed.next_reset_at == T0 - timedelta(days=1)

    assert (await load_subscriber(bystander.id)).next_reset_at is None
    assert await read_checkpoint(session_factory) == T0 - timedelta(hours=1)

    again = await service.sync_plan_tag_changes(now=T0 + timedelta(minutes=5))
    assert again.scanned == 0
    assert again.updated == 0


async def test_checkpoint_holds_when_a_subscriber_fails(
    monkeypatch, session_factory, create_plan, create_subscriber, load_subscriber
):
    plan = await create_plan(tags=['vip'], updated_at=T0 - timedelta(days=10))
    broken = await create_subscriber(plan_id=plan.id, expired_at=T0 + timedelta(days=100))
    healthy = await create_subscriber(plan_id=plan.id, expired_at=T0 + timedelta(days=100))
    service = ReconciliationService(session_factory)
    await service.sync_plan_tag_changes(now=T0 - timedelta(days=1))

    original_update = reconciliation_service.update_subscriber_cycle_fields

    def flaky_update(subscriber, **values):
        if subscriber.id == broken.id:
            raise OperationalError('UPDATE subscribers', {}, Exception('database is locked'))
        return original_update(subscriber, **values)

    monkeypatch.setattr(reconciliation_service, 'update_subscriber_cycle_fields', flaky_update)
    await update_plan(session_factory, plan.id, ['interval_days:7'], T0 - timedelta(hours=1))

    stats = await service.sync_plan_tag_changes(now=T0)

    assert stats.failed == 1
    assert stats.updated == 1
    assert (await load_subscriber(healthy.id)).next_reset_at == T0 + timedelta(days=7)
    assert await read_checkpoint(session_factory) == T0 - timedelta(days=10)
