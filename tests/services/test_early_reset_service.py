"""
Early reset on traffic exhaustion: eligibility, cycle shortening and
per-subscriber failure isolation.
"""

from datetime import datetime, timedelta

from cycle_engine.config import settings
from cycle_engine.services.early_reset_service import EarlyResetService, check_eligibility
from cycle_engine.services.traffic_reset_service import TrafficResetService


T0 = datetime(2025, 1, 15, 12, 0, 0)
QUOTA = 1000


class RecordingPrimitive:
    def __init__(self, fail_for: int | None = None):
        self.fail_for = fail_for
        self.calls: list[int] = []

    async def perform_reset(self, db, subscriber, source, now=None):
        self.calls.append(subscriber.id)
        if subscriber.id == self.fail_for:
            raise RuntimeError('panel unreachable')
        subscriber.used_upload = 0
        subscriber.used_download = 0
        subscriber.last_reset_at = now


def exhausted(**fields):
    fields.setdefault('traffic_quota', QUOTA)
    fields.setdefault('used_upload', QUOTA // 2)
    fields.setdefault('used_download', QUOTA // 2)
    return fields


async def test_custom_subscriber_without_spare_cycle_is_declined(
    session_factory, create_plan, create_subscriber, load_subscriber
):
    plan = await create_plan(tags=['interval_days:15'])
    expiration = T0 + timedelta(days=10)
    subscriber = await create_subscriber(**exhausted(plan_id=plan.id, expired_at=expiration))
    primitive = RecordingPrimitive()

    stats = await EarlyResetService(primitive, session_factory).run(now=T0)

    stored = await load_subscriber(subscriber.id)
    assert stats.scanned == 1
    assert stats.skipped == 1
    assert primitive.calls == []
    assert stored.expired_at == expiration


async def test_custom_early_reset_pays_one_cycle(session_factory, create_plan, create_subscriber, load_subscriber):
    plan = await create_plan(tags=['interval_days:7'])
    subscriber = await create_subscriber(**exhausted(plan_id=plan.id, expired_at=T0 + timedelta(days=30, hours=3)))
    primitive = RecordingPrimitive()

    stats = await EarlyResetService(primitive, session_factory).run(now=T0)

    stored = await load_subscriber(subscriber.id)
    assert stats.reset == 1
    assert primitive.calls == [subscriber.id]
    assert stored.expired_at == T0 + timedelta(days=23)
    assert stored.next_reset_at == T0 + timedelta(days=7)
    assert stored.used_traffic == 0


async def test_monthly_anniversary_early_reset_moves_back_one_month(
    session_factory, create_plan, create_subscriber, load_subscriber
):
    now = datetime(2025, 1, 20, 14, 30, 0)
    plan = await create_plan(reset_method='monthly_anniversary')
    subscriber = await create_subscriber(
        **exhausted(plan_id=plan.id, expired_at=datetime(2025, 3, 5, 10, 0, 0), used_download=QUOTA // 2 - 5)
    )

    stats = await EarlyResetService(TrafficResetService(api_factory=lambda: None), session_factory).run(now=now)

    stored = await load_subscriber(subscriber.id)
    assert stats.reset == 1
    assert stored.expired_at == datetime(2025, 2, 5, 14, 30, 0)
    assert stored.next_reset_at == datetime(2025, 2, 5)
    assert stored.last_reset_at == now
    assert stored.next_reset_at <= stored.expired_at


async def test_shortening_never_reaches_now(session_factory, create_plan, create_subscriber, load_subscriber):
    plan = await create_plan(tags=['interval_days:7'])
    expiration = T0 + timedelta(days=7, hours=1)
    subscriber = await create_subscriber(**exhausted(plan_id=plan.id, expired_at=expiration))

    stored = await load_subscriber(subscriber.id)
    decision = check_eligibility(stored, T0)

    assert not decision.eligible
    assert decision.reason == 'unaffordable'


async def test_ineligible_subscribers_are_skipped(session_factory, create_plan, create_subscriber, load_subscriber):
    custom = await create_plan(tags=['interval_days:7'])
    yearly = await create_plan(reset_method='yearly_anniversary')
    short_monthly = await create_plan(reset_method='first_day_of_month')

    never_expires = await create_subscriber(**exhausted(plan_id=custom.id, expired_at=None))
    yearly_subscriber = await create_subscriber(**exhausted(plan_id=yearly.id, expired_at=T0 + timedelta(days=300)))
    short_subscriber = await create_subscriber(
        **exhausted(plan_id=short_monthly.id, expired_at=T0 + timedelta(days=20))
    )
    not_exhausted = await create_subscriber(
        **exhausted(plan_id=custom.id, expired_at=T0 + timedelta(days=60), used_download=0)
    )
    suspended = await create_subscriber(
        **exhausted(plan_id=custom.id, expired_at=T0 + timedelta(days=60), suspended=True)
    )

    assert check_eligibility(await load_subscriber(never_expires.id), T0).reason == 'never_expires'
    assert check_eligibility(await load_subscriber(yearly_subscriber.id), T0).reason == 'disabled_for_policy'
    assert check_eligibility(await load_subscriber(short_subscriber.id), T0).reason == 'not_enough_time'
    assert check_eligibility(await load_subscriber(not_exhausted.id), T0).reason == 'quota_not_exhausted'
    assert check_eligibility(await load_subscriber(suspended.id), T0).reason == 'suspended'

    primitive = RecordingPrimitive()
    stats = await EarlyResetService(primitive, session_factory).run(now=T0)

    assert primitive.calls == []
    assert stats.reset == 0
    assert stats.scanned == 3


async def test_policy_flag_disables_early_reset(monkeypatch, session_factory, create_plan, create_subscriber):
    monkeypatch.setattr(settings, 'AUTO_RESET_ON_EXCEED_CUSTOM', False)
    plan = await create_plan(tags=['interval_days:7'])
    await create_subscriber(**exhausted(plan_id=plan.id, expired_at=T0 + timedelta(days=60)))
    primitive = RecordingPrimitive()

    stats = await EarlyResetService(primitive, session_factory).run(now=T0)

    assert stats.skipped == 1
    assert primitive.calls == []


async def test_failure_rolls_back_only_that_subscriber(
    monkeypatch, session_factory, create_plan, create_subscriber, load_subscriber
):
    monkeypatch.setattr(settings, 'CYCLE_BATCH_SIZE', 1)
    plan = await create_plan(tags=['interval_days:7'])
    expiration = T0 + timedelta(days=60)
    first = await create_subscriber(**exhausted(plan_id=plan.id, expired_at=expiration))
    second = await create_subscriber(**exhausted(plan_id=plan.id, expired_at=expiration))
    third = await create_subscriber(**exhausted(plan_id=plan.id, expired_at=expiration))
    primitive = RecordingPrimitive(fail_for=second.id)

    stats = await EarlyResetService(primitive, session_factory).run(now=T0)

    assert primitive.calls == [first.id, second.id, third.id]
    assert stats.reset == 2
    assert stats.failed == 1

    failed = await load_subscriber(second.id)
    assert failed.expired_at == expiration
    assert failed.used_traffic == QUOTA

    reset = await load_subscriber(third.id)
    assert reset.expired_at == T0 + timedelta(days=53)
