"""
Periodic reconciliation of subscriber cycles.

Two scans, both safe to re-run at any cadence:

* plan tag sync: plans changed since the stored checkpoint that declare
  ``interval_days:`` / ``expired_days:`` get every subscriber re-derived;
* drift fix: custom-cycle subscribers whose stored ``next_reset_at`` is
  missing or off by more than the configured tolerance are corrected.

Each subscriber is written in its own short transaction.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cycle_engine.config import settings
from cycle_engine.database.crud.engine_state import get_checkpoint, set_checkpoint
from cycle_engine.database.crud.plan import get_plans_updated_since
from cycle_engine.database.crud.subscriber import (
    get_active_planned_subscribers_page,
    get_plan_subscribers_page,
    get_subscriber_for_update,
    update_subscriber_cycle_fields,
)
from cycle_engine.database.database import AsyncSessionLocal
from cycle_engine.database.models import Subscriber
from cycle_engine.exceptions import PersistenceConflict
from cycle_engine.services.cycle_audit import ChangeSource, log_cycle_change
from cycle_engine.services.cycle_calculator import (
    clamp_to_expiration,
    compute_custom_next_reset,
    compute_expected_next_reset,
)
from cycle_engine.services.cycle_policy import (
    CustomPolicy,
    describe_policy,
    get_batch_base_days,
    plan_has_cycle_tags,
    resolve_policy,
)


logger = logging.getLogger(__name__)


@dataclass
class SweepStats:
    plans: int = 0
    scanned: int = 0
    updated: int = 0
    failed: int = 0

    def merge(self, other: SweepStats) -> SweepStats:
        return SweepStats(
            plans=self.plans + other.plans,
            scanned=self.scanned + other.scanned,
            updated=self.updated + other.updated,
            failed=self.failed + other.failed,
        )


def _utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def derive_tag_sync_fields(subscriber: Subscriber, now: datetime) -> dict[str, Any]:
    """Cycle fields a subscriber should have right after its plan's tags changed."""
    policy = resolve_policy(subscriber.plan)
    if policy is None:
        return {}

    expiration = subscriber.expired_at
    if settings.ENABLE_EXPIRED_AT_CALCULATION and expiration is not None and expiration > now:
        expiration = now + timedelta(days=get_batch_base_days(policy))

    values: dict[str, Any] = {'expired_at': expiration}
    if isinstance(policy, CustomPolicy):
        values['next_reset_at'] = compute_custom_next_reset(policy.interval_days, expiration, now)
    else:
        values['next_reset_at'] = clamp_to_expiration(subscriber.next_reset_at, expiration)
    return values


def needs_drift_fix(subscriber: Subscriber, expected: datetime | None, tolerance_seconds: int) -> bool:
    stored = subscriber.next_reset_at
    if expected is None:
        return stored is not None
    if stored is None:
        return True
    return abs((stored - expected).total_seconds()) > tolerance_seconds


class ReconciliationService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory or AsyncSessionLocal

    async def run(self, now: datetime | None = None) -> SweepStats:
        now = now or _utcnow()
        tag_stats = await self.sync_plan_tag_changes(now)
        drift_stats = await self.fix_reset_drift(now)
        return tag_stats.merge(drift_stats)

    # Plan tag sync

    async def _iter_tagged_plan_subscribers(self, plan_ids: list[int]) -> AsyncIterator[tuple[int, int]]:
        batch_size = settings.CYCLE_BATCH_SIZE
        for plan_id in plan_ids:
            after_id = 0
            while True:
                async with self._session_factory() as db:
                    page = await get_plan_subscribers_page(db, plan_id, after_id=after_id, limit=batch_size)
                    subscriber_ids = [subscriber.id for subscriber in page]

                for subscriber_id in subscriber_ids:
                    yield plan_id, subscriber_id

                if len(subscriber_ids) < batch_size:
                    break
                after_id = subscriber_ids[-1]

    async def sync_plan_tag_changes(self, now: datetime | None = None) -> SweepStats:
        now = now or _utcnow()
        stats = SweepStats()

        async with self._session_factory() as db:
            checkpoint = await get_checkpoint(db)
            plans = await get_plans_updated_since(db, checkpoint)
            seen = [plan.updated_at for plan in plans if plan.updated_at is not None]
            tagged_plan_ids = [plan.id for plan in plans if plan_has_cycle_tags(plan)]

            if checkpoint is None:
                # First pass only records a baseline; existing cycles are left alone
                baseline = max(seen) if seen else now
                await set_checkpoint(db, baseline)
                await db.commit()
                logger.info('Plan tag sync baseline recorded at %s', baseline)
                return stats

        if not plans:
            return stats

        new_checkpoint = max(seen)
        stats.plans = len(tagged_plan_ids)

        # The last subscriber carries the checkpoint in its own transaction
        pending: tuple[int, int] | None = None
        async for target in self._iter_tagged_plan_subscribers(tagged_plan_ids):
            if pending is not None:
                await self._sync_subscriber(*pending, now=now, stats=stats)
            pending = target

        if pending is not None:
            checkpoint_value = new_checkpoint if stats.failed == 0 else None
            await self._sync_subscriber(*pending, now=now, stats=stats, checkpoint=checkpoint_value)
        elif new_checkpoint is not None:
            async with self._session_factory() as db:
                await set_checkpoint(db, new_checkpoint)
                await db.commit()

        if stats.failed:
            logger.warning(
                'Plan tag sync finished with %s failures, checkpoint kept at %s', stats.failed, checkpoint
            )
        else:
            logger.info(
                'Plan tag sync: %s plans, %s subscribers scanned, %s updated, checkpoint %s',
                stats.plans,
                stats.scanned,
                stats.updated,
                new_checkpoint,
            )
        return stats

    async def _sync_subscriber(
        self,
        plan_id: int,
        subscriber_id: int,
        now: datetime,
        stats: SweepStats,
        checkpoint: datetime | None = None,
    ) -> None:
        stats.scanned += 1
        changes: dict[str, tuple[Any, Any]] = {}

        async with self._session_factory() as db:
            try:
                subscriber = await get_subscriber_for_update(db, subscriber_id)
                if subscriber is not None and subscriber.plan_id == plan_id:
                    changes = update_subscriber_cycle_fields(subscriber, **derive_tag_sync_fields(subscriber, now))

                if checkpoint is not None:
                    await set_checkpoint(db, checkpoint)
                if changes or checkpoint is not None:
                    await db.commit()
            except SQLAlchemyError as error:
                await db.rollback()
                stats.failed += 1
                logger.error('Plan tag sync rolled back: %s', PersistenceConflict(subscriber_id, error))
                return

        if changes:
            stats.updated += 1
            log_cycle_change(
                ChangeSource.SYNC,
                subscriber_id,
                changes,
                plan_id=plan_id,
                policy=describe_policy(resolve_policy(subscriber.plan)),
            )

    # Drift fix

    async def fix_reset_drift(self, now: datetime | None = None) -> SweepStats:
        now = now or _utcnow()
        stats = SweepStats()
        batch_size = settings.CYCLE_BATCH_SIZE
        after_id = 0

        while True:
            async with self._session_factory() as db:
                page = await get_active_planned_subscribers_page(db, now, after_id=after_id, limit=batch_size)
                drifted_ids = [subscriber.id for subscriber in page if self._has_drift(subscriber, now)]
                page_size = len(page)
                last_id = page[-1].id if page else after_id

            stats.scanned += page_size
            for subscriber_id in drifted_ids:
                await self._fix_subscriber(subscriber_id, now, stats)

            if page_size < batch_size:
                break
            after_id = last_id

        if stats.updated or stats.failed:
            logger.info(
                'Reset drift fix: %s scanned, %s corrected, %s failed', stats.scanned, stats.updated, stats.failed
            )
        return stats

    def _expected_next_reset(self, subscriber: Subscriber, now: datetime) -> tuple[bool, datetime | None]:
        policy = resolve_policy(subscriber.plan)
        if not isinstance(policy, CustomPolicy) or policy.interval_days <= 0:
            return False, None
        expected = compute_expected_next_reset(
            policy.interval_days,
            subscriber.last_reset_at,
            subscriber.next_reset_at,
            subscriber.expired_at,
            now,
        )
        return True, expected

    def _has_drift(self, subscriber: Subscriber, now: datetime) -> bool:
        applicable, expected = self._expected_next_reset(subscriber, now)
        return applicable and needs_drift_fix(subscriber, expected, settings.DRIFT_TOLERANCE_SECONDS)

    async def _fix_subscriber(self, subscriber_id: int, now: datetime, stats: SweepStats) -> None:
        changes: dict[str, tuple[Any, Any]] = {}

        async with self._session_factory() as db:
            try:
                subscriber = await get_subscriber_for_update(db, subscriber_id)
                if subscriber is None or subscriber.suspended or subscriber.is_expired_at(now):
                    return

                applicable, expected = self._expected_next_reset(subscriber, now)
                if not applicable or not needs_drift_fix(subscriber, expected, settings.DRIFT_TOLERANCE_SECONDS):
                    return

                changes = update_subscriber_cycle_fields(subscriber, next_reset_at=expected)
                if changes:
                    await db.commit()
            except SQLAlchemyError as error:
                await db.rollback()
                stats.failed += 1
                logger.error('Reset drift fix rolled back: %s', PersistenceConflict(subscriber_id, error))
                return

        if changes:
            stats.updated += 1
            log_cycle_change(
                ChangeSource.SCHEDULED_FIX,
                subscriber_id,
                changes,
                last_reset_at=subscriber.last_reset_at,
            )
