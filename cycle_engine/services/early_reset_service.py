"""
Early traffic reset for subscribers who used up their quota.

An early reset is paid for with one cycle of the subscription: the
expiration moves back by a cycle, the traffic is reset right away and,
for custom cycles, the next reset is rescheduled from now.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cycle_engine.config import settings
from cycle_engine.database.crud.subscriber import (
    get_exhausted_subscribers_page,
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
    shorten_expiration_for_early_reset,
)
from cycle_engine.services.cycle_policy import CustomPolicy, EffectivePolicy, ResetMethod, resolve_policy
from cycle_engine.services.traffic_reset_service import TrafficResetService


logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400
# Remaining days a calendar-month plan needs before it can pay for an early reset
STRUCTURED_CYCLE_DAYS = 30

_EARLY_RESET_METHODS = (ResetMethod.MONTHLY_ANNIVERSARY, ResetMethod.FIRST_DAY_OF_MONTH)


class ResetPrimitive(Protocol):
    async def perform_reset(
        self,
        db: AsyncSession,
        subscriber: Subscriber,
        source: ChangeSource,
        now: datetime | None = None,
    ) -> Any: ...


@dataclass
class EarlyResetStats:
    scanned: int = 0
    reset: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass(frozen=True)
class EarlyResetDecision:
    eligible: bool
    reason: str | None = None
    policy: EffectivePolicy | None = None
    new_expiration: datetime | None = None


def _refuse(reason: str, policy: EffectivePolicy | None = None) -> EarlyResetDecision:
    return EarlyResetDecision(eligible=False, reason=reason, policy=policy)


def check_eligibility(subscriber: Subscriber, now: datetime, threshold: float | None = None) -> EarlyResetDecision:
    threshold = settings.TRAFFIC_EXHAUSTION_THRESHOLD if threshold is None else threshold

    if subscriber.suspended:
        return _refuse('suspended')
    if not subscriber.is_metered:
        return _refuse('unmetered')
    if subscriber.used_traffic < subscriber.traffic_quota * threshold:
        return _refuse('quota_not_exhausted')

    policy = resolve_policy(subscriber.plan)
    if policy is None:
        return _refuse('no_plan')

    if not settings.is_early_reset_enabled_for(policy.kind):
        return _refuse('disabled_for_policy', policy)

    remaining_seconds = subscriber.remaining_seconds(now)
    if remaining_seconds is None:
        return _refuse('never_expires', policy)

    remaining_days = remaining_seconds / SECONDS_PER_DAY
    if isinstance(policy, CustomPolicy):
        if policy.interval_days <= 0:
            return _refuse('no_custom_cycle', policy)
        if remaining_days <= policy.interval_days:
            return _refuse('not_enough_time', policy)
    else:
        if policy.method not in _EARLY_RESET_METHODS:
            return _refuse('method_not_eligible', policy)
        if remaining_days <= STRUCTURED_CYCLE_DAYS:
            return _refuse('not_enough_time', policy)

    new_expiration = shorten_expiration_for_early_reset(policy, subscriber.expired_at, now)
    if new_expiration is None or new_expiration <= now:
        return _refuse('unaffordable', policy)

    return EarlyResetDecision(eligible=True, policy=policy, new_expiration=new_expiration)


class EarlyResetService:
    def __init__(
        self,
        reset_primitive: ResetPrimitive | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        self._reset_primitive = reset_primitive or TrafficResetService()
        self._session_factory = session_factory or AsyncSessionLocal

    async def run(self, now: datetime | None = None) -> EarlyResetStats:
        now = now or datetime.now(UTC).replace(tzinfo=None)
        stats = EarlyResetStats()
        batch_size = settings.CYCLE_BATCH_SIZE
        after_id = 0

        while True:
            async with self._session_factory() as db:
                page = await get_exhausted_subscribers_page(
                    db,
                    settings.TRAFFIC_EXHAUSTION_THRESHOLD,
                    after_id=after_id,
                    limit=batch_size,
                )
                candidate_ids = [subscriber.id for subscriber in page]

            if not candidate_ids:
                break

            for subscriber_id in candidate_ids:
                stats.scanned += 1
                outcome = await self._process_candidate(subscriber_id, now)
                if outcome == 'reset':
                    stats.reset += 1
                elif outcome == 'failed':
                    stats.failed += 1
                else:
                    stats.skipped += 1

            after_id = candidate_ids[-1]
            if len(candidate_ids) < batch_size:
                break

        logger.info(
            'Early reset pass finished: scanned=%s reset=%s skipped=%s failed=%s',
            stats.scanned,
            stats.reset,
            stats.skipped,
            stats.failed,
        )
        return stats

    async def _process_candidate(self, subscriber_id: int, now: datetime) -> str:
        async with self._session_factory() as db:
            try:
                subscriber = await get_subscriber_for_update(db, subscriber_id)
                if subscriber is None:
                    return 'skipped'

                decision = check_eligibility(subscriber, now)
                if not decision.eligible:
                    logger.debug('Early reset skipped for subscriber %s: %s', subscriber_id, decision.reason)
                    return 'skipped'

                before = {'expired_at': subscriber.expired_at, 'next_reset_at': subscriber.next_reset_at}

                update_subscriber_cycle_fields(subscriber, expired_at=decision.new_expiration)
                await self._reset_primitive.perform_reset(db, subscriber, ChangeSource.EARLY_RESET, now)

                if isinstance(decision.policy, CustomPolicy):
                    next_reset = compute_custom_next_reset(
                        decision.policy.interval_days, decision.new_expiration, now
                    )
                else:
                    next_reset = clamp_to_expiration(subscriber.next_reset_at, decision.new_expiration)
                update_subscriber_cycle_fields(subscriber, next_reset_at=next_reset)

                await db.commit()
            except SQLAlchemyError as error:
                await db.rollback()
                conflict = PersistenceConflict(subscriber_id, error)
                logger.error('Early reset rolled back: %s', conflict)
                return 'failed'
            except Exception:
                await db.rollback()
                logger.exception('Early reset failed for subscriber %s', subscriber_id)
                return 'failed'

        changes = {
            field: (value, getattr(subscriber, field))
            for field, value in before.items()
            if getattr(subscriber, field) != value
        }
        log_cycle_change(
            ChangeSource.EARLY_RESET,
            subscriber_id,
            changes,
            policy=decision.policy.kind,
        )
        return 'reset'
