"""
Cycle handling for opened orders.

Flow: capture a snapshot of the subscriber, let the caller apply the
order, classify what happened and recompute ``expired_at`` /
``next_reset_at`` for the plan the subscriber ends up on.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cycle_engine.config import settings
from cycle_engine.database.crud.plan import get_plan_by_id
from cycle_engine.database.crud.subscriber import (
    get_subscriber_by_id,
    get_subscriber_for_update,
    update_subscriber_cycle_fields,
)
from cycle_engine.database.database import AsyncSessionLocal
from cycle_engine.database.models import Subscriber
from cycle_engine.exceptions import PersistenceConflict
from cycle_engine.services import cycle_scenario
from cycle_engine.services.cycle_audit import ChangeSource, log_cycle_change
from cycle_engine.services.cycle_calculator import (
    KEEP_CURRENT,
    clamp_to_expiration,
    compute_expiration,
    compute_next_reset,
)
from cycle_engine.services.cycle_policy import EffectivePolicy, describe_policy, resolve_policy
from cycle_engine.services.cycle_scenario import Order, OrderScenario, OrderSnapshot, classify_scenario


logger = logging.getLogger(__name__)

ApplyOrder = Callable[[AsyncSession, Subscriber], Awaitable[Any]]


@dataclass
class OrderCycleResult:
    subscriber_id: int
    scenario: OrderScenario | None = None
    policy: EffectivePolicy | None = None
    changes: dict[str, tuple[Any, Any]] = field(default_factory=dict)
    skipped_reason: str | None = None

    @property
    def changed(self) -> bool:
        return bool(self.changes)


def _utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class OrderCycleService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory or AsyncSessionLocal

    async def capture_snapshot(
        self,
        db: AsyncSession,
        order: Order,
        now: datetime | None = None,
    ) -> OrderSnapshot | None:
        """Must run before the order touches the subscriber."""
        subscriber = await get_subscriber_by_id(db, order.subscriber_id)
        if subscriber is None:
            logger.warning('Order %s: subscriber %s not found, no snapshot taken', order.id, order.subscriber_id)
            return None
        return cycle_scenario.capture_snapshot(order, subscriber, now or _utcnow())

    async def handle_order_opened(
        self,
        db: AsyncSession,
        order: Order,
        snapshot: OrderSnapshot | None,
        now: datetime | None = None,
    ) -> OrderCycleResult:
        """Recompute cycle fields after the order was applied. The caller commits."""
        now = now or _utcnow()
        result = OrderCycleResult(subscriber_id=order.subscriber_id)

        subscriber = await get_subscriber_by_id(db, order.subscriber_id)
        if subscriber is None:
            logger.warning('Order %s: subscriber %s not found', order.id, order.subscriber_id)
            result.skipped_reason = 'subscriber_not_found'
            return result

        plan = await get_plan_by_id(db, subscriber.plan_id) if subscriber.plan_id is not None else None
        policy = resolve_policy(plan)
        if policy is None:
            logger.info('Order %s: subscriber %s has no plan, cycle left untouched', order.id, subscriber.id)
            result.skipped_reason = 'no_plan'
            return result

        scenario = classify_scenario(snapshot, order, subscriber)
        result.scenario = scenario
        result.policy = policy

        expiration = subscriber.expired_at
        if settings.ENABLE_EXPIRED_AT_CALCULATION:
            prior_expiration = snapshot.expired_at if snapshot is not None else subscriber.expired_at
            expiration = compute_expiration(scenario, policy, order.period, prior_expiration, now)

        next_reset = compute_next_reset(scenario, policy, snapshot, expiration, now)
        if next_reset is KEEP_CURRENT:
            # Calendar-aligned schedule stays, but never past the new expiration
            next_reset = clamp_to_expiration(subscriber.next_reset_at, expiration)

        result.changes = update_subscriber_cycle_fields(subscriber, expired_at=expiration, next_reset_at=next_reset)
        log_cycle_change(
            ChangeSource.ORDER_OPEN,
            subscriber.id,
            result.changes,
            order_id=order.id,
            scenario=scenario.value,
            policy=describe_policy(policy),
        )

        logger.debug(
            'Order %s for subscriber %s classified as %s under %s',
            order.id,
            subscriber.id,
            scenario.value,
            describe_policy(policy),
        )
        return result

    async def process_order(
        self,
        order: Order,
        apply_order: ApplyOrder,
        now: datetime | None = None,
    ) -> OrderCycleResult | None:
        """Snapshot, apply and recompute in a single transaction."""
        now = now or _utcnow()

        async with self._session_factory() as db:
            try:
                subscriber = await get_subscriber_for_update(db, order.subscriber_id)
                if subscriber is None:
                    logger.warning('Order %s: subscriber %s not found', order.id, order.subscriber_id)
                    return None

                snapshot = cycle_scenario.capture_snapshot(order, subscriber, now)
                await apply_order(db, subscriber)
                await db.flush()

                result = await self.handle_order_opened(db, order, snapshot, now)
                await db.commit()
                return result
            except SQLAlchemyError as error:
                await db.rollback()
                raise PersistenceConflict(order.subscriber_id, error) from error
            except Exception:
                await db.rollback()
                raise
