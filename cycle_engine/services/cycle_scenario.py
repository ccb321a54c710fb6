"""Order scenarios: what an opened order means for the subscriber's cycle."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from cycle_engine.exceptions import PeriodUnresolvable


logger = logging.getLogger(__name__)


class OrderType(Enum):
    NEW_PURCHASE = 'new_purchase'
    RENEWAL = 'renewal'
    UPGRADE = 'upgrade'

    @classmethod
    def parse(cls, value) -> OrderType:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or '').strip().lower())
        except ValueError:
            logger.warning('Unknown order type %r, treating as new purchase', value)
            return cls.NEW_PURCHASE


class OrderPeriod(Enum):
    MONTHLY = 'monthly'
    QUARTERLY = 'quarterly'
    HALF_YEARLY = 'half_yearly'
    YEARLY = 'yearly'
    TWO_YEARLY = 'two_yearly'
    THREE_YEARLY = 'three_yearly'

    @classmethod
    def parse(cls, value) -> OrderPeriod:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or '').strip().lower())
        except ValueError as error:
            raise PeriodUnresolvable(value) from error

    @property
    def multiplier(self) -> int:
        return _PERIOD_MULTIPLIERS[self]


_PERIOD_MULTIPLIERS: dict[OrderPeriod, int] = {
    OrderPeriod.MONTHLY: 1,
    OrderPeriod.QUARTERLY: 3,
    OrderPeriod.HALF_YEARLY: 6,
    OrderPeriod.YEARLY: 12,
    OrderPeriod.TWO_YEARLY: 24,
    OrderPeriod.THREE_YEARLY: 36,
}


class OrderScenario(Enum):
    NEW_PURCHASE = 'new_purchase'
    EXPIRED_REPURCHASE = 'expired_repurchase'
    RENEWAL = 'renewal'
    PLAN_CHANGE = 'plan_change'


@dataclass
class Order:
    id: int | str
    subscriber_id: int
    plan_id: int | None
    type: OrderType = OrderType.NEW_PURCHASE
    period: str | None = OrderPeriod.MONTHLY.value


@dataclass(frozen=True)
class OrderSnapshot:
    """Subscriber state captured right before an order is applied."""

    order_id: int | str
    plan_id: int | None
    expired_at: datetime | None
    next_reset_at: datetime | None
    had_plan: bool
    was_expired: bool


def capture_snapshot(order: Order, subscriber, now: datetime) -> OrderSnapshot:
    expired_at = subscriber.expired_at
    return OrderSnapshot(
        order_id=order.id,
        plan_id=subscriber.plan_id,
        expired_at=expired_at,
        next_reset_at=subscriber.next_reset_at,
        had_plan=subscriber.plan_id is not None,
        was_expired=expired_at is not None and expired_at <= now,
    )


def classify_scenario(snapshot: OrderSnapshot | None, order: Order, subscriber) -> OrderScenario:
    """First matching rule wins; an expired account counts as a fresh start even on a new plan."""
    if snapshot is None:
        order_type = OrderType.parse(order.type)
        if order_type is OrderType.RENEWAL:
            return OrderScenario.RENEWAL
        if order_type is OrderType.UPGRADE:
            return OrderScenario.PLAN_CHANGE
        return OrderScenario.NEW_PURCHASE

    if not snapshot.had_plan:
        return OrderScenario.NEW_PURCHASE

    if snapshot.was_expired:
        return OrderScenario.EXPIRED_REPURCHASE

    if snapshot.plan_id != subscriber.plan_id:
        return OrderScenario.PLAN_CHANGE

    return OrderScenario.RENEWAL
