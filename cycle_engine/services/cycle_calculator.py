"""
Pure expiration / next-reset arithmetic.

Every function is deterministic for a given ``now``. Custom cycles are
counted in whole days, structured cycles in calendar months (or years)
with end-of-month clamping from ``dateutil.relativedelta``.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from enum import Enum

from dateutil.relativedelta import relativedelta

from cycle_engine.exceptions import PeriodUnresolvable
from cycle_engine.services.cycle_policy import CustomPolicy, EffectivePolicy, ResetMethod, StructuredPolicy
from cycle_engine.services.cycle_scenario import OrderPeriod, OrderScenario, OrderSnapshot


logger = logging.getLogger(__name__)


class _Keep(Enum):
    CURRENT = 'keep_current'


# Returned by compute_next_reset when the field belongs to the structured reset mechanism
KEEP_CURRENT = _Keep.CURRENT


def get_period_multiplier(period: str | OrderPeriod | None) -> int:
    if period is None:
        return 1
    try:
        return OrderPeriod.parse(period).multiplier
    except PeriodUnresolvable as error:
        logger.warning('%s, using multiplier 1', error)
        return 1


def clamp_to_expiration(value: datetime | None, expiration: datetime | None) -> datetime | None:
    if value is None or expiration is None:
        return value
    return min(value, expiration)


def apply_time_of_day(value: datetime, now: datetime) -> datetime:
    return datetime.combine(value.date(), now.time())


def _add_cycles(base: datetime, policy: EffectivePolicy, multiplier: int) -> datetime:
    if isinstance(policy, CustomPolicy) and policy.expired_days:
        return base + timedelta(days=policy.expired_days * multiplier)
    return base + relativedelta(months=multiplier)


def compute_expiration(
    scenario: OrderScenario,
    policy: EffectivePolicy,
    period: str | OrderPeriod | None,
    prior_expiration: datetime | None,
    now: datetime,
) -> datetime:
    multiplier = get_period_multiplier(period)

    if scenario is OrderScenario.RENEWAL and prior_expiration is not None:
        return _add_cycles(prior_expiration, policy, multiplier)

    return _add_cycles(now, policy, multiplier)


def compute_next_reset(
    scenario: OrderScenario,
    policy: EffectivePolicy,
    snapshot: OrderSnapshot | None,
    expiration: datetime | None,
    now: datetime,
) -> datetime | None | _Keep:
    if isinstance(policy, StructuredPolicy):
        return KEEP_CURRENT

    if policy.interval_days <= 0:
        return None

    if (
        scenario is OrderScenario.RENEWAL
        and snapshot is not None
        and snapshot.next_reset_at is not None
        and snapshot.next_reset_at > now
    ):
        return clamp_to_expiration(snapshot.next_reset_at, expiration)

    return clamp_to_expiration(now + timedelta(days=policy.interval_days), expiration)


def compute_custom_next_reset(interval_days: int, expiration: datetime | None, now: datetime) -> datetime | None:
    if interval_days <= 0:
        return None
    return clamp_to_expiration(now + timedelta(days=interval_days), expiration)


def compute_expected_next_reset(
    interval_days: int,
    last_reset_at: datetime | None,
    stored_next_reset: datetime | None,
    expiration: datetime | None,
    now: datetime,
) -> datetime | None:
    """Where the schedule should be, catching up over any number of missed cycles."""
    if interval_days <= 0:
        return None

    interval = timedelta(days=interval_days)

    if last_reset_at is not None:
        base = last_reset_at
    elif stored_next_reset is not None:
        base = stored_next_reset - interval
    else:
        base = now

    expected = base + interval
    if expected <= now:
        missed = math.floor((now - expected) / interval) + 1
        expected += interval * missed

    return clamp_to_expiration(expected, expiration)


def shorten_expiration_for_early_reset(
    policy: EffectivePolicy,
    expiration: datetime,
    now: datetime,
) -> datetime | None:
    """Expiration after paying one cycle for an early reset; None when the policy has no such rule."""
    if isinstance(policy, CustomPolicy):
        if policy.interval_days <= 0:
            return None
        return apply_time_of_day(expiration - timedelta(days=policy.interval_days), now)

    if policy.method is ResetMethod.MONTHLY_ANNIVERSARY:
        days_diff = expiration.day - now.day
        if days_diff > 0:
            shortened = expiration - timedelta(days=days_diff)
        else:
            shortened = expiration - relativedelta(months=1)
        return apply_time_of_day(shortened, now)

    if policy.method is ResetMethod.FIRST_DAY_OF_MONTH:
        return expiration - relativedelta(months=1)

    return None


def compute_structured_next_reset(
    method: ResetMethod,
    expiration: datetime | None,
    now: datetime,
) -> datetime | None:
    """Next calendar-aligned reset after ``now``; anniversaries anchor on the expiration date."""
    if method is ResetMethod.NEVER:
        return None

    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    anchor = expiration or now

    if method is ResetMethod.FIRST_DAY_OF_MONTH:
        candidate = midnight + relativedelta(months=1, day=1)
    elif method is ResetMethod.MONTHLY_ANNIVERSARY:
        candidate = midnight + relativedelta(day=anchor.day)
        if candidate <= now:
            candidate = midnight + relativedelta(months=1, day=anchor.day)
    elif method is ResetMethod.FIRST_DAY_OF_YEAR:
        candidate = midnight + relativedelta(years=1, month=1, day=1)
    else:
        candidate = midnight + relativedelta(month=anchor.month, day=anchor.day)
        if candidate <= now:
            candidate = midnight + relativedelta(years=1, month=anchor.month, day=anchor.day)

    return clamp_to_expiration(candidate, expiration)
