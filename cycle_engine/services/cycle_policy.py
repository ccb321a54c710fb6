"""
Effective reset-cycle policy of a plan.

A plan either declares its own cycle through an ``interval_days:N`` tag
(custom policy) or follows a calendar-aligned reset method (structured
policy). Tags are normalized once here; everything downstream works with
the typed policy objects.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any

from cycle_engine.config import settings
from cycle_engine.exceptions import PolicyUnresolvable


logger = logging.getLogger(__name__)

INTERVAL_DAYS_PREFIX = 'interval_days:'
EXPIRED_DAYS_PREFIX = 'expired_days:'

_POSITIVE_INT = re.compile(r'^\d+$')


class ResetMethod(Enum):
    NEVER = 'never'
    MONTHLY_ANNIVERSARY = 'monthly_anniversary'
    FIRST_DAY_OF_MONTH = 'first_day_of_month'
    YEARLY_ANNIVERSARY = 'yearly_anniversary'
    FIRST_DAY_OF_YEAR = 'first_day_of_year'

    @classmethod
    def parse(cls, value: Any) -> ResetMethod | None:
        if value is None:
            return None
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        if not normalized:
            return None
        try:
            return cls(normalized)
        except ValueError:
            return None


@dataclass(frozen=True)
class CustomPolicy:
    interval_days: int
    expired_days: int | None = None

    @property
    def kind(self) -> str:
        return 'custom'


@dataclass(frozen=True)
class StructuredPolicy:
    method: ResetMethod
    expired_days: int | None = None

    @property
    def kind(self) -> str:
        return self.method.value


EffectivePolicy = CustomPolicy | StructuredPolicy


def _split_tag_string(raw: str) -> list[str]:
    stripped = raw.strip()
    if stripped.startswith('['):
        try:
            decoded = json.loads(stripped)
        except json.JSONDecodeError as error:
            raise PolicyUnresolvable(f'Malformed tag list: {raw!r}') from error
        if not isinstance(decoded, list):
            raise PolicyUnresolvable(f'Malformed tag list: {raw!r}')
        return [part for item in decoded if item is not None for part in str(item).split(',')]
    return stripped.split(',')


def normalize_tags(raw: Any) -> tuple[str, ...]:
    """Canonical ordered tag sequence from a list, a comma string or a JSON-array string."""
    if raw is None:
        return ()

    if isinstance(raw, str):
        parts = _split_tag_string(raw)
    elif isinstance(raw, (list, tuple, set, frozenset)):
        parts = [part for item in raw if item is not None for part in str(item).split(',')]
    elif isinstance(raw, dict):
        raise PolicyUnresolvable(f'Unsupported tag payload: {raw!r}')
    else:
        parts = str(raw).split(',')

    return tuple(tag for tag in (part.strip() for part in parts) if tag)


def parse_tag_days(tags: tuple[str, ...], prefix: str) -> int | None:
    """First valid positive integer declared under ``prefix``; invalid values are skipped."""
    for tag in tags:
        if not tag.startswith(prefix):
            continue
        value = tag[len(prefix) :].strip()
        if _POSITIVE_INT.match(value) and int(value) > 0:
            return int(value)
    return None


def _safe_normalize(plan) -> tuple[str, ...]:
    try:
        return normalize_tags(getattr(plan, 'tags', None))
    except PolicyUnresolvable as error:
        logger.warning('Plan %s has unreadable tags, falling back to structured policy: %s', plan.id, error)
        return ()


@lru_cache(maxsize=1024)
def _resolve_cached(tags: tuple[str, ...], reset_method: str | None, default_method: str) -> EffectivePolicy:
    expired_days = parse_tag_days(tags, EXPIRED_DAYS_PREFIX)
    interval_days = parse_tag_days(tags, INTERVAL_DAYS_PREFIX)
    if interval_days is not None:
        return CustomPolicy(interval_days=interval_days, expired_days=expired_days)

    method = ResetMethod.parse(reset_method)
    if method is None:
        if reset_method not in (None, ''):
            logger.warning('Unknown reset method %r, using default %s', reset_method, default_method)
        method = ResetMethod(default_method)
    return StructuredPolicy(method=method, expired_days=expired_days)


def resolve_policy(plan) -> EffectivePolicy | None:
    """Effective policy of a plan, or None when there is no plan (inactive subscriber)."""
    if plan is None:
        return None

    tags = _safe_normalize(plan)
    reset_method = getattr(plan, 'reset_method', None)
    if reset_method is not None and not isinstance(reset_method, str):
        reset_method = getattr(reset_method, 'value', str(reset_method))

    return _resolve_cached(tags, reset_method, settings.get_default_reset_method())


def plan_has_cycle_tags(plan) -> bool:
    if plan is None:
        return False
    return any(tag.startswith((INTERVAL_DAYS_PREFIX, EXPIRED_DAYS_PREFIX)) for tag in _safe_normalize(plan))


def get_batch_base_days(policy: EffectivePolicy) -> int:
    """Expiration length used when no order period is known."""
    if policy.expired_days:
        return policy.expired_days
    if isinstance(policy, CustomPolicy) and policy.interval_days > 0:
        return policy.interval_days
    return settings.DEFAULT_INTERVAL_DAYS


def describe_policy(policy: EffectivePolicy | None) -> str:
    if policy is None:
        return 'inactive'
    if isinstance(policy, CustomPolicy):
        return f'custom/{policy.interval_days}d'
    return policy.method.value
