import logging
from datetime import datetime
from typing import Any

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cycle_engine.config import settings
from cycle_engine.database.models import Plan, Subscriber


logger = logging.getLogger(__name__)

_CYCLE_FIELDS = ('expired_at', 'next_reset_at')


async def get_subscriber_by_id(db: AsyncSession, subscriber_id: int) -> Subscriber | None:
    result = await db.execute(
        select(Subscriber).options(selectinload(Subscriber.plan)).where(Subscriber.id == subscriber_id)
    )
    return result.scalar_one_or_none()


async def _get_locked_subscriber(db: AsyncSession, criterion) -> Subscriber | None:
    query = select(Subscriber).options(selectinload(Subscriber.plan)).where(criterion)
    if settings.is_postgresql():
        query = query.with_for_update(of=Subscriber)
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def get_subscriber_for_update(db: AsyncSession, subscriber_id: int) -> Subscriber | None:
    """Load a subscriber for a read-then-write cycle; the row is locked on PostgreSQL."""
    return await _get_locked_subscriber(db, Subscriber.id == subscriber_id)


async def get_subscriber_by_remnawave_uuid_for_update(db: AsyncSession, remnawave_uuid: str) -> Subscriber | None:
    return await _get_locked_subscriber(db, Subscriber.remnawave_uuid == remnawave_uuid)


async def get_plan_subscribers_page(
    db: AsyncSession,
    plan_id: int,
    after_id: int = 0,
    limit: int = 100,
) -> list[Subscriber]:
    result = await db.execute(
        select(Subscriber)
        .where(and_(Subscriber.plan_id == plan_id, Subscriber.id > after_id))
        .order_by(Subscriber.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_exhausted_subscribers_page(
    db: AsyncSession,
    threshold: float,
    after_id: int = 0,
    limit: int = 100,
) -> list[Subscriber]:
    """Metered, non-suspended subscribers with a plan whose usage reached ``threshold`` of the quota."""
    result = await db.execute(
        select(Subscriber)
        .options(selectinload(Subscriber.plan))
        .where(
            and_(
                Subscriber.id > after_id,
                Subscriber.traffic_quota > 0,
                Subscriber.suspended.is_(False),
                Subscriber.plan_id.is_not(None),
                (Subscriber.used_upload + Subscriber.used_download) >= Subscriber.traffic_quota * threshold,
            )
        )
        .order_by(Subscriber.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_active_planned_subscribers_page(
    db: AsyncSession,
    now: datetime,
    after_id: int = 0,
    limit: int = 100,
) -> list[Subscriber]:
    """Non-suspended subscribers with a plan that are not expired (or never expire)."""
    result = await db.execute(
        select(Subscriber)
        .options(selectinload(Subscriber.plan))
        .join(Plan, Plan.id == Subscriber.plan_id)
        .where(
            and_(
                Subscriber.id > after_id,
                Subscriber.suspended.is_(False),
                or_(Subscriber.expired_at.is_(None), Subscriber.expired_at > now),
            )
        )
        .order_by(Subscriber.id)
        .limit(limit)
    )
    return list(result.scalars().all())


def update_subscriber_cycle_fields(subscriber: Subscriber, **values: Any) -> dict[str, tuple[Any, Any]]:
    """Assign only values that differ; returns field -> (before, after) for what changed."""
    changes: dict[str, tuple[Any, Any]] = {}
    for field, new_value in values.items():
        if field not in _CYCLE_FIELDS:
            raise ValueError(f'Not a cycle field: {field}')
        current = getattr(subscriber, field)
        if current != new_value:
            setattr(subscriber, field, new_value)
            changes[field] = (current, new_value)
    return changes
