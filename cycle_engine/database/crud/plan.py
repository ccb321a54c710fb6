from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cycle_engine.database.models import Plan


async def get_plan_by_id(db: AsyncSession, plan_id: int) -> Plan | None:
    result = await db.execute(select(Plan).where(Plan.id == plan_id))
    return result.scalar_one_or_none()


async def get_plans_updated_since(db: AsyncSession, since: datetime | None) -> list[Plan]:
    query = select(Plan).order_by(Plan.updated_at, Plan.id)
    if since is not None:
        query = query.where(Plan.updated_at > since)
    result = await db.execute(query)
    return list(result.scalars().all())
