from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cycle_engine.database.models import EngineState


PLAN_TAG_CHECKPOINT_KEY = 'plan_tag_checkpoint'


async def get_checkpoint(db: AsyncSession, key: str = PLAN_TAG_CHECKPOINT_KEY) -> datetime | None:
    result = await db.execute(select(EngineState.value).where(EngineState.key == key))
    value = result.scalar_one_or_none()
    if not value:
        return None
    return datetime.fromisoformat(value)


async def set_checkpoint(db: AsyncSession, value: datetime, key: str = PLAN_TAG_CHECKPOINT_KEY) -> None:
    """Stage the checkpoint in the caller's transaction."""
    state = await db.get(EngineState, key)
    if state is None:
        db.add(EngineState(key=key, value=value.isoformat()))
    else:
        state.value = value.isoformat()
