from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cycle_engine.database.crud.subscriber import (
    get_subscriber_by_remnawave_uuid_for_update,
    get_subscriber_for_update,
    update_subscriber_cycle_fields,
)
from cycle_engine.database.database import AsyncSessionLocal
from cycle_engine.database.models import Subscriber
from cycle_engine.exceptions import PersistenceConflict
from cycle_engine.services.cycle_audit import ChangeSource, log_cycle_change
from cycle_engine.services.cycle_calculator import compute_custom_next_reset
from cycle_engine.services.cycle_policy import CustomPolicy, resolve_policy


logger = logging.getLogger(__name__)


class TrafficResetSyncService:
    """Keeps custom-cycle schedules right after a reset done by any subsystem."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory or AsyncSessionLocal

    async def sync_after_reset(
        self,
        db: AsyncSession,
        subscriber: Subscriber,
        now: datetime | None = None,
    ) -> bool:
        """Returns True when ``next_reset_at`` was written. The caller commits."""
        now = now or datetime.now(UTC).replace(tzinfo=None)

        policy = resolve_policy(subscriber.plan)
        if not isinstance(policy, CustomPolicy):
            return False

        candidate = compute_custom_next_reset(policy.interval_days, subscriber.expired_at, now)
        changes = update_subscriber_cycle_fields(subscriber, next_reset_at=candidate)
        if not changes:
            return False

        log_cycle_change(
            ChangeSource.TRAFFIC_RESET,
            subscriber.id,
            changes,
            interval_days=policy.interval_days,
        )
        return True

    async def handle_traffic_reset_event(
        self,
        subscriber_id: int | None = None,
        remnawave_uuid: str | None = None,
        now: datetime | None = None,
        zero_counters: bool = False,
    ) -> bool:
        """Inbound reset notification; runs in its own transaction."""
        if subscriber_id is None and not remnawave_uuid:
            raise ValueError('subscriber_id or remnawave_uuid is required')

        now = now or datetime.now(UTC).replace(tzinfo=None)

        resolved_id = subscriber_id
        async with self._session_factory() as db:
            try:
                if subscriber_id is not None:
                    subscriber = await get_subscriber_for_update(db, subscriber_id)
                else:
                    subscriber = await get_subscriber_by_remnawave_uuid_for_update(db, remnawave_uuid)

                if subscriber is None:
                    logger.warning(
                        'Traffic reset event for unknown subscriber (id=%s, uuid=%s)', subscriber_id, remnawave_uuid
                    )
                    return False
                resolved_id = subscriber.id

                if zero_counters:
                    subscriber.used_upload = 0
                    subscriber.used_download = 0
                    subscriber.last_reset_at = now

                written = await self.sync_after_reset(db, subscriber, now)
                await db.commit()
                return written
            except SQLAlchemyError as error:
                await db.rollback()
                raise PersistenceConflict(resolved_id, error) from error
