"""
Default traffic-reset primitive.

Zeroes the usage counters of a subscriber (on the panel too, when it is
configured), stamps ``last_reset_at`` and records a ``TrafficResetLog``
row. Calendar-aligned plans get their next reset scheduled here; custom
cycles are rescheduled by the engine after the reset.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from cycle_engine.config import settings
from cycle_engine.database.crud.subscriber import update_subscriber_cycle_fields
from cycle_engine.database.models import Subscriber, TrafficResetLog
from cycle_engine.external.remnawave_api import RemnaWaveAPI
from cycle_engine.services.cycle_audit import ChangeSource, log_cycle_change
from cycle_engine.services.cycle_calculator import compute_structured_next_reset
from cycle_engine.services.cycle_policy import StructuredPolicy, resolve_policy


logger = logging.getLogger(__name__)


class TrafficResetService:
    def __init__(self, api_factory=None):
        self._api_factory = api_factory

    def _build_api(self) -> RemnaWaveAPI | None:
        if self._api_factory is not None:
            return self._api_factory()
        if not settings.is_remnawave_configured():
            return None
        return RemnaWaveAPI(**settings.get_remnawave_auth_params())

    async def _reset_on_panel(self, subscriber: Subscriber) -> None:
        if not subscriber.remnawave_uuid:
            return

        api = self._build_api()
        if api is None:
            return

        async with api:
            panel_user = await api.reset_user_traffic(subscriber.remnawave_uuid)

        logger.info(
            'Panel traffic reset for subscriber %s (uuid=%s, used=%s)',
            subscriber.id,
            panel_user.uuid,
            panel_user.used_traffic_bytes,
        )

    async def perform_reset(
        self,
        db: AsyncSession,
        subscriber: Subscriber,
        source: ChangeSource | str,
        now: datetime | None = None,
    ) -> None:
        """Reset usage in the caller's transaction. Panel errors propagate."""
        now = now or datetime.now(UTC).replace(tzinfo=None)
        source_value = source.value if isinstance(source, ChangeSource) else str(source)

        await self._reset_on_panel(subscriber)

        db.add(
            TrafficResetLog(
                subscriber_id=subscriber.id,
                source=source_value,
                used_upload_before=subscriber.used_upload or 0,
                used_download_before=subscriber.used_download or 0,
                reset_at=now,
            )
        )

        subscriber.used_upload = 0
        subscriber.used_download = 0
        subscriber.last_reset_at = now

        policy = resolve_policy(subscriber.plan)
        if isinstance(policy, StructuredPolicy):
            next_reset = compute_structured_next_reset(policy.method, subscriber.expired_at, now)
            changes = update_subscriber_cycle_fields(subscriber, next_reset_at=next_reset)
            log_cycle_change(ChangeSource.TRAFFIC_RESET, subscriber.id, changes, reset_method=policy.method.value)

        logger.info('Traffic reset for subscriber %s (source=%s)', subscriber.id, source_value)
