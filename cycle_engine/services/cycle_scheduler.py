from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from cycle_engine.config import settings
from cycle_engine.exceptions import LockContention
from cycle_engine.services.early_reset_service import EarlyResetService
from cycle_engine.services.execution_guard import ExecutionGuard
from cycle_engine.services.reconciliation_service import ReconciliationService


logger = logging.getLogger(__name__)

PLAN_TAG_SYNC_JOB = 'plan_tag_sync'
RESET_DRIFT_FIX_JOB = 'reset_drift_fix'
EARLY_RESET_JOB = 'early_reset'

JOB_NAMES = (PLAN_TAG_SYNC_JOB, RESET_DRIFT_FIX_JOB, EARLY_RESET_JOB)


class CycleScheduler:
    """Runs the engine's batch jobs, once per tick or in a polling loop."""

    def __init__(
        self,
        guard: ExecutionGuard,
        reconciliation: ReconciliationService | None = None,
        early_reset: EarlyResetService | None = None,
    ):
        self.guard = guard
        self.reconciliation = reconciliation or ReconciliationService()
        self.early_reset = early_reset or EarlyResetService()
        self._jobs: dict[str, Callable[[datetime], Awaitable[Any]]] = {
            PLAN_TAG_SYNC_JOB: self.reconciliation.sync_plan_tag_changes,
            RESET_DRIFT_FIX_JOB: self.reconciliation.fix_reset_drift,
            EARLY_RESET_JOB: self.early_reset.run,
        }
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_job(self, job_name: str, now: datetime | None = None, force: bool = False) -> Any | None:
        """Single tick of a job; returns the job's stats, or None when the run was skipped."""
        if job_name not in self._jobs:
            raise ValueError(f'Unknown job: {job_name}')

        if not settings.CYCLE_ENGINE_ENABLED:
            logger.debug('Cycle engine disabled, skipping %s', job_name)
            return None

        interval = settings.get_job_interval_minutes(job_name)
        if interval <= 0 and not force:
            logger.debug('Job %s disabled (interval 0)', job_name)
            return None

        now = now or datetime.now(UTC).replace(tzinfo=None)
        if not force and not await self.guard.is_due(job_name, interval, now):
            return None

        try:
            async with self.guard.hold(job_name):
                logger.info('Running job %s', job_name)
                result = await self._jobs[job_name](now)
                await self.guard.mark_run(job_name, now)
                return result
        except LockContention as error:
            logger.info('%s, skipping this tick', error)
            return None

    async def run_all(self, now: datetime | None = None, force: bool = False) -> dict[str, Any]:
        results = {}
        for job_name in JOB_NAMES:
            try:
                results[job_name] = await self.run_job(job_name, now=now, force=force)
            except Exception:
                logger.exception('Job %s failed', job_name)
                results[job_name] = None
        return results

    async def _loop(self, poll_seconds: int) -> None:
        logger.info('Cycle scheduler started (poll every %ss)', poll_seconds)
        while not self._stop_event.is_set():
            await self.run_all()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=poll_seconds)
            except TimeoutError:
                continue
        logger.info('Cycle scheduler stopped')

    def start(self, poll_seconds: int = 60) -> asyncio.Task:
        if self.is_running:
            return self._task
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop(poll_seconds))
        return self._task

    async def stop(self) -> None:
        if not self.is_running:
            return
        self._stop_event.set()
        await self._task
        self._task = None
