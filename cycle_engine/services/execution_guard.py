"""
Cross-process guard for scheduled jobs.

A named Redis lock (``SET NX EX``) gives at most one concurrent run per
job across every instance; a stuck run is bounded by the lock TTL. A
last-run timestamp per job lets ticks skip jobs whose cadence has not
elapsed yet.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

import redis.asyncio as redis

from cycle_engine.config import settings
from cycle_engine.exceptions import LockContention


logger = logging.getLogger(__name__)

# Delete the lock only while it still holds our token
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

# Last-run marks outlive the slowest cadence by a wide margin
_LAST_RUN_TTL_SECONDS = 7 * 24 * 60 * 60


def _decode(value) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode('utf-8')
    return str(value)


class ExecutionGuard:
    def __init__(
        self,
        redis_client: redis.Redis,
        lock_ttl_seconds: int | None = None,
        key_prefix: str | None = None,
    ):
        self.redis = redis_client
        self.lock_ttl_seconds = lock_ttl_seconds or settings.JOB_LOCK_TTL_SECONDS
        self.key_prefix = key_prefix or settings.JOB_LOCK_PREFIX

    @classmethod
    def from_url(cls, url: str | None = None, lock_ttl_seconds: int | None = None) -> ExecutionGuard:
        return cls(redis.from_url(url or settings.REDIS_URL), lock_ttl_seconds)

    def _lock_key(self, job_name: str) -> str:
        return f'{self.key_prefix}:lock:{job_name}'

    def _last_run_key(self, job_name: str) -> str:
        return f'{self.key_prefix}:last_run:{job_name}'

    async def acquire(self, job_name: str) -> str | None:
        """Token of the acquired lock, or None when another run holds it."""
        token = uuid.uuid4().hex
        acquired = await self.redis.set(self._lock_key(job_name), token, nx=True, ex=self.lock_ttl_seconds)
        if not acquired:
            return None
        logger.debug('Lock acquired for job %s (ttl=%ss)', job_name, self.lock_ttl_seconds)
        return token

    async def release(self, job_name: str, token: str) -> bool:
        released = await self.redis.eval(_RELEASE_SCRIPT, 1, self._lock_key(job_name), token)
        if not released:
            logger.warning('Lock for job %s expired before release', job_name)
            return False
        return True

    @asynccontextmanager
    async def hold(self, job_name: str) -> AsyncIterator[str]:
        token = await self.acquire(job_name)
        if token is None:
            raise LockContention(job_name)
        try:
            yield token
        finally:
            await self.release(job_name, token)

    async def get_last_run(self, job_name: str) -> datetime | None:
        value = _decode(await self.redis.get(self._last_run_key(job_name)))
        if not value:
            return None
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            logger.warning('Ignoring malformed last-run mark for job %s: %r', job_name, value)
            return None

    async def mark_run(self, job_name: str, when: datetime) -> None:
        await self.redis.set(self._last_run_key(job_name), when.isoformat(), ex=_LAST_RUN_TTL_SECONDS)

    async def is_due(self, job_name: str, interval_minutes: int, now: datetime) -> bool:
        if interval_minutes <= 0:
            return False
        last_run = await self.get_last_run(job_name)
        if last_run is None:
            return True
        return now - last_run >= timedelta(minutes=interval_minutes)

    async def close(self) -> None:
        await self.redis.aclose()
