"""
FastAPI router for inbound cycle triggers.

Handles HMAC-SHA256 signature verification, payload parsing, and
dispatch of order-opened and traffic-reset events to the engine.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cycle_engine.config import settings
from cycle_engine.database.database import AsyncSessionLocal
from cycle_engine.exceptions import PersistenceConflict
from cycle_engine.services.order_cycle_service import OrderCycleService
from cycle_engine.services.traffic_reset_sync_service import TrafficResetSyncService
from cycle_engine.webapi.schemas.cycle_events import OrderOpenedEvent, TrafficResetEvent


logger = logging.getLogger(__name__)

# Max accepted payload size (64 KB)
_MAX_BODY_SIZE = 64 * 1024

SIGNATURE_HEADER = 'X-Cycle-Signature'


def _verify_signature(raw_body: bytes, received_signature: str, secret: str) -> bool:
    expected = hmac.new(secret.encode('utf-8'), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, received_signature)


def _error(reason: str, status_code: int) -> JSONResponse:
    return JSONResponse({'status': 'error', 'reason': reason}, status_code=status_code)


async def _read_signed_payload(request: Request) -> dict | JSONResponse:
    raw_body = await request.body()
    if not raw_body:
        return _error('empty_body', status.HTTP_400_BAD_REQUEST)

    if len(raw_body) > _MAX_BODY_SIZE:
        logger.warning('Cycle webhook: payload too large (%d bytes)', len(raw_body))
        return _error('payload_too_large', status.HTTP_413_REQUEST_ENTITY_TOO_LARGE)

    secret = settings.CYCLE_WEBHOOK_SECRET
    if not secret:
        logger.error('Cycle webhook: secret not configured, rejecting request')
        return _error('webhook_not_configured', status.HTTP_503_SERVICE_UNAVAILABLE)

    signature = request.headers.get(SIGNATURE_HEADER) or ''
    if not signature:
        logger.warning('Cycle webhook: missing signature header')
        return _error('missing_signature', status.HTTP_401_UNAUTHORIZED)

    if not _verify_signature(raw_body, signature, secret):
        logger.warning('Cycle webhook: invalid signature')
        return _error('invalid_signature', status.HTTP_401_UNAUTHORIZED)

    try:
        payload = json.loads(raw_body.decode('utf-8'))
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _error('invalid_json', status.HTTP_400_BAD_REQUEST)

    if not isinstance(payload, dict):
        return _error('invalid_json', status.HTTP_400_BAD_REQUEST)
    return payload


def create_cycle_webhook_router(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    order_service: OrderCycleService | None = None,
    sync_service: TrafficResetSyncService | None = None,
) -> APIRouter:
    router = APIRouter()
    session_factory = session_factory or AsyncSessionLocal
    order_service = order_service or OrderCycleService(session_factory)
    sync_service = sync_service or TrafficResetSyncService(session_factory)
    webhook_path = settings.CYCLE_WEBHOOK_PATH.rstrip('/')

    @router.get(webhook_path)
    async def cycle_webhook_health() -> JSONResponse:
        return JSONResponse(
            {
                'status': 'ok',
                'service': 'cycle_engine',
                'enabled': settings.CYCLE_ENGINE_ENABLED and settings.is_cycle_webhook_enabled(),
            }
        )

    @router.post(f'{webhook_path}/order-opened')
    async def order_opened(request: Request) -> JSONResponse:
        payload = await _read_signed_payload(request)
        if isinstance(payload, JSONResponse):
            return payload

        try:
            event = OrderOpenedEvent.model_validate(payload)
        except ValidationError as error:
            logger.warning('Cycle webhook: invalid order event: %s', error.errors())
            return _error('invalid_payload', status.HTTP_422_UNPROCESSABLE_ENTITY)

        if not settings.CYCLE_ENGINE_ENABLED:
            return JSONResponse({'status': 'ok', 'processed': False, 'reason': 'engine_disabled'})

        now = datetime.now(UTC).replace(tzinfo=None)
        order = event.order.to_order()
        snapshot = event.before.to_snapshot(order.id, now) if event.before is not None else None
        logger.info('Cycle webhook: order %s opened for subscriber %s', order.id, order.subscriber_id)

        # Application errors answer 200, only an unavailable database answers 503
        try:
            async with session_factory() as db:
                try:
                    result = await order_service.handle_order_opened(db, order, snapshot, now)
                    await db.commit()
                except OperationalError:
                    raise
                except Exception:
                    await db.rollback()
                    logger.exception('Cycle webhook: failed to process order %s', order.id)
                    return JSONResponse({'status': 'ok', 'processed': False})
        except Exception:
            logger.exception('Cycle webhook: database unavailable')
            return _error('database_unavailable', status.HTTP_503_SERVICE_UNAVAILABLE)

        return JSONResponse(
            {
                'status': 'ok',
                'processed': result.skipped_reason is None,
                'scenario': result.scenario.value if result.scenario else None,
                'changed': sorted(result.changes),
            }
        )

    @router.post(f'{webhook_path}/traffic-reset')
    async def traffic_reset(request: Request) -> JSONResponse:
        payload = await _read_signed_payload(request)
        if isinstance(payload, JSONResponse):
            return payload

        try:
            event = TrafficResetEvent.model_validate(payload)
        except ValidationError as error:
            logger.warning('Cycle webhook: invalid traffic reset event: %s', error.errors())
            return _error('invalid_payload', status.HTTP_422_UNPROCESSABLE_ENTITY)

        if not settings.CYCLE_ENGINE_ENABLED:
            return JSONResponse({'status': 'ok', 'processed': False, 'reason': 'engine_disabled'})

        try:
            written = await sync_service.handle_traffic_reset_event(
                subscriber_id=event.subscriber_id,
                remnawave_uuid=event.remnawave_uuid,
                zero_counters=True,
            )
        except PersistenceConflict as error:
            if isinstance(error.original, OperationalError):
                logger.error('Cycle webhook: database unavailable: %s', error.original)
                return _error('database_unavailable', status.HTTP_503_SERVICE_UNAVAILABLE)
            logger.error('Cycle webhook: %s', error)
            return JSONResponse({'status': 'ok', 'processed': False})
        except Exception:
            logger.exception(
                'Cycle webhook: failed to sync traffic reset (id=%s, uuid=%s)',
                event.subscriber_id,
                event.remnawave_uuid,
            )
            return JSONResponse({'status': 'ok', 'processed': False})

        return JSONResponse({'status': 'ok', 'processed': True, 'next_reset_updated': written})

    return router
