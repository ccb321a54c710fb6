import logging
from datetime import datetime
from enum import Enum
from typing import Any


logger = logging.getLogger(__name__)


class ChangeSource(Enum):
    ORDER_OPEN = 'order_open'
    TRAFFIC_RESET = 'traffic_reset'
    SYNC = 'sync'
    SCHEDULED_FIX = 'scheduled_fix'
    EARLY_RESET = 'early_reset'


def _format_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.strftime('%Y-%m-%d %H:%M:%S')
    return value


def log_cycle_change(
    source: ChangeSource,
    subscriber_id: int,
    changes: dict[str, tuple[Any, Any]],
    **context: Any,
) -> None:
    """One audit line per changed subscriber; ``changes`` maps field -> (before, after)."""
    if not changes:
        return

    payload = {
        'subscriber_id': subscriber_id,
        'source': source.value,
        'changes': {
            field: {'before': _format_value(before), 'after': _format_value(after)}
            for field, (before, after) in changes.items()
        },
    }
    payload.update(context)

    summary = ', '.join(
        f'{field}: {_format_value(before)} -> {_format_value(after)}' for field, (before, after) in changes.items()
    )
    logger.info(
        'Cycle fields updated for subscriber %s (source=%s): %s',
        subscriber_id,
        source.value,
        summary,
        extra={'cycle_audit': payload},
    )
