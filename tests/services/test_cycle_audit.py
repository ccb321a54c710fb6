import logging
from datetime import datetime

from cycle_engine.services.cycle_audit import ChangeSource, log_cycle_change


def test_audit_line_carries_structured_payload(caplog):
    before = datetime(2025, 1, 22, 12, 0, 0)
    after = datetime(2025, 1, 25, 12, 0, 0)

    with caplog.at_level(logging.INFO, logger='cycle_engine.services.cycle_audit'):
        log_cycle_change(ChangeSource.SCHEDULED_FIX, 42, {'next_reset_at': (before, after)}, interval_days=3)

    record = caplog.records[-1]
    assert record.cycle_audit == {
        'subscriber_id': 42,
        'source': 'scheduled_fix',
        'changes': {'next_reset_at': {'before': '2025-01-22 12:00:00', 'after': '2025-01-25 12:00:00'}},
        'interval_days': 3,
    }
    assert 'scheduled_fix' in record.getMessage()


def test_nothing_is_logged_without_changes(caplog):
    with caplog.at_level(logging.INFO, logger='cycle_engine.services.cycle_audit'):
        log_cycle_change(ChangeSource.SYNC, 42, {})

    assert not caplog.records
