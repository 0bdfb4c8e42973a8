from datetime import datetime, timedelta

import pytest

from ledger.models import PaymentStatus
from ledger.status import next_status

PENDING = PaymentStatus.PENDING
SUCCEEDED = PaymentStatus.SUCCEEDED
FAILED = PaymentStatus.FAILED
CANCELED = PaymentStatus.CANCELED


@pytest.mark.parametrize("incoming", [SUCCEEDED, FAILED, CANCELED])
def test_pending_moves_to_any_signal(incoming):
    assert next_status(PENDING, incoming) == incoming


@pytest.mark.parametrize("current", [SUCCEEDED, FAILED, CANCELED])
def test_pending_never_overrides(current):
    assert next_status(current, PENDING) == current


def test_new_record_takes_incoming_status():
    assert next_status(None, PENDING) == PENDING
    assert next_status(None, SUCCEEDED) == SUCCEEDED


def test_missing_signal_keeps_status():
    assert next_status(SUCCEEDED, None) == SUCCEEDED


@pytest.mark.parametrize("incoming", [FAILED, CANCELED])
def test_succeeded_is_not_undone(incoming):
    assert next_status(SUCCEEDED, incoming) == SUCCEEDED


def test_retry_after_failure_can_succeed():
    assert next_status(FAILED, SUCCEEDED) == SUCCEEDED


def test_failed_attempt_then_cancel():
    assert next_status(FAILED, CANCELED) == CANCELED


def test_failure_after_cancel_keeps_cancel():
    assert next_status(CANCELED, FAILED) == CANCELED


def test_success_after_cancel_depends_on_event_time():
    canceled_at = datetime(2026, 1, 1, 12, 0)

    later = canceled_at + timedelta(minutes=5)
    earlier = canceled_at - timedelta(minutes=5)

    assert next_status(CANCELED, SUCCEEDED, canceled_at, later) == SUCCEEDED
    assert next_status(CANCELED, SUCCEEDED, canceled_at, earlier) == CANCELED
    assert next_status(CANCELED, SUCCEEDED, None, later) == CANCELED
