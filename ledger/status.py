from datetime import datetime
from typing import Optional

from ledger.models import PaymentStatus

PENDING = PaymentStatus.PENDING
SUCCEEDED = PaymentStatus.SUCCEEDED
FAILED = PaymentStatus.FAILED
CANCELED = PaymentStatus.CANCELED


def next_status(
    current: Optional[PaymentStatus],
    incoming: Optional[PaymentStatus],
    changed_at: Optional[datetime] = None,
    occurred_at: Optional[datetime] = None,
) -> Optional[PaymentStatus]:
    """Status a record ends up in when ``incoming`` is asserted over ``current``.

    ``pending`` never overrides anything. ``succeeded`` is never undone by a
    failure or a cancellation. A success reported after a cancellation wins
    only when it happened later than the cancellation was recorded.
    """
    if current is None:
        return incoming
    if incoming is None or incoming == current or incoming == PENDING:
        return current
    if current == PENDING:
        return incoming

    if incoming == SUCCEEDED:
        if current == CANCELED:
            if changed_at is None or occurred_at is None:
                return current
            return SUCCEEDED if occurred_at > changed_at else CANCELED
        return SUCCEEDED

    if current == SUCCEEDED:
        return current

    if incoming == CANCELED:
        return CANCELED

    # failed after canceled
    return current
