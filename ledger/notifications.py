"""Typed notification variants decoded from verified processor events.

Every recognized event type maps to exactly one variant. Anything else
becomes ``Unhandled`` and is acknowledged without side effects.
"""
import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from ledger.models import utcnow
from ledger.verifier import VerifiedEvent


def from_timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


class ScheduleAction(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    COMPLETED = "completed"
    CANCELED = "canceled"
    RELEASED = "released"
    EXPIRING = "expiring"


@dataclass(frozen=True)
class _Notification:
    event_id: Optional[str]
    event_type: str
    occurred_at: datetime
    object: Dict[str, Any]


@dataclass(frozen=True)
class CheckoutSessionCompleted(_Notification):
    pass


@dataclass(frozen=True)
class PaymentIntentSucceeded(_Notification):
    pass


@dataclass(frozen=True)
class PaymentIntentFailed(_Notification):
    pass


@dataclass(frozen=True)
class ChargeSucceeded(_Notification):
    pass


@dataclass(frozen=True)
class InvoicePaid(_Notification):
    """``invoice.payment_succeeded`` and ``invoice.paid``."""


@dataclass(frozen=True)
class SubscriptionChanged(_Notification):
    pass


@dataclass(frozen=True)
class ScheduleChanged(_Notification):
    action: ScheduleAction = ScheduleAction.UPDATED


@dataclass(frozen=True)
class Unhandled(_Notification):
    pass


Notification = Union[
    CheckoutSessionCompleted,
    PaymentIntentSucceeded,
    PaymentIntentFailed,
    ChargeSucceeded,
    InvoicePaid,
    SubscriptionChanged,
    ScheduleChanged,
    Unhandled,
]

EVENT_TYPES = {
    "checkout.session.completed": CheckoutSessionCompleted,
    "payment_intent.succeeded": PaymentIntentSucceeded,
    "payment_intent.payment_failed": PaymentIntentFailed,
    "charge.succeeded": ChargeSucceeded,
    "invoice.payment_succeeded": InvoicePaid,
    "invoice.paid": InvoicePaid,
    "customer.subscription.created": SubscriptionChanged,
    "customer.subscription.updated": SubscriptionChanged,
}

SCHEDULE_PREFIX = "subscription_schedule."


def parse_notification(event: VerifiedEvent) -> Notification:
    common = dict(
        event_id=event.id,
        event_type=event.type,
        occurred_at=from_timestamp(event.created) or utcnow(),
        object=event.object,
    )

    if event.type.startswith(SCHEDULE_PREFIX):
        try:
            action = ScheduleAction(event.type[len(SCHEDULE_PREFIX):])
        except ValueError:
            return Unhandled(**common)
        return ScheduleChanged(action=action, **common)

    variant = EVENT_TYPES.get(event.type, Unhandled)
    return variant(**common)
