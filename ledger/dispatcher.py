import logging
from typing import get_args

from ledger.notifications import (
    ChargeSucceeded,
    CheckoutSessionCompleted,
    InvoicePaid,
    Notification,
    PaymentIntentFailed,
    PaymentIntentSucceeded,
    ScheduleChanged,
    SubscriptionChanged,
    Unhandled,
    parse_notification,
)

logger = logging.getLogger(__name__)


class EventDispatcher:
    def __init__(self, reconciler, tracker):
        self.handlers = {
            CheckoutSessionCompleted: reconciler.checkout_session_completed,
            PaymentIntentSucceeded: reconciler.payment_intent_succeeded,
            PaymentIntentFailed: reconciler.payment_intent_failed,
            ChargeSucceeded: reconciler.charge_succeeded,
            InvoicePaid: reconciler.invoice_paid,
            SubscriptionChanged: reconciler.subscription_changed,
            ScheduleChanged: tracker.handle,
            Unhandled: self.skip,
        }
        missing = set(get_args(Notification)) - set(self.handlers)
        if missing:
            raise TypeError(f"No handler for {', '.join(sorted(cls.__name__ for cls in missing))}")

    def skip(self, notification):
        logger.info("Skipped event %s (%s)", notification.event_type, notification.event_id)
        return None

    def dispatch(self, event):
        notification = parse_notification(event)
        if not isinstance(notification, Unhandled):
            logger.info("Handling %s %s (%s)", notification.event_type, notification.object.get("id"), notification.event_id)
        return self.handlers[type(notification)](notification)
