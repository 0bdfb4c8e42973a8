import logging
from dataclasses import replace
from typing import Optional

import stripe

from ledger.errors import PlanNotFound, SessionNotFound, UnresolvablePayment
from ledger.models import Authority, PaymentStatus, utcnow
from ledger.notifications import from_timestamp
from ledger.patch import (
    canceled_session,
    from_charge,
    from_checkout_session,
    from_invoice,
    from_payment_intent,
)
from ledger.store import LedgerStore, UpsertResult

logger = logging.getLogger(__name__)

# Fields only the processor may assert for a frontend-reported session
PROCESSOR_OWNED = (
    "payment_intent_id", "charge_id", "user_id", "customer_id",
    "subscription_id", "payment_method_id", "card",
)


class Reconciler:
    """Merges processor notifications and frontend reports into the ledger."""

    def __init__(self, store: LedgerStore, processor, default_currency: str = "inr"):
        self.store = store
        self.processor = processor
        self.default_currency = default_currency

    # Webhook handlers

    def checkout_session_completed(self, notification):
        patch = from_checkout_session(
            notification.object,
            occurred_at=notification.occurred_at,
            source=notification.event_type,
            default_currency=self.default_currency,
        )
        return self._reconcile(patch)

    def payment_intent_succeeded(self, notification):
        patch = from_payment_intent(
            notification.object,
            occurred_at=notification.occurred_at,
            source=notification.event_type,
            status=PaymentStatus.SUCCEEDED,
        )
        return self._reconcile(patch)

    def payment_intent_failed(self, notification):
        patch = from_payment_intent(
            notification.object,
            occurred_at=notification.occurred_at,
            source=notification.event_type,
            status=PaymentStatus.FAILED,
        )
        return self._reconcile(patch)

    def charge_succeeded(self, notification):
        patch = from_charge(notification.object, occurred_at=notification.occurred_at, source=notification.event_type)
        return self._reconcile(patch)

    def invoice_paid(self, notification):
        patch = from_invoice(notification.object, occurred_at=notification.occurred_at, source=notification.event_type)
        return self._reconcile(patch)

    def subscription_changed(self, notification) -> int:
        subscription = notification.object
        items = ((subscription.get("items") or {}).get("data")) or []
        first_item = items[0] if items else {}
        start = from_timestamp(subscription.get("current_period_start") or first_item.get("current_period_start"))
        end = from_timestamp(subscription.get("current_period_end") or first_item.get("current_period_end"))

        updated = self.store.update_subscription_period(subscription.get("id"), start, end)
        logger.info(
            "%s: subscription %s status=%s, %s payment(s) updated",
            notification.event_type, subscription.get("id"), subscription.get("status"), updated,
        )
        return updated

    def _reconcile(self, patch) -> Optional[UpsertResult]:
        if not patch.has_strong_identity:
            logger.warning("Skipping %s: no identity keys", patch.describe())
            return None

        patch = self.enrich(patch)
        try:
            result = self.store.upsert(patch)
        except (UnresolvablePayment, PlanNotFound) as exc:
            # Redelivery would fail the same way, so acknowledge
            logger.warning("Skipping %s: %s", patch.describe(), exc)
            return None

        logger.info(
            "Payment %s %s from %s, status=%s",
            result.payment.id, "created" if result.created else "updated",
            patch.describe(), result.payment.status,
        )
        return result

    def enrich(self, patch):
        """Fill charge, card and plan details from the live payment intent.

        Best effort: a failed fetch is logged and the patch is used as is.
        """
        if not patch.needs_detail:
            return patch
        try:
            intent = self.processor.retrieve_payment_intent(patch.payment_intent_id)
        except stripe.StripeError as exc:
            logger.warning(
                "Could not retrieve payment intent %s for %s: %s",
                patch.payment_intent_id, patch.source, exc,
            )
            return patch
        detail = from_payment_intent(intent, occurred_at=patch.occurred_at, source=patch.source)
        return patch.combined_with(detail)

    # Frontend entry points

    def save_frontend_session(self, session, plan=None) -> UpsertResult:
        """Record a checkout session reported by the browser.

        Only the processor's copy of the session says which payment intent,
        customer, subscription and user it belongs to, and whether it is paid.
        The browser's report fills the remaining gaps (plan, amount). When the
        processor cannot be reached the row is saved as ``pending`` under the
        session id alone.
        """
        client = from_checkout_session(
            session or {},
            source="frontend",
            authority=Authority.CLIENT,
            default_currency=self.default_currency,
        )
        client = replace(client, status=PaymentStatus.PENDING).without(*PROCESSOR_OWNED)
        if not client.plan_id and plan:
            client = replace(client, plan_id=plan.get("id") or plan.get("_id"))

        live = self._live_session(client.checkout_session_id) if client.checkout_session_id else None
        if live is not None:
            patch = from_checkout_session(
                live, occurred_at=client.occurred_at, source="frontend",
                default_currency=self.default_currency,
            ).combined_with(client)
        else:
            patch = client

        if not patch.plan_id:
            raise UnresolvablePayment("planId missing")
        plan_id = str(patch.plan_id)
        plan_record = self.store.get_plan(plan_id)
        if plan_record is None:
            raise PlanNotFound(plan_id)

        patch = replace(
            patch,
            plan_id=plan_id,
            amount=patch.amount if patch.amount is not None else plan_record.price,
        )
        patch = self.enrich(patch)

        result = self.store.upsert(patch)
        logger.info(
            "Frontend save: payment %s %s for plan %s, status=%s",
            result.payment.id, "created" if result.created else "updated", plan_id, result.payment.status,
        )
        return result

    def _live_session(self, session_id):
        try:
            return self.processor.retrieve_checkout_session(session_id)
        except (stripe.StripeError, SessionNotFound) as exc:
            logger.warning("Could not confirm checkout session %s: %s", session_id, exc)
            return None

    def mark_session_canceled(self, session_id: str) -> UpsertResult:
        """Record a cancellation, re-reading the session from the processor first.

        A session the processor reports as paid is recorded as succeeded
        instead, whatever the caller claims.
        """
        session = self.processor.retrieve_checkout_session(session_id)

        if session.get("payment_status") == "paid":
            logger.warning("Cancel requested for paid checkout session %s, recording as succeeded", session_id)
            patch = self.enrich(from_checkout_session(
                session, source="cancel_request", default_currency=self.default_currency,
            ))
        else:
            patch = canceled_session(session, occurred_at=utcnow(), default_currency=self.default_currency)

        result = self.store.upsert(patch)
        logger.info("Checkout session %s marked, payment %s status=%s", session_id, result.payment.id, result.payment.status)
        return result

    def get_session(self, session_id: str, plan_id=None):
        session = self.processor.retrieve_checkout_session(session_id)
        plan = self.store.get_plan(plan_id) if plan_id else None
        return session, plan
