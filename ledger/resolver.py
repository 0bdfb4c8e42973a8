"""Find the ledger record a patch refers to.

Candidate lookups run in a fixed priority order: payment intent, checkout
session, charge, then the subscription link and last the plan + amount
fallback. The first lookup that matches wins. The subscription link and the
fallback only run when every strong lookup missed.
"""
import logging
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import select, or_, true

from ledger.models import Payment, PaymentStatus, utcnow

logger = logging.getLogger(__name__)


class LookupStrategy:
    name = "base"
    # Runs only when every earlier lookup missed; its first match wins
    fallback = False

    def applies(self, patch) -> bool:
        raise NotImplementedError

    def statement(self, patch):
        raise NotImplementedError

    def log_match(self, patch, matches):
        logger.debug("Matched payment %s for %s by %s", matches[0].id, patch.describe(), self.name)


class _KeyLookup(LookupStrategy):
    attr = None
    column = None

    def applies(self, patch):
        return bool(getattr(patch, self.attr))

    def statement(self, patch):
        return select(Payment).where(getattr(Payment, self.column) == getattr(patch, self.attr))


class ByPaymentIntent(_KeyLookup):
    name = "payment_intent"
    attr = "payment_intent_id"
    column = "stripe_payment_intent_id"


class ByCheckoutSession(_KeyLookup):
    name = "checkout_session"
    attr = "checkout_session_id"
    column = "stripe_checkout_session_id"


class ByCharge(_KeyLookup):
    name = "charge"
    attr = "charge_id"
    column = "stripe_charge_id"


def _unset_or_equal(column, value):
    if value is None:
        return true()
    return or_(column.is_(None), column == value)


class BySubscription(LookupStrategy):
    """Links the two channels of a subscription checkout.

    A subscription-mode checkout session carries no payment intent, and the
    first invoice of that subscription carries no checkout session. Each side
    matches the record the other side created: an invoice claims the
    subscription's record that has no payment yet, a session claims the
    subscription's record that has no session yet.
    """
    name = "subscription"
    fallback = True

    def applies(self, patch):
        if not patch.subscription_id:
            return False
        if patch.checkout_session_id:
            return not patch.payment_intent_id
        return bool(patch.payment_intent_id or patch.charge_id) and \
            patch.billing_reason in (None, "subscription_create")

    def statement(self, patch):
        if patch.checkout_session_id:
            unlinked = (Payment.stripe_checkout_session_id.is_(None),)
        else:
            unlinked = (Payment.stripe_payment_intent_id.is_(None), Payment.stripe_charge_id.is_(None))
        return (
            select(Payment)
            .where(
                Payment.stripe_subscription_id == patch.subscription_id,
                *unlinked,
                _unset_or_equal(Payment.stripe_customer_id, patch.customer_id),
                _unset_or_equal(Payment.user_id, patch.user_id),
            )
            .order_by(Payment.created_at.asc(), Payment.id.asc())
        )

    def log_match(self, patch, matches):
        logger.info(
            "Linked payment %s to %s through subscription %s",
            matches[0].id, patch.describe(), patch.subscription_id,
        )


class ByPlanAndAmount(LookupStrategy):
    """Pending record for the same plan and amount created within ``window``.

    Any identity key or customer the candidate already has must agree with
    the patch, so two payments that are known to differ never collapse.
    """
    name = "plan_amount"
    fallback = True

    def __init__(self, window: timedelta):
        self.window = window

    def applies(self, patch):
        return bool(patch.plan_id) and patch.amount is not None

    def statement(self, patch):
        return (
            select(Payment)
            .where(
                Payment.plan_id == patch.plan_id,
                Payment.amount == patch.amount,
                Payment.status == PaymentStatus.PENDING.value,
                Payment.created_at >= utcnow() - self.window,
                _unset_or_equal(Payment.stripe_checkout_session_id, patch.checkout_session_id),
                _unset_or_equal(Payment.stripe_payment_intent_id, patch.payment_intent_id),
                _unset_or_equal(Payment.stripe_charge_id, patch.charge_id),
                _unset_or_equal(Payment.stripe_customer_id, patch.customer_id),
                _unset_or_equal(Payment.user_id, patch.user_id),
            )
            .order_by(Payment.created_at.desc(), Payment.id.desc())
        )

    def log_match(self, patch, matches):
        logger.warning(
            "Matched payment %s for %s by plan %s and amount %s%s",
            matches[0].id, patch.describe(), patch.plan_id, patch.amount,
            " (ambiguous, picked most recent)" if len(matches) > 1 else "",
        )


class IdentityResolver:
    def __init__(self, window_minutes: int = 30, strategies: Optional[List[LookupStrategy]] = None):
        self.strategies = strategies or [
            ByPaymentIntent(),
            ByCheckoutSession(),
            ByCharge(),
            BySubscription(),
            ByPlanAndAmount(timedelta(minutes=window_minutes)),
        ]

    def candidates(self, patch) -> List[LookupStrategy]:
        return [strategy for strategy in self.strategies if strategy.applies(patch)]

    def resolve(self, db, patch, lock: bool = True) -> Optional[Payment]:
        """Return the existing record for ``patch`` or None.

        Callers are expected to be inside the store's write transaction;
        ``lock`` adds ``FOR UPDATE`` on engines that support it.
        """
        found = None
        for strategy in self.candidates(patch):
            if strategy.fallback and found is not None:
                break
            stmt = strategy.statement(patch)
            if lock:
                stmt = stmt.with_for_update()
            matches = db.execute(stmt.limit(2)).scalars().all()
            if not matches:
                continue

            if strategy.fallback:
                strategy.log_match(patch, matches)
                return matches[0]

            if found is None:
                found = matches[0]
                strategy.log_match(patch, matches)
            elif matches[0].id != found.id:
                logger.warning(
                    "%s spans payments %s and %s, keeping %s",
                    patch.describe(), found.id, matches[0].id, found.id,
                )
        return found
