"""Proposed changes to a payment record, built from one processor object.

A patch is immutable. Building one never touches the inbound payload, and
applying one to a ``Payment`` follows the merge rules: identity keys are
filled once, card and billing fields are filled or overridden but never
cleared, amounts only move to an equally or more authoritative source, and
status moves through ``next_status``.
"""
import logging
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from ledger.models import Authority, PaymentStatus, utcnow
from ledger.notifications import from_timestamp
from ledger.status import next_status

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
FUNDING_TYPES = ("credit", "debit", "prepaid")
PLAN_METADATA_KEYS = ("planId", "plan_id")
USER_METADATA_KEYS = ("userId", "user_id")


def to_major_units(minor) -> Optional[Decimal]:
    if minor is None:
        return None
    return (Decimal(int(minor)) / 100).quantize(CENT, rounding=ROUND_HALF_UP)


def normalize_funding(funding) -> str:
    value = str(funding or "").lower()
    return value if value in FUNDING_TYPES else "unknown"


def _id_of(value) -> Optional[str]:
    """Expandable fields arrive either as an id string or as the expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _metadata_value(obj, keys) -> Optional[str]:
    metadata = (obj or {}).get("metadata") or {}
    for key in keys:
        if metadata.get(key):
            return str(metadata[key])
    return None


def plan_id_from(obj) -> Optional[str]:
    return _metadata_value(obj, PLAN_METADATA_KEYS)


@dataclass(frozen=True)
class CardSnapshot:
    brand: Optional[str] = None
    funding: str = "unknown"
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None

    @classmethod
    def from_card(cls, card) -> Optional["CardSnapshot"]:
        if not card:
            return None
        return cls(
            brand=card.get("brand") or None,
            funding=normalize_funding(card.get("funding")),
            last4=card.get("last4") or None,
            exp_month=card.get("exp_month") or None,
            exp_year=card.get("exp_year") or None,
        )


@dataclass(frozen=True)
class PaymentPatch:
    source: str
    occurred_at: datetime = field(default_factory=utcnow)

    checkout_session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None

    plan_id: Optional[str] = None
    user_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    price_id: Optional[str] = None
    billing_reason: Optional[str] = None

    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    authority: Authority = Authority.CLIENT
    status: Optional[PaymentStatus] = None

    card: Optional[CardSnapshot] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None

    raw: Optional[Dict[str, Any]] = None

    @property
    def has_strong_identity(self) -> bool:
        return bool(self.checkout_session_id or self.payment_intent_id or self.charge_id)

    @property
    def needs_detail(self) -> bool:
        return bool(self.payment_intent_id) and not (self.card and self.charge_id and self.plan_id)

    def describe(self) -> str:
        keys = [
            f"{name}={getattr(self, name)}"
            for name in ("checkout_session_id", "payment_intent_id", "charge_id")
            if getattr(self, name)
        ]
        return f"{self.source} ({', '.join(keys) or 'no identity keys'})"

    def without(self, *names) -> "PaymentPatch":
        return replace(self, **{name: None for name in names})

    def combined_with(self, detail: "PaymentPatch") -> "PaymentPatch":
        """Fill gaps from ``detail`` (fetched live), returning a new patch."""
        changes = {}
        for f in fields(self):
            if f.name in ("source", "occurred_at", "raw", "authority", "amount", "currency", "status", "card"):
                continue
            if getattr(self, f.name) is None and getattr(detail, f.name) is not None:
                changes[f.name] = getattr(detail, f.name)

        if detail.amount is not None and (self.amount is None or detail.authority >= self.authority):
            changes.update(amount=detail.amount, authority=detail.authority)
            if detail.currency:
                changes["currency"] = detail.currency
        elif self.currency is None and detail.currency:
            changes["currency"] = detail.currency

        status = next_status(self.status, detail.status)
        if status != self.status:
            changes["status"] = status

        card = _merge_card(self.card, detail.card)
        if card != self.card:
            changes["card"] = card

        return replace(self, **changes) if changes else self

    def apply_to(self, payment, now: Optional[datetime] = None):
        now = now or utcnow()

        for attr, value in (
            ("stripe_checkout_session_id", self.checkout_session_id),
            ("stripe_payment_intent_id", self.payment_intent_id),
            ("stripe_charge_id", self.charge_id),
        ):
            current = getattr(payment, attr)
            if value and not current:
                setattr(payment, attr, value)
            elif value and current != value:
                logger.warning(
                    "Payment %s already has %s=%s, ignoring %s from %s",
                    payment.id, attr, current, value, self.source,
                )

        if self.plan_id and not payment.plan_id:
            payment.plan_id = self.plan_id
        if self.user_id and not payment.user_id:
            payment.user_id = self.user_id

        for attr, value in (
            ("stripe_payment_method_id", self.payment_method_id),
            ("stripe_subscription_id", self.subscription_id),
            ("stripe_customer_id", self.customer_id),
            ("stripe_price_id", self.price_id),
            ("current_period_start", self.period_start),
            ("current_period_end", self.period_end),
            ("trial_start", self.trial_start),
            ("trial_end", self.trial_end),
        ):
            if value is not None:
                setattr(payment, attr, value)

        if self.amount is not None:
            current_authority = payment.amount_authority if payment.amount_authority is not None else -1
            if not payment.amount or self.authority >= current_authority:
                payment.amount = self.amount
                payment.amount_authority = int(self.authority)
                if self.currency:
                    payment.currency = self.currency
        if self.currency and not payment.currency:
            payment.currency = self.currency

        current_status = PaymentStatus(payment.status) if payment.status else None
        status = next_status(current_status, self.status, payment.status_changed_at, self.occurred_at)
        if status is None:
            status = PaymentStatus.PENDING
        if status != current_status:
            payment.status = status.value
            payment.status_changed_at = self.occurred_at

        if self.card:
            if self.card.brand:
                payment.card_brand = self.card.brand
            if self.card.funding != "unknown" or not payment.card_funding:
                payment.card_funding = self.card.funding
            if self.card.last4:
                payment.card_last4 = self.card.last4
            if self.card.exp_month:
                payment.card_exp_month = self.card.exp_month
            if self.card.exp_year:
                payment.card_exp_year = self.card.exp_year

        if self.raw is not None:
            payment.stripe_raw = self.raw
        payment.updated_at = now


def _merge_card(primary: Optional[CardSnapshot], fallback: Optional[CardSnapshot]) -> Optional[CardSnapshot]:
    if primary is None or fallback is None:
        return primary or fallback
    return CardSnapshot(
        brand=primary.brand or fallback.brand,
        funding=primary.funding if primary.funding != "unknown" else fallback.funding,
        last4=primary.last4 or fallback.last4,
        exp_month=primary.exp_month or fallback.exp_month,
        exp_year=primary.exp_year or fallback.exp_year,
    )


# Builders, one per processor object shape


def _charge_card(charge) -> Optional[CardSnapshot]:
    details = (charge or {}).get("payment_method_details") or {}
    return CardSnapshot.from_card(details.get("card"))


def _first_charge(intent) -> Optional[Dict[str, Any]]:
    latest = intent.get("latest_charge")
    if isinstance(latest, dict):
        return latest
    charges = ((intent.get("charges") or {}).get("data")) or []
    return charges[0] if charges else None


def from_checkout_session(session, occurred_at=None, source="checkout.session.completed",
                          authority=Authority.SESSION, default_currency=None) -> PaymentPatch:
    payment_method = session.get("payment_method")
    card = CardSnapshot.from_card(payment_method.get("card")) if isinstance(payment_method, dict) else None
    paid = session.get("payment_status") == "paid"

    return PaymentPatch(
        source=source,
        occurred_at=occurred_at or utcnow(),
        checkout_session_id=session.get("id"),
        payment_intent_id=_id_of(session.get("payment_intent")),
        plan_id=plan_id_from(session),
        user_id=_metadata_value(session, USER_METADATA_KEYS) or session.get("client_reference_id"),
        payment_method_id=_id_of(payment_method),
        subscription_id=_id_of(session.get("subscription")),
        customer_id=_id_of(session.get("customer")),
        amount=to_major_units(session.get("amount_total")),
        currency=(session.get("currency") or default_currency or "").lower() or None,
        authority=authority,
        status=PaymentStatus.SUCCEEDED if paid else PaymentStatus.PENDING,
        card=card,
        raw=session,
    )


def from_payment_intent(intent, occurred_at=None, source="payment_intent", status=None) -> PaymentPatch:
    charge = _first_charge(intent)
    if status is None and intent.get("status") == "succeeded":
        status = PaymentStatus.SUCCEEDED

    return PaymentPatch(
        source=source,
        occurred_at=occurred_at or utcnow(),
        payment_intent_id=intent.get("id"),
        charge_id=_id_of(intent.get("latest_charge")) or _id_of(charge),
        plan_id=plan_id_from(intent),
        user_id=_metadata_value(intent, USER_METADATA_KEYS),
        payment_method_id=_id_of((charge or {}).get("payment_method")) or _id_of(intent.get("payment_method")),
        customer_id=_id_of(intent.get("customer")),
        amount=to_major_units(intent.get("amount")),
        currency=(intent.get("currency") or "").lower() or None,
        authority=Authority.PROCESSOR,
        status=status,
        card=_charge_card(charge),
        raw=intent,
    )


def from_charge(charge, occurred_at=None, source="charge.succeeded") -> PaymentPatch:
    return PaymentPatch(
        source=source,
        occurred_at=occurred_at or utcnow(),
        charge_id=charge.get("id"),
        payment_intent_id=_id_of(charge.get("payment_intent")),
        plan_id=plan_id_from(charge),
        user_id=_metadata_value(charge, USER_METADATA_KEYS),
        payment_method_id=_id_of(charge.get("payment_method")),
        customer_id=_id_of(charge.get("customer")),
        amount=to_major_units(charge.get("amount")),
        currency=(charge.get("currency") or "").lower() or None,
        authority=Authority.PROCESSOR,
        status=PaymentStatus.SUCCEEDED,
        card=_charge_card(charge),
        raw=charge,
    )


def from_invoice(invoice, occurred_at=None, source="invoice.paid") -> PaymentPatch:
    lines = ((invoice.get("lines") or {}).get("data")) or []
    line = lines[0] if lines else {}
    period = line.get("period") or {}
    price = line.get("price") or {}
    subscription_details = invoice.get("subscription_details") or {}

    plan_id = (
        plan_id_from(subscription_details)
        or plan_id_from(line)
        or plan_id_from(price)
        or plan_id_from(invoice)
    )

    return PaymentPatch(
        source=source,
        occurred_at=occurred_at or utcnow(),
        payment_intent_id=_id_of(invoice.get("payment_intent")),
        charge_id=_id_of(invoice.get("charge")),
        plan_id=plan_id,
        user_id=_metadata_value(subscription_details, USER_METADATA_KEYS),
        subscription_id=_id_of(invoice.get("subscription")),
        customer_id=_id_of(invoice.get("customer")),
        price_id=_id_of(price),
        billing_reason=invoice.get("billing_reason"),
        amount=to_major_units(invoice.get("amount_paid")),
        currency=(invoice.get("currency") or "").lower() or None,
        authority=Authority.PROCESSOR,
        status=PaymentStatus.SUCCEEDED,
        period_start=from_timestamp(period.get("start")),
        period_end=from_timestamp(period.get("end")),
        raw=invoice,
    )


def canceled_session(session, occurred_at=None, default_currency=None) -> PaymentPatch:
    base = from_checkout_session(
        session, occurred_at=occurred_at, source="checkout.session.canceled",
        default_currency=default_currency,
    )
    return replace(base, status=PaymentStatus.CANCELED)
