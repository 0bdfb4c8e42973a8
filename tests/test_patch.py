from decimal import Decimal

import pytest

from ledger.models import Authority, Payment, PaymentStatus
from ledger.patch import (
    CardSnapshot,
    PaymentPatch,
    from_charge,
    from_checkout_session,
    from_invoice,
    from_payment_intent,
    normalize_funding,
    to_major_units,
)


def charge_obj(**overrides):
    charge = {
        "id": "ch_1",
        "payment_intent": "pi_1",
        "amount": 4999,
        "currency": "INR",
        "payment_method": "pm_1",
        "payment_method_details": {
            "card": {"brand": "visa", "funding": "credit", "last4": "4242", "exp_month": 12, "exp_year": 2030},
        },
    }
    charge.update(overrides)
    return charge


def test_minor_units_are_divided_by_100():
    assert to_major_units(4999) == Decimal("49.99")
    assert to_major_units(10000) == Decimal("100.00")
    assert to_major_units(None) is None


@pytest.mark.parametrize("raw, expected", [
    ("credit", "credit"), ("DEBIT", "debit"), ("prepaid", "prepaid"),
    ("charge_card", "unknown"), (None, "unknown"),
])
def test_normalize_funding(raw, expected):
    assert normalize_funding(raw) == expected


def test_checkout_session_patch():
    session = {
        "id": "cs_1",
        "payment_intent": "pi_1",
        "amount_total": 4999,
        "currency": "INR",
        "payment_status": "paid",
        "metadata": {"planId": "plan_basic", "userId": "user_1"},
        "subscription": "sub_1",
        "customer": "cus_1",
    }
    patch = from_checkout_session(session)

    assert patch.checkout_session_id == "cs_1"
    assert patch.payment_intent_id == "pi_1"
    assert patch.plan_id == "plan_basic"
    assert patch.user_id == "user_1"
    assert patch.amount == Decimal("49.99")
    assert patch.currency == "inr"
    assert patch.authority == Authority.SESSION
    assert patch.status == PaymentStatus.SUCCEEDED
    assert patch.subscription_id == "sub_1"


def test_unpaid_session_is_pending():
    patch = from_checkout_session({"id": "cs_1", "payment_status": "unpaid"})
    assert patch.status == PaymentStatus.PENDING


def test_building_a_patch_leaves_payload_untouched():
    session = {"id": "cs_1", "payment_status": "paid", "amount_total": 500}
    snapshot = dict(session)
    from_checkout_session(session)
    assert session == snapshot


def test_payment_intent_with_expanded_charge():
    intent = {
        "id": "pi_1",
        "amount": 10000,
        "currency": "inr",
        "status": "succeeded",
        "metadata": {"planId": "plan_basic"},
        "latest_charge": charge_obj(),
    }
    patch = from_payment_intent(intent)

    assert patch.charge_id == "ch_1"
    assert patch.amount == Decimal("100.00")
    assert patch.authority == Authority.PROCESSOR
    assert patch.status == PaymentStatus.SUCCEEDED
    assert patch.card == CardSnapshot("visa", "credit", "4242", 12, 2030)
    assert patch.payment_method_id == "pm_1"


def test_payment_intent_with_legacy_charges_list():
    intent = {"id": "pi_1", "amount": 500, "charges": {"data": [charge_obj(id="ch_legacy")]}}
    patch = from_payment_intent(intent)

    assert patch.charge_id == "ch_legacy"
    assert patch.card.brand == "visa"
    assert patch.status is None


def test_payment_intent_with_unexpanded_charge_needs_detail():
    patch = from_payment_intent({"id": "pi_1", "latest_charge": "ch_1", "metadata": {"planId": "p"}})
    assert patch.charge_id == "ch_1"
    assert patch.card is None
    assert patch.needs_detail


def test_charge_patch():
    patch = from_charge(charge_obj())
    assert patch.charge_id == "ch_1"
    assert patch.payment_intent_id == "pi_1"
    assert patch.currency == "inr"
    assert patch.status == PaymentStatus.SUCCEEDED


def test_invoice_patch_reads_line_period_and_plan():
    invoice = {
        "id": "in_1",
        "payment_intent": "pi_1",
        "amount_paid": 4999,
        "currency": "inr",
        "subscription": "sub_1",
        "customer": "cus_1",
        "lines": {"data": [{
            "period": {"start": 1767225600, "end": 1769904000},
            "price": {"id": "price_1", "metadata": {"planId": "plan_basic"}},
        }]},
    }
    patch = from_invoice(invoice)

    assert patch.plan_id == "plan_basic"
    assert patch.price_id == "price_1"
    assert patch.period_start.year == 2026
    assert patch.period_end > patch.period_start
    assert patch.status == PaymentStatus.SUCCEEDED


def test_combined_prefers_more_authoritative_amount():
    client = PaymentPatch(source="frontend", payment_intent_id="pi_1", amount=Decimal("70"), authority=Authority.CLIENT,
                          status=PaymentStatus.PENDING)
    live = from_payment_intent({"id": "pi_1", "amount": 500, "currency": "inr", "status": "succeeded",
                                "latest_charge": charge_obj()})
    combined = client.combined_with(live)

    assert combined.amount == Decimal("5.00")
    assert combined.authority == Authority.PROCESSOR
    assert combined.status == PaymentStatus.SUCCEEDED
    assert combined.card.brand == "visa"
    assert combined.source == "frontend"
    assert client.amount == Decimal("70")


def test_apply_fills_card_but_never_clears_it():
    payment = Payment()
    from_charge(charge_obj()).apply_to(payment)
    assert payment.card_brand == "visa"

    from_checkout_session({"id": "cs_1", "payment_intent": "pi_1", "payment_status": "paid"}).apply_to(payment)
    assert payment.card_brand == "visa"
    assert payment.card_last4 == "4242"
    assert payment.card_funding == "credit"


def test_apply_keeps_authoritative_amount():
    payment = Payment()
    from_payment_intent({"id": "pi_1", "amount": 500, "currency": "usd"}).apply_to(payment)
    from_checkout_session({"id": "cs_1", "amount_total": 900, "currency": "eur"}).apply_to(payment)

    assert payment.amount == Decimal("5.00")
    assert payment.currency == "usd"


def test_apply_session_amount_fills_zero_amount():
    payment = Payment(amount=Decimal("0"), amount_authority=int(Authority.PROCESSOR))
    from_checkout_session({"id": "cs_1", "amount_total": 900}).apply_to(payment)
    assert payment.amount == Decimal("9.00")


def test_apply_keeps_first_identity_key():
    payment = Payment(stripe_payment_intent_id="pi_1")
    from_charge(charge_obj(payment_intent="pi_other")).apply_to(payment)
    assert payment.stripe_payment_intent_id == "pi_1"
    assert payment.stripe_charge_id == "ch_1"
