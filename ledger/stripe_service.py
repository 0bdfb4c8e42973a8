from functools import lru_cache

import stripe

from ledger.config import get_settings
from ledger.errors import SessionNotFound


def to_plain(obj):
    """Turn a StripeObject (or anything dict-like) into plain nested dicts."""
    if obj is None or isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class StripeProcessor:
    """Read-only access to the processor's live state."""

    def __init__(self, api_key: str, client=None):
        self.client = client or stripe.StripeClient(api_key)

    def retrieve_payment_intent(self, payment_intent_id: str):
        intent = self.client.payment_intents.retrieve(
            payment_intent_id,
            params={"expand": ["latest_charge"]},
        )
        return to_plain(intent)

    def retrieve_checkout_session(self, session_id: str):
        try:
            session = self.client.checkout.sessions.retrieve(session_id)
        except stripe.InvalidRequestError as exc:
            if exc.http_status == 404:
                raise SessionNotFound(session_id) from exc
            raise
        return to_plain(session)


@lru_cache
def get_processor() -> StripeProcessor:
    return StripeProcessor(get_settings().stripe_secret_key)
