from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, Optional

import stripe

from ledger.config import get_settings
from ledger.errors import MissingSignature, MissingSecret, InvalidSignature, InvalidPayload
from ledger.stripe_service import to_plain


@dataclass(frozen=True)
class VerifiedEvent:
    id: Optional[str]
    type: str
    created: Optional[int]
    object: Dict[str, Any] = field(default_factory=dict)


class WebhookVerifier:
    def __init__(self, secret: Optional[str], tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE):
        self.secret = secret
        self.tolerance = tolerance

    def verify(self, payload: bytes, signature: Optional[str]) -> VerifiedEvent:
        """Authenticate the raw request body and decode it.

        ``payload`` must be the exact bytes received; the signature covers them
        byte for byte, so re-serialized JSON will never verify.
        """
        if not signature:
            raise MissingSignature("Missing Stripe signature header")
        if not self.secret:
            raise MissingSecret("STRIPE_WEBHOOK_SECRET is not configured")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidPayload("Payload is not valid UTF-8") from exc

        try:
            event = stripe.Webhook.construct_event(body, signature, self.secret, self.tolerance)
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignature(str(exc)) from exc
        except ValueError as exc:
            raise InvalidPayload("Payload is not valid JSON") from exc

        data = to_plain(event)
        if not data.get("type"):
            raise InvalidPayload("Payload has no event type")

        return VerifiedEvent(
            id=data.get("id"),
            type=data["type"],
            created=data.get("created"),
            object=(data.get("data") or {}).get("object") or {},
        )


@lru_cache
def get_verifier() -> WebhookVerifier:
    settings = get_settings()
    return WebhookVerifier(settings.stripe_webhook_secret, settings.webhook_tolerance)
