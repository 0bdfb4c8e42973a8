import hashlib
import hmac
import json
import os
import time
from decimal import Decimal

# Must be set before ledger.database is imported
os.environ["DATABASE_URL"] = "sqlite:///./test_ledger.db"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["JWT_SECRET"] = "jwt_test_secret"

import pytest
import stripe

from ledger.database import Base, SessionLocal, engine
from ledger.dispatcher import EventDispatcher
from ledger.errors import SessionNotFound
from ledger.models import Plan
from ledger.reconciler import Reconciler
from ledger.schedules import ScheduleTracker
from ledger.store import LedgerStore
from ledger.verifier import VerifiedEvent

WEBHOOK_SECRET = "whsec_test"


class FakeProcessor:
    """Stands in for StripeProcessor with canned live objects."""

    def __init__(self):
        self.intents = {}
        self.sessions = {}
        self.calls = []

    def retrieve_payment_intent(self, payment_intent_id):
        self.calls.append(("payment_intent", payment_intent_id))
        if payment_intent_id not in self.intents:
            raise stripe.APIConnectionError("Processor unreachable")
        return self.intents[payment_intent_id]

    def retrieve_checkout_session(self, session_id):
        self.calls.append(("checkout_session", session_id))
        if session_id not in self.sessions:
            raise SessionNotFound(session_id)
        return self.sessions[session_id]


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def plan(db):
    p = Plan(id="plan_basic", name="Basic", price=Decimal("49.99"), currency="inr",
             billing_period="monthly", billing_interval=1)
    db.add(p)
    db.commit()
    return p


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def store(db):
    return LedgerStore(db)


@pytest.fixture
def reconciler(store, processor):
    return Reconciler(store, processor)


@pytest.fixture
def dispatcher(reconciler, store):
    return EventDispatcher(reconciler, ScheduleTracker(store))


@pytest.fixture
def notify(dispatcher):
    """Dispatch an already-verified event of ``event_type`` carrying ``obj``."""
    def _notify(event_type, obj, created=None, event_id=None):
        event = VerifiedEvent(
            id=event_id or f"evt_{event_type}_{obj.get('id')}",
            type=event_type,
            created=created if created is not None else int(time.time()),
            object=obj,
        )
        return dispatcher.dispatch(event)
    return _notify


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def signed_event():
    """Build (raw body, Stripe-Signature header) for a webhook event."""
    def _signed_event(event_type, obj, created=None, secret=WEBHOOK_SECRET):
        body = json.dumps({
            "id": f"evt_{obj.get('id')}",
            "type": event_type,
            "created": created or int(time.time()),
            "data": {"object": obj},
        }).encode("utf-8")
        return body, sign(body, secret)
    return _signed_event


@pytest.fixture
def signer():
    return sign
