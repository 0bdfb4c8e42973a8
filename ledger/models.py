import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, Numeric, Boolean, DateTime, ForeignKey, JSON
from sqlalchemy.orm import relationship

from ledger.database import Base


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class Authority(enum.IntEnum):
    """How far an amount can be trusted, lowest first."""
    CLIENT = 0
    SESSION = 1
    PROCESSOR = 2


class Plan(Base):
    __tablename__ = "plans"

    id = Column(String, primary_key=True, default=lambda: uuid.uuid4().hex)
    name = Column(String, nullable=False)
    description = Column(String)
    price = Column(Numeric(12, 2), nullable=False)
    currency = Column(String, default="inr")
    billing_period = Column(String, nullable=False)        # monthly | yearly
    billing_interval = Column(Integer, nullable=False, default=1)
    stripe_price_id = Column(String)
    stripe_product_id = Column(String)
    is_active = Column(Boolean, default=True)

    # Maintained by subscription-schedule notifications only
    current_period_start = Column(DateTime)
    current_period_end = Column(DateTime)
    schedule_canceled_at = Column(DateTime)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    payments = relationship("Payment", back_populates="plan")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    plan_id = Column(String, ForeignKey("plans.id"), nullable=False, index=True)
    user_id = Column(String, index=True)

    # Identity keys
    stripe_checkout_session_id = Column(String, unique=True)
    stripe_payment_intent_id = Column(String, unique=True)
    stripe_charge_id = Column(String, unique=True)

    stripe_payment_method_id = Column(String)
    stripe_subscription_id = Column(String, index=True)
    stripe_customer_id = Column(String)
    stripe_price_id = Column(String)

    amount = Column(Numeric(12, 2), nullable=False, default=0)
    amount_authority = Column(Integer)
    currency = Column(String, default="inr")
    status = Column(String, nullable=False, default=PaymentStatus.PENDING.value)
    status_changed_at = Column(DateTime)

    card_brand = Column(String)
    card_funding = Column(String, default="unknown")   # credit | debit | prepaid | unknown
    card_last4 = Column(String)
    card_exp_month = Column(Integer)
    card_exp_year = Column(Integer)

    current_period_start = Column(DateTime)
    current_period_end = Column(DateTime)
    trial_start = Column(DateTime)
    trial_end = Column(DateTime)

    stripe_raw = Column(JSON)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)

    plan = relationship("Plan", back_populates="payments")

