from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class SaveSessionRequest(BaseModel):
    session: Dict[str, Any]
    plan: Optional[Dict[str, Any]] = None


class PlanSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    price: Decimal
    billing_period: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None


class PaymentOut(BaseModel):
    """Payment as shown to frontends. The raw processor payload is left out."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    plan_id: str
    user_id: Optional[str] = None
    stripe_checkout_session_id: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    stripe_charge_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    amount: Decimal
    currency: Optional[str] = None
    status: str
    card_brand: Optional[str] = None
    card_funding: Optional[str] = None
    card_last4: Optional[str] = None
    card_exp_month: Optional[int] = None
    card_exp_year: Optional[int] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PaymentHistoryItem(PaymentOut):
    plan: Optional[PlanSummary] = None


class PaymentResponse(BaseModel):
    success: bool = True
    payment: PaymentOut
    created: bool


class PaymentHistoryResponse(BaseModel):
    success: bool = True
    payments: List[PaymentHistoryItem]
    count: int


class SessionResponse(BaseModel):
    success: bool = True
    session: Dict[str, Any]
    plan: Optional[PlanSummary] = None
