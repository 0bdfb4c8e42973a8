from fastapi import APIRouter, Depends, HTTPException

from ledger.auth import verify_token
from ledger.config import get_settings
from ledger.database import get_db
from ledger.dispatcher import EventDispatcher
from ledger.errors import PlanNotFound, SessionNotFound, UnresolvablePayment
from ledger.reconciler import Reconciler
from ledger.resolver import IdentityResolver
from ledger.schedules import ScheduleTracker, log_expiry
from ledger.schemas import (
    PaymentHistoryResponse,
    PaymentResponse,
    SaveSessionRequest,
    SessionResponse,
)
from ledger.store import LedgerStore
from ledger.stripe_service import get_processor

router = APIRouter(prefix="/payments")


def get_reconciler(db=Depends(get_db), processor=Depends(get_processor)):
    settings = get_settings()
    store = LedgerStore(db, IdentityResolver(settings.fallback_match_window_minutes))
    return Reconciler(store, processor, settings.default_currency)


def get_expiry_hooks():
    """Hooks run on ``subscription_schedule.expiring``.

    Deployments that act on an expiring schedule (renewal mail, plan
    migration) override this dependency with their own hook list.
    """
    return [log_expiry]


def get_dispatcher(reconciler=Depends(get_reconciler), expiry_hooks=Depends(get_expiry_hooks)):
    return EventDispatcher(reconciler, ScheduleTracker(reconciler.store, expiry_hooks))


@router.post("/save-frontend", response_model=PaymentResponse)
def save_frontend_session(request: SaveSessionRequest, reconciler=Depends(get_reconciler)):
    try:
        result = reconciler.save_frontend_session(request.session, request.plan)
    except UnresolvablePayment as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except PlanNotFound:
        raise HTTPException(status_code=404, detail="Plan not found")

    return {"payment": result.payment, "created": result.created}


@router.post("/sessions/{session_id}/cancel", response_model=PaymentResponse)
def mark_session_canceled(session_id: str, reconciler=Depends(get_reconciler)):
    try:
        result = reconciler.mark_session_canceled(session_id)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found")
    except UnresolvablePayment as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except PlanNotFound:
        raise HTTPException(status_code=404, detail="Plan not found")

    return {"payment": result.payment, "created": result.created}


@router.get("/session/{session_id}", response_model=SessionResponse)
def get_payment_session(session_id: str, plan_id: str = None, reconciler=Depends(get_reconciler)):
    try:
        session, plan = reconciler.get_session(session_id, plan_id)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found")

    return {"session": session, "plan": plan}


@router.get("/user/{user_id}", response_model=PaymentHistoryResponse)
def payment_history(user_id: str, db=Depends(get_db), caller=Depends(verify_token)):
    if caller != user_id:
        raise HTTPException(status_code=403, detail="Not allowed to read another user's payments")

    payments = LedgerStore(db).payment_history(user_id)
    return {"payments": payments, "count": len(payments)}
