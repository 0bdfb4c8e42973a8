import logging

from fastapi import FastAPI, Request, Header, HTTPException, Depends
from fastapi.concurrency import run_in_threadpool

from ledger.config import configure_logging, get_settings
from ledger.database import init_db
from ledger.errors import MissingSecret, VerificationError
from ledger.routes import router, get_dispatcher
from ledger.verifier import get_verifier

settings = get_settings()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Payment Ledger Service")

app.include_router(router)

init_db()


@app.post("/payments/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    verifier=Depends(get_verifier),
    dispatcher=Depends(get_dispatcher),
):
    payload = await request.body()

    try:
        event = verifier.verify(payload, stripe_signature)
    except MissingSecret:
        logger.error("Webhook received but STRIPE_WEBHOOK_SECRET is missing")
        raise HTTPException(status_code=500, detail="Webhook secret missing")
    except VerificationError as exc:
        logger.warning("Webhook rejected: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc))

    try:
        await run_in_threadpool(dispatcher.dispatch, event)
    except Exception:
        logger.exception("Error processing event %s (%s)", event.type, event.id)
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    return {"ok": True}
