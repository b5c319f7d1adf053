"""Stripe webhook routes"""
import logging
import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from tickety_payments.db.session import get_db
from tickety_payments.services.webhook_service import (
    WebhookHandlerError, process_connect_webhook, process_stripe_webhook
)

router = APIRouter(prefix="/api", tags=["webhooks"])
logger = logging.getLogger("webhooks")


async def _handle(request: Request, db: Session, processor):
    # Signature verification needs the body exactly as sent
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not sig_header:
        raise HTTPException(400, "Missing stripe-signature header")

    try:
        return processor(payload, sig_header, db)
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise HTTPException(400, str(e))
    except stripe.error.SignatureVerificationError as e:
        logger.error(f"Invalid webhook signature: {e}")
        raise HTTPException(400, "Invalid signature")
    except WebhookHandlerError as e:
        # Non-2xx makes Stripe redeliver; the ledger keeps the event unprocessed
        logger.error(str(e))
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})


@router.post("/stripe-webhook")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """Handle platform account events (payments, refunds, subscriptions)"""
    return await _handle(request, db, process_stripe_webhook)


@router.post("/webhooks/stripe-connect")
async def stripe_connect_webhook(request: Request, db: Session = Depends(get_db)):
    """Handle events from connected seller accounts"""
    return await _handle(request, db, process_connect_webhook)
