"""Payment API routes"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from tickety_payments.core.security import require_auth
from tickety_payments.db.session import get_db
from tickety_payments.schemas.payments import (
    CreatePaymentIntentRequest, CreateResaleIntentRequest, ProcessRefundRequest
)
from tickety_payments.services.payment_service import (
    create_payment_intent, create_resale_purchase_intent, process_refund
)

router = APIRouter(prefix="/api", tags=["payments"])
logger = logging.getLogger(__name__)


@router.post("/create-payment-intent")
def create_payment_intent_route(
    request_data: CreatePaymentIntentRequest,
    user_id: int = Depends(require_auth),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    db: Session = Depends(get_db)
):
    """Create a PaymentIntent for a primary, vendor or favor ticket purchase

    Send the same ``Idempotency-Key`` when retrying to get the same intent back.
    """
    return create_payment_intent(
        db,
        user_id,
        event_id=request_data.event_id,
        amount_cents=request_data.amount_cents,
        currency=request_data.currency,
        payment_type=request_data.type,
        quantity=request_data.quantity,
        offer_id=request_data.offer_id,
        client_metadata=request_data.metadata,
        client_idempotency_key=idempotency_key,
    )


@router.post("/create-resale-intent")
def create_resale_intent_route(
    request_data: CreateResaleIntentRequest,
    user_id: int = Depends(require_auth),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    db: Session = Depends(get_db)
):
    """Create a destination-charge PaymentIntent for a resale listing"""
    return create_resale_purchase_intent(
        db,
        user_id,
        listing_id=request_data.resale_listing_id,
        amount_cents=request_data.amount_cents,
        currency=request_data.currency,
        client_idempotency_key=idempotency_key,
    )


@router.post("/process-refund")
def process_refund_route(
    request_data: ProcessRefundRequest,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Refund a completed payment in full"""
    return process_refund(db, user_id, request_data.payment_id, request_data.reason)
