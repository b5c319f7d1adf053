"""Seller account API routes"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from tickety_payments.core.security import require_auth
from tickety_payments.db.session import get_db
from tickety_payments.schemas.sellers import InitiateWithdrawalRequest
from tickety_payments.services.seller_service import ensure_seller_account, get_seller_balance, initiate_withdrawal

router = APIRouter(prefix="/api", tags=["sellers"])
logger = logging.getLogger(__name__)


@router.post("/create-seller-account")
def create_seller_account(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Create the caller's Connect account if they have none"""
    return ensure_seller_account(db, user_id)


@router.get("/seller-balance")
def seller_balance(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Live balance from Stripe"""
    return get_seller_balance(db, user_id)


@router.post("/initiate-withdrawal")
def withdraw(
    request_data: Optional[InitiateWithdrawalRequest] = None,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Pay out the available balance, or return an onboarding URL"""
    amount_cents = request_data.amount_cents if request_data else None
    return initiate_withdrawal(db, user_id, amount_cents)
