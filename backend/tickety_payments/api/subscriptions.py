"""Subscription API routes"""
import logging
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from tickety_payments.core.security import require_auth
from tickety_payments.db.session import get_db
from tickety_payments.schemas.subscriptions import DevOverrideSubscriptionRequest
from tickety_payments.services.subscription_service import dev_override_subscription, get_subscription

router = APIRouter(prefix="/api", tags=["subscriptions"])
logger = logging.getLogger(__name__)


@router.get("/subscription")
def get_subscription_route(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Get the caller's tier and status"""
    return {"subscription": get_subscription(db, user_id)}


@router.post("/dev/override-subscription")
def override_subscription_route(
    request_data: DevOverrideSubscriptionRequest,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Set the caller's tier without Stripe (DEV_MODE only)"""
    return {
        "success": True,
        "subscription": dev_override_subscription(
            db, user_id, request_data.tier, request_data.status, request_data.cancel_at_period_end
        ),
    }
