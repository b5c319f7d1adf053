"""Subscription state derived from Stripe

Tier and status always come from the provider's subscription object. The
only local path that sets them without Stripe is the development override.
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from tickety_payments.core.config import settings
from tickety_payments.core.errors import Forbidden, ValidationFailed
from tickety_payments.models.subscription import Subscription
from tickety_payments.models.user import User
from tickety_payments.schemas.webhooks import SubscriptionObject
from tickety_payments.utils.timeutils import as_utc, from_timestamp

logger = logging.getLogger(__name__)

TIERS = ("base", "pro", "enterprise")
LOCAL_STATUSES = ("active", "past_due", "trialing", "canceled", "paused")


def map_subscription_status(stripe_status: Optional[str]) -> str:
    """Map a Stripe status onto ours

    Anything we do not recognise (incomplete, incomplete_expired, unpaid, ...)
    becomes ``canceled`` so an ambiguous status never grants access.
    """
    if stripe_status in LOCAL_STATUSES:
        return stripe_status
    return "canceled"


def _price_tiers() -> Dict[str, str]:
    table = {}
    if settings.STRIPE_PRO_PRICE_ID:
        table[settings.STRIPE_PRO_PRICE_ID] = "pro"
    if settings.STRIPE_ENTERPRISE_PRICE_ID:
        table[settings.STRIPE_ENTERPRISE_PRICE_ID] = "enterprise"
    return table


def resolve_tier(subscription: SubscriptionObject) -> str:
    """Tier from subscription metadata, else from the price id, else base"""
    tier = subscription.metadata.get("tier")
    if tier in TIERS:
        return tier
    price_id = subscription.price_id
    if price_id:
        tier = _price_tiers().get(price_id)
        if tier:
            return tier
        logger.warning(f"Subscription {subscription.id} has unknown price {price_id}, defaulting to base")
    return "base"


def _resolve_user_id(subscription: SubscriptionObject, db: Session) -> Optional[int]:
    user_id = subscription.metadata.get("user_id")
    if user_id and user_id.isdigit():
        if db.query(User.id).filter(User.id == int(user_id)).first():
            return int(user_id)
    if subscription.customer:
        user = db.query(User).filter(User.stripe_customer_id == subscription.customer).first()
        if user:
            return user.id
    existing = db.query(Subscription).filter(Subscription.stripe_subscription_id == subscription.id).first()
    return existing.user_id if existing else None


def _get_or_create(db: Session, user_id: int) -> Subscription:
    record = db.query(Subscription).filter(Subscription.user_id == user_id).with_for_update().first()
    if not record:
        record = Subscription(user_id=user_id, tier="base", status="active", cancel_at_period_end=False)
        db.add(record)
    return record


def _is_stale(record: Subscription, event_created: int, subscription_id: Optional[str] = None, is_created: bool = False) -> bool:
    if not record.last_event_at or not event_created:
        return False
    event_at = from_timestamp(event_created)
    last_at = as_utc(record.last_event_at)
    if event_at < last_at:
        return True
    # Event timestamps are whole seconds; a same-second created never overrides its own later updates
    return is_created and event_at == last_at and record.stripe_subscription_id == subscription_id


def handle_subscription_upsert(
    subscription: SubscriptionObject,
    event_created: int,
    db: Session,
    is_created: bool = False
) -> Optional[Subscription]:
    """Apply customer.subscription.created / updated

    Re-derives the whole record from the event payload, so created and
    updated may arrive in any order. An event older than the last one
    applied for the user is ignored, and so is a created event from the
    same second as an already applied event for that subscription.
    """
    user_id = _resolve_user_id(subscription, db)
    if user_id is None:
        logger.warning(f"No user found for subscription {subscription.id} (customer {subscription.customer})")
        return None

    record = _get_or_create(db, user_id)
    if _is_stale(record, event_created, subscription.id, is_created):
        logger.info(f"Ignoring stale event for subscription {subscription.id} (user {user_id})")
        return record

    start, end = subscription.period_bounds
    record.tier = resolve_tier(subscription)
    record.status = map_subscription_status(subscription.status)
    record.stripe_subscription_id = subscription.id
    record.stripe_customer_id = subscription.customer
    record.stripe_price_id = subscription.price_id
    record.current_period_start = from_timestamp(start)
    record.current_period_end = from_timestamp(end)
    record.cancel_at_period_end = subscription.cancel_at_period_end
    if event_created:
        record.last_event_at = from_timestamp(event_created)
    db.commit()
    logger.info(
        f"Subscription {subscription.id} synced for user {user_id}: "
        f"tier={record.tier}, status={record.status} (stripe status {subscription.status})"
    )
    return record


def handle_subscription_deleted(subscription: SubscriptionObject, event_created: int, db: Session) -> Optional[Subscription]:
    """Reset the user to the base tier and drop the Stripe linkage"""
    user_id = _resolve_user_id(subscription, db)
    if user_id is None:
        logger.warning(f"No user found for deleted subscription {subscription.id}")
        return None

    record = _get_or_create(db, user_id)
    if _is_stale(record, event_created):
        logger.info(f"Ignoring stale delete for subscription {subscription.id} (user {user_id})")
        return record
    if record.stripe_subscription_id and record.stripe_subscription_id != subscription.id:
        # The user already moved to a newer subscription
        logger.info(f"Subscription {subscription.id} deleted but user {user_id} is on {record.stripe_subscription_id}")
        return record

    record.tier = "base"
    record.status = "active"
    record.stripe_subscription_id = None
    record.stripe_price_id = None
    record.current_period_start = None
    record.current_period_end = None
    record.cancel_at_period_end = False
    if event_created:
        record.last_event_at = from_timestamp(event_created)
    db.commit()
    logger.info(f"Subscription {subscription.id} deleted; user {user_id} reset to base tier")
    return record


def get_subscription(db: Session, user_id: int) -> Dict[str, Any]:
    record = db.query(Subscription).filter(Subscription.user_id == user_id).first()
    if not record:
        return {"tier": "base", "status": "active", "stripe_subscription_id": None,
                "current_period_start": None, "current_period_end": None, "cancel_at_period_end": False}
    return record.to_dict()


def dev_override_subscription(
    db: Session,
    user_id: int,
    tier: str,
    status: Optional[str] = None,
    cancel_at_period_end: bool = False,
) -> Dict[str, Any]:
    """Set a user's tier directly. Only available with DEV_MODE enabled."""
    if not settings.DEV_MODE:
        raise Forbidden("Subscription override is only available in development mode")
    if tier not in TIERS:
        raise ValidationFailed('Invalid tier. Must be "base", "pro", or "enterprise"')
    status = status or "active"
    if status not in LOCAL_STATUSES:
        raise ValidationFailed(f"Invalid status {status}")

    record = _get_or_create(db, user_id)
    record.tier = tier
    record.status = status
    record.cancel_at_period_end = cancel_at_period_end
    if tier == "base":
        record.stripe_subscription_id = None
        record.stripe_price_id = None
    db.commit()
    logger.warning(f"[DEV] Subscription for user {user_id} overridden to tier={tier}, status={status}")
    return record.to_dict()
