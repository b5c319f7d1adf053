"""Seller Connect accounts, balances and withdrawals

Sellers get a bare Express account (email only) the first time they list a
ticket. Bank details and KYC are collected by Stripe at withdrawal time, and
proceeds stay in the seller's Stripe balance until then.
"""
import logging
import uuid
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from tickety_payments.core.config import settings
from tickety_payments.core.errors import NotFound, UpstreamFailure, ValidationFailed
from tickety_payments.core.metrics import payouts_counter
from tickety_payments.models.resale_listing import ResaleListing
from tickety_payments.models.seller_balance import SellerBalance
from tickety_payments.models.ticket import Ticket
from tickety_payments.models.user import User
from tickety_payments.services import stripe_service
from tickety_payments.services.stripe_service import get_stripe_value
from tickety_payments.utils.timeutils import from_timestamp, utcnow

logger = logging.getLogger(__name__)


def _get_balance_row(db: Session, user_id: int) -> Optional[SellerBalance]:
    return db.query(SellerBalance).filter(SellerBalance.user_id == user_id).first()


def get_seller_account_id(db: Session, user_id: int) -> Optional[str]:
    """Seller's Connect account, falling back to the legacy profile column"""
    balance = _get_balance_row(db, user_id)
    if balance and balance.stripe_account_id:
        return balance.stripe_account_id
    user = db.query(User).filter(User.id == user_id).first()
    return user.stripe_connect_account_id if user else None


def _store_account(db: Session, user_id: int, account_id: str) -> SellerBalance:
    """Insert or update the seller_balances row; a concurrent insert wins"""
    balance = _get_balance_row(db, user_id)
    if balance:
        if not balance.stripe_account_id:
            balance.stripe_account_id = account_id
            db.commit()
        return balance
    balance = SellerBalance(user_id=user_id, stripe_account_id=account_id)
    db.add(balance)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Seller balance for user {user_id} already created by a concurrent request")
        balance = _get_balance_row(db, user_id)
    return balance


def ensure_seller_account(db: Session, user_id: int) -> Dict[str, Any]:
    """Create the seller's Connect account if they do not have one

    Idempotent: an existing account (new table or legacy column) is returned
    with ``already_exists`` set.
    """
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFound("User not found")

    balance = _get_balance_row(db, user_id)
    if balance and balance.stripe_account_id:
        return {"success": True, "account_id": balance.stripe_account_id, "already_exists": True}

    if user.stripe_connect_account_id:
        # Move the legacy linkage into seller_balances
        _store_account(db, user_id, user.stripe_connect_account_id)
        return {"success": True, "account_id": user.stripe_connect_account_id, "already_exists": True}

    account = stripe_service.create_connect_account(user.email, user.id)
    stored = _store_account(db, user_id, account.id)
    if stored is not None and stored.stripe_account_id != account.id:
        logger.warning(
            f"User {user_id} already linked to {stored.stripe_account_id}; Connect account {account.id} is unused"
        )
        return {"success": True, "account_id": stored.stripe_account_id, "already_exists": True}
    return {"success": True, "account_id": account.id, "already_exists": False}


def _usd_amount(entries, currency: str = "usd") -> int:
    for entry in entries or []:
        if get_stripe_value(entry, "currency") == currency:
            return int(get_stripe_value(entry, "amount", 0))
    return 0


def get_seller_balance(db: Session, user_id: int) -> Dict[str, Any]:
    """Fetch the live balance from Stripe and cache it locally"""
    balance_row = _get_balance_row(db, user_id)
    account_id = get_seller_account_id(db, user_id)
    if not account_id:
        return {
            "has_account": False,
            "available_balance_cents": 0,
            "pending_balance_cents": 0,
            "payouts_enabled": False,
            "needs_onboarding": True,
        }

    account = stripe_service.retrieve_account(account_id)
    balance = stripe_service.retrieve_balance(account_id)
    available = _usd_amount(get_stripe_value(balance, "available"))
    pending = _usd_amount(get_stripe_value(balance, "pending"))
    payouts_enabled = bool(get_stripe_value(account, "payouts_enabled", False))
    details_submitted = bool(get_stripe_value(account, "details_submitted", False))

    try:
        if balance_row is None:
            balance_row = SellerBalance(user_id=user_id, stripe_account_id=account_id)
            db.add(balance_row)
        balance_row.available_balance_cents = available
        balance_row.pending_balance_cents = pending
        balance_row.payouts_enabled = payouts_enabled
        balance_row.details_submitted = details_submitted
        balance_row.last_synced_at = utcnow()
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to cache balance for user {user_id} (account {account_id}): {e}")

    return {
        "has_account": True,
        "account_id": account_id,
        "available_balance_cents": available,
        "pending_balance_cents": pending,
        "payouts_enabled": payouts_enabled,
        "details_submitted": details_submitted,
        "needs_onboarding": not payouts_enabled,
    }


def initiate_withdrawal(db: Session, user_id: int, amount_cents: Optional[int] = None) -> Dict[str, Any]:
    """Pay out the seller's available balance, or send them to onboarding first"""
    account_id = get_seller_account_id(db, user_id)
    if not account_id:
        raise ValidationFailed("No seller account found. Sell a ticket first.")

    account = stripe_service.retrieve_account(account_id)
    if not get_stripe_value(account, "payouts_enabled", False):
        try:
            url = stripe_service.create_account_link(
                account_id,
                refresh_url=f"{settings.APP_URL}/wallet/setup/refresh",
                return_url=f"{settings.APP_URL}/wallet/setup/complete",
            )
        except UpstreamFailure as e:
            # Fully onboarded accounts reject onboarding links; the dashboard still works
            logger.warning(f"Account link failed for {account_id}, falling back to login link: {e}")
            url = stripe_service.create_login_link(account_id)
        return {
            "success": False,
            "needs_onboarding": True,
            "onboarding_url": url,
            "message": "Please add your bank details to withdraw funds",
        }

    balance = stripe_service.retrieve_balance(account_id)
    available = _usd_amount(get_stripe_value(balance, "available"))
    if available <= 0:
        raise ValidationFailed("No funds available for withdrawal")

    withdraw_amount = min(amount_cents, available) if amount_cents else available
    if withdraw_amount <= 0:
        raise ValidationFailed("Invalid withdrawal amount")

    payout = stripe_service.create_payout(
        account_id, withdraw_amount, "usd",
        idempotency_key=f"payout-{account_id}-{uuid.uuid4().hex}",
    )
    payouts_counter.inc()

    balance_row = _get_balance_row(db, user_id)
    if balance_row:
        try:
            balance_row.available_balance_cents = available - withdraw_amount
            balance_row.last_synced_at = utcnow()
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Payout {payout.id} created but cached balance update failed for user {user_id}: {e}")

    arrival = get_stripe_value(payout, "arrival_date")
    return {
        "success": True,
        "payout_id": payout.id,
        "amount_cents": withdraw_amount,
        "estimated_arrival": from_timestamp(arrival).isoformat() if arrival else None,
    }


# ============================================================================
# CONNECT WEBHOOK HANDLERS
# ============================================================================

def handle_account_updated(account: Any, db: Session) -> None:
    account_id = get_stripe_value(account, "id")
    balance = db.query(SellerBalance).filter(SellerBalance.stripe_account_id == account_id).first()
    if not balance:
        logger.info(f"No seller linked to Connect account {account_id}, skipping")
        return
    balance.payouts_enabled = bool(get_stripe_value(account, "payouts_enabled", False))
    balance.details_submitted = bool(get_stripe_value(account, "details_submitted", False))
    db.commit()
    onboarded = (
        bool(get_stripe_value(account, "charges_enabled", False))
        and balance.payouts_enabled and balance.details_submitted
    )
    logger.info(f"Connect account {account_id} for user {balance.user_id} updated: onboarded={onboarded}")


def handle_account_deauthorized(account_id: str, db: Session) -> None:
    """Unlink the account and pull the seller's active listings"""
    balance = db.query(SellerBalance).filter(SellerBalance.stripe_account_id == account_id).first()
    user = db.query(User).filter(User.stripe_connect_account_id == account_id).first()
    user_id = balance.user_id if balance else (user.id if user else None)
    if user_id is None:
        logger.info(f"No seller linked to deauthorized account {account_id}, skipping")
        return

    if balance:
        balance.stripe_account_id = None
        balance.payouts_enabled = False
        balance.details_submitted = False
    if user:
        user.stripe_connect_account_id = None

    listings = (
        db.query(ResaleListing)
        .filter(ResaleListing.seller_id == user_id, ResaleListing.status == "active")
        .all()
    )
    for listing in listings:
        listing.status = "cancelled"
        ticket = db.query(Ticket).filter(Ticket.id == listing.ticket_id).first()
        if ticket and ticket.listing_status == "listed":
            ticket.listing_status = "cancelled"
    db.commit()
    logger.info(f"Cleared Connect account {account_id} for user {user_id}, cancelled {len(listings)} listings")
