"""Resale listings

Listing a ticket creates the seller's Connect account on first use. The price
is frozen as soon as any payment references the listing.
"""
import logging
from typing import Any, Dict

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tickety_payments.core.errors import Conflict, Forbidden, NotFound, ValidationFailed
from tickety_payments.models.payment import Payment
from tickety_payments.models.resale_listing import ResaleListing
from tickety_payments.models.ticket import Ticket
from tickety_payments.models.user import User
from tickety_payments.services.fee_service import compute_flat_fee
from tickety_payments.services.seller_service import ensure_seller_account
from tickety_payments.services.ticket_service import get_user

logger = logging.getLogger(__name__)

MAX_LISTING_PRICE_CENTS = 1_000_000


def _owns_ticket(ticket: Ticket, user: User) -> bool:
    if ticket.owner_user_id is not None:
        return ticket.owner_user_id == user.id
    return bool(ticket.owner_email) and ticket.owner_email.lower() == user.email.lower()


def _check_price(price_cents: int) -> None:
    if price_cents <= 0 or price_cents > MAX_LISTING_PRICE_CENTS:
        raise ValidationFailed(f"Price must be between 1 and {MAX_LISTING_PRICE_CENTS} cents")


def listing_to_dict(listing: ResaleListing) -> Dict[str, Any]:
    split = compute_flat_fee(listing.price_cents)
    return {
        "id": listing.id,
        "ticket_id": listing.ticket_id,
        "seller_id": listing.seller_id,
        "price_cents": listing.price_cents,
        "currency": listing.currency,
        "status": listing.status,
        "platform_fee_cents": split.platform_fee_cents,
        "seller_amount_cents": split.seller_amount_cents,
    }


def create_listing(db: Session, user_id: int, ticket_id: int, price_cents: int) -> Dict[str, Any]:
    """List a ticket the caller owns

    Raises:
        NotFound: Ticket missing
        Forbidden: Caller does not own the ticket
        ValidationFailed: Private or non-valid ticket, bad price
        Conflict: Ticket already listed
    """
    _check_price(price_cents)
    user = get_user(db, user_id)
    ticket = db.query(Ticket).filter(Ticket.id == ticket_id).with_for_update().first()
    if not ticket:
        raise NotFound("Ticket not found")
    if not _owns_ticket(ticket, user):
        raise Forbidden("You can only list tickets you own")
    if ticket.ticket_mode == "private":
        raise ValidationFailed("Private tickets cannot be resold")
    if ticket.status != "valid":
        raise ValidationFailed("Only valid tickets can be listed for resale")
    active = (
        db.query(ResaleListing.id)
        .filter(ResaleListing.ticket_id == ticket.id, ResaleListing.status == "active")
        .first()
    )
    if active:
        raise Conflict("Ticket is already listed")

    account = ensure_seller_account(db, user.id)

    listing = ResaleListing(
        ticket_id=ticket.id,
        seller_id=user.id,
        price_cents=price_cents,
        currency=ticket.currency,
        status="active",
    )
    db.add(listing)
    ticket.listing_status = "listed"
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("Ticket is already listed")
    db.refresh(listing)
    logger.info(f"User {user.id} listed ticket {ticket.id} for {price_cents} cents (listing {listing.id}, account {account['account_id']})")
    return listing_to_dict(listing)


def _get_own_listing(db: Session, user_id: int, listing_id: int) -> ResaleListing:
    listing = db.query(ResaleListing).filter(ResaleListing.id == listing_id).with_for_update().first()
    if not listing:
        raise NotFound("Listing not found")
    if listing.seller_id != user_id:
        raise Forbidden("You can only manage your own listings")
    if listing.status != "active":
        raise Conflict(f"Listing is already {listing.status}")
    return listing


def cancel_listing(db: Session, user_id: int, listing_id: int) -> Dict[str, Any]:
    listing = _get_own_listing(db, user_id, listing_id)
    listing.status = "cancelled"
    ticket = db.query(Ticket).filter(Ticket.id == listing.ticket_id).first()
    if ticket and ticket.listing_status == "listed":
        ticket.listing_status = "cancelled"
    db.commit()
    logger.info(f"User {user_id} cancelled listing {listing.id}")
    return listing_to_dict(listing)


def update_listing_price(db: Session, user_id: int, listing_id: int, price_cents: int) -> Dict[str, Any]:
    """Change the asking price while no buyer has started paying"""
    _check_price(price_cents)
    listing = _get_own_listing(db, user_id, listing_id)
    in_flight = db.query(Payment.id).filter(Payment.resale_listing_id == listing.id).first()
    if in_flight:
        raise Conflict("Price cannot change once a purchase has started")
    listing.price_cents = price_cents
    db.commit()
    logger.info(f"User {user_id} repriced listing {listing.id} to {price_cents} cents")
    return listing_to_dict(listing)
