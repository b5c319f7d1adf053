"""Ticket issuance, NFC transfers and favor offers"""
import logging
import secrets
from datetime import timedelta
from typing import Dict, Optional, Tuple

from sqlalchemy.orm import Session

from tickety_payments.core.config import settings
from tickety_payments.core.errors import Conflict, Forbidden, Gone, NotFound, ValidationFailed
from tickety_payments.core.metrics import tickets_issued_counter
from tickety_payments.models.cash_transaction import CashTransaction
from tickety_payments.models.event import Event, EventStaff
from tickety_payments.models.ticket import Ticket
from tickety_payments.models.ticket_offer import TicketOffer
from tickety_payments.models.user import User
from tickety_payments.utils.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

# No 0/O/1/I so numbers can be read out at the door
TICKET_NUMBER_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
TICKET_NUMBER_LENGTH = 8
TICKET_NUMBER_ATTEMPTS = 10


def get_user(db: Session, user_id: int) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFound("User not found")
    return user


def get_event(db: Session, event_id: int) -> Event:
    event = db.query(Event).filter(Event.id == event_id).first()
    if not event:
        raise NotFound("Event not found")
    return event


def is_event_staff(db: Session, event: Event, user_id: int, roles: Optional[Tuple[str, ...]] = None) -> bool:
    """True if the user organizes the event or holds one of ``roles`` on its staff"""
    if event.organizer_id == user_id:
        return True
    query = db.query(EventStaff).filter(EventStaff.event_id == event.id, EventStaff.user_id == user_id)
    if roles:
        query = query.filter(EventStaff.role.in_(roles))
    return query.first() is not None


def generate_ticket_number(db: Session) -> str:
    """Random human-readable ticket number not yet in use

    The unique constraint on ``tickets.ticket_number`` is the final arbiter
    for concurrent issuers.
    """
    for _ in range(TICKET_NUMBER_ATTEMPTS):
        suffix = "".join(secrets.choice(TICKET_NUMBER_ALPHABET) for _ in range(TICKET_NUMBER_LENGTH))
        candidate = f"TKT-{suffix}"
        if not db.query(Ticket.id).filter(Ticket.ticket_number == candidate).first():
            return candidate
    raise RuntimeError("Could not generate a unique ticket number")


def issue_ticket(
    db: Session,
    *,
    event_id: int,
    source: str,
    owner_email: Optional[str] = None,
    owner_user_id: Optional[int] = None,
    owner_name: Optional[str] = None,
    price_paid_cents: int = 0,
    currency: str = "usd",
    ticket_mode: str = "standard",
    payment_id: Optional[int] = None,
    offer_id: Optional[int] = None,
    ticket_type_id: Optional[int] = None,
    payment_method: str = "stripe",
    delivery_method: Optional[str] = None,
    sold_by: Optional[int] = None,
) -> Ticket:
    """Create a valid ticket and flush it. The caller owns the commit."""
    ticket = Ticket(
        event_id=event_id,
        ticket_number=generate_ticket_number(db),
        owner_email=owner_email,
        owner_user_id=owner_user_id,
        owner_name=owner_name,
        price_paid_cents=price_paid_cents,
        currency=currency.lower(),
        status="valid",
        ticket_mode=ticket_mode,
        payment_id=payment_id,
        offer_id=offer_id,
        ticket_type_id=ticket_type_id,
        payment_method=payment_method,
        delivery_method=delivery_method,
        sold_by=sold_by,
    )
    db.add(ticket)
    db.flush()
    tickets_issued_counter.labels(source=source).inc()
    logger.info(f"Issued ticket {ticket.ticket_number} (id={ticket.id}) for event {event_id} via {source}")
    return ticket


def ticket_to_dict(ticket: Ticket) -> Dict:
    expires_at = as_utc(ticket.transfer_token_expires_at)
    return {
        "id": ticket.id,
        "event_id": ticket.event_id,
        "ticket_number": ticket.ticket_number,
        "owner_email": ticket.owner_email,
        "owner_user_id": ticket.owner_user_id,
        "owner_name": ticket.owner_name,
        "price_paid_cents": ticket.price_paid_cents,
        "currency": ticket.currency,
        "status": ticket.status,
        "ticket_mode": ticket.ticket_mode,
        "listing_status": ticket.listing_status,
        "offer_id": ticket.offer_id,
        "transfer_token_expires_at": expires_at.isoformat() if expires_at else None,
    }


# ============================================================================
# NFC TRANSFERS
# ============================================================================

def assign_transfer_token(ticket: Ticket) -> Tuple[str, str]:
    """Attach a fresh single-use hand-off token to the ticket

    Returns the token and its ISO expiry.
    """
    token = secrets.token_hex(32)
    expires_at = utcnow() + timedelta(seconds=settings.TRANSFER_TOKEN_TTL_SECONDS)
    ticket.transfer_token = token
    ticket.transfer_token_expires_at = expires_at
    return token, expires_at.isoformat()


def claim_ticket_transfer(db: Session, user_id: int, transfer_token: str) -> Ticket:
    """Move a ticket to the caller using its NFC transfer token

    Raises:
        NotFound: Unknown token
        Conflict: Token already used, or ticket belongs to someone else
        Gone: Token expired
    """
    user = get_user(db, user_id)
    ticket = (
        db.query(Ticket)
        .filter(Ticket.transfer_token == transfer_token)
        .with_for_update()
        .first()
    )
    if not ticket:
        if db.query(Ticket.id).filter(Ticket.consumed_transfer_token == transfer_token).first():
            raise Conflict("Ticket has already been claimed")
        raise NotFound("Invalid transfer token")

    expires_at = as_utc(ticket.transfer_token_expires_at)
    if expires_at is None or expires_at <= utcnow():
        logger.info(f"Transfer token for ticket {ticket.id} expired at {expires_at}")
        raise Gone("Transfer token has expired")

    if ticket.owner_email and ticket.owner_email.lower() != user.email.lower():
        raise Conflict("Ticket has already been claimed")

    ticket.owner_email = user.email
    ticket.owner_user_id = user.id
    ticket.owner_name = user.display_name or ticket.owner_name
    ticket.consumed_transfer_token = ticket.transfer_token
    ticket.transfer_token = None
    ticket.transfer_token_expires_at = None

    cash_tx = db.query(CashTransaction).filter(CashTransaction.ticket_id == ticket.id).first()
    if cash_tx and cash_tx.status == "pending":
        cash_tx.status = "collected"
        cash_tx.collected_at = utcnow()

    db.commit()
    db.refresh(ticket)
    logger.info(f"User {user_id} claimed ticket {ticket.ticket_number} via transfer token")
    return ticket


# ============================================================================
# FAVOR OFFERS
# ============================================================================

def _get_offer_for_update(db: Session, offer_id: int) -> TicketOffer:
    offer = db.query(TicketOffer).filter(TicketOffer.id == offer_id).with_for_update().first()
    if not offer:
        raise NotFound("Offer not found")
    return offer


def _is_recipient(offer: TicketOffer, user: User) -> bool:
    if offer.recipient_user_id is not None and offer.recipient_user_id == user.id:
        return True
    return offer.recipient_email.lower() == user.email.lower()


def _expire_if_due(db: Session, offer: TicketOffer) -> None:
    if offer.status == "pending" and as_utc(offer.expires_at) <= utcnow():
        offer.status = "expired"
        offer.responded_at = utcnow()
        db.commit()
        raise Gone("This offer has expired")


def claim_favor_offer(db: Session, user_id: int, offer_id: int, skip_minting_fee: bool = False) -> Tuple[Ticket, str]:
    """Accept a free favor offer and issue the ticket

    Paid offers go through ``create_favor_purchase_intent`` instead. The one
    exception is a public offer whose recipient skips the minting fee: it is
    downgraded to a private ticket and issued for free.
    """
    user = get_user(db, user_id)
    offer = _get_offer_for_update(db, offer_id)

    if not _is_recipient(offer, user):
        raise Forbidden("This offer is not addressed to you")
    if offer.status != "pending":
        raise Conflict(f"Offer is already {offer.status}")
    _expire_if_due(db, offer)

    downgrade = offer.ticket_mode == "public" and skip_minting_fee
    if offer.price_cents > 0 and not downgrade:
        raise ValidationFailed("Paid offers must be claimed through the payment flow")
    ticket_mode = "private" if downgrade else offer.ticket_mode

    event = get_event(db, offer.event_id)
    ticket = issue_ticket(
        db,
        event_id=offer.event_id,
        source="favor_offer",
        owner_email=user.email,
        owner_user_id=user.id,
        owner_name=user.display_name,
        price_paid_cents=0,
        currency=event.currency,
        ticket_mode=ticket_mode,
        offer_id=offer.id,
        payment_method="comp",
        sold_by=offer.created_by,
    )
    offer.status = "accepted"
    offer.ticket_id = ticket.id
    offer.recipient_user_id = user.id
    offer.responded_at = utcnow()
    db.commit()
    db.refresh(ticket)
    logger.info(f"User {user_id} claimed favor offer {offer.id} as {ticket_mode} ticket {ticket.ticket_number}")
    return ticket, ticket_mode


def decline_offer(db: Session, user_id: int, offer_id: int) -> TicketOffer:
    user = get_user(db, user_id)
    offer = _get_offer_for_update(db, offer_id)
    if not _is_recipient(offer, user):
        raise Forbidden("This offer is not addressed to you")
    if offer.is_terminal:
        raise Conflict(f"Offer is already {offer.status}")
    offer.status = "declined"
    offer.responded_at = utcnow()
    db.commit()
    logger.info(f"User {user_id} declined favor offer {offer.id}")
    return offer


def cancel_offer(db: Session, user_id: int, offer_id: int) -> TicketOffer:
    offer = _get_offer_for_update(db, offer_id)
    event = get_event(db, offer.event_id)
    if offer.created_by != user_id and not is_event_staff(db, event, user_id, roles=("admin",)):
        raise Forbidden("Only the event organizer can cancel this offer")
    if offer.is_terminal:
        raise Conflict(f"Offer is already {offer.status}")
    offer.status = "cancelled"
    offer.responded_at = utcnow()
    db.commit()
    logger.info(f"User {user_id} cancelled favor offer {offer.id}")
    return offer
