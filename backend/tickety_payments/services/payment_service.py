"""Payment intent issuance and refunds

Every purchase amount is recomputed here from server-side prices and the
client's figure is only accepted when it matches to the cent. The pending
Payment row written after Stripe accepts the intent is best-effort: if it
fails, the webhook reconciler rebuilds it from the intent metadata.
"""
import logging
import uuid
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tickety_payments.core.errors import (
    Conflict, Forbidden, ListingUnavailable, NotFound, PriceMismatch,
    SelfPurchase, SellerNotPayable, ValidationFailed
)
from tickety_payments.core.metrics import payment_intents_counter, price_mismatch_counter
from tickety_payments.models.payment import Payment
from tickety_payments.models.resale_listing import ResaleListing
from tickety_payments.models.ticket import Ticket
from tickety_payments.models.ticket_offer import TicketOffer
from tickety_payments.models.user import User
from tickety_payments.services import stripe_service
from tickety_payments.services.fee_service import FeeBreakdown, compute_fees, compute_flat_fee
from tickety_payments.services.seller_service import get_seller_account_id
from tickety_payments.services.ticket_service import get_event, get_user, is_event_staff
from tickety_payments.utils.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

MAX_QUANTITY = 20
REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")

# Keys the reconciler trusts. Client-supplied metadata can never override them.
RESERVED_METADATA_KEYS = (
    "event_id", "user_id", "type", "quantity", "offer_id", "resale_listing_id",
    "ticket_id", "seller_id", "seller_account_id",
)


def ensure_customer(db: Session, user: User) -> str:
    """Return the user's Stripe customer id, creating and persisting one if absent

    Creation uses a per-user idempotency key, so concurrent first purchases
    converge on the same customer.
    """
    if user.stripe_customer_id:
        return user.stripe_customer_id

    customer_id = stripe_service.create_customer(user.email, user.id, user.display_name)
    db.refresh(user)
    if user.stripe_customer_id:
        # Another request stored one first
        return user.stripe_customer_id
    user.stripe_customer_id = customer_id
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to persist Stripe customer {customer_id} for user {user.id}: {e}")
    return customer_id


def _intent_idempotency_key(payment_type: str, user_id: int, target: Any, client_key: Optional[str]) -> str:
    suffix = client_key or uuid.uuid4().hex
    return f"pi-{payment_type}-{user_id}-{target}-{suffix}"


def _build_metadata(client_metadata: Optional[Dict[str, Any]], **reserved) -> Dict[str, Any]:
    metadata = {
        k: v for k, v in (client_metadata or {}).items()
        if k not in RESERVED_METADATA_KEYS
    }
    metadata.update({k: v for k, v in reserved.items() if v is not None})
    return metadata


def _fee_metadata(fees: FeeBreakdown) -> Dict[str, int]:
    return {
        "base_amount_cents": fees.base_cents,
        "service_fee_cents": fees.service_fee_cents,
        "platform_fee_cents": fees.platform_fee_cents,
        "stripe_fee_cents": fees.stripe_fee_cents,
    }


def _record_pending_payment(db: Session, intent_id: str, **fields) -> Optional[int]:
    """Insert the pending Payment row for an intent Stripe already created

    A replayed request (same idempotency key) gets the existing row back.
    Failures are logged and swallowed; the webhook will rebuild the row.
    """
    try:
        existing = db.query(Payment).filter(Payment.stripe_payment_intent_id == intent_id).first()
        if existing:
            return existing.id
        payment = Payment(stripe_payment_intent_id=intent_id, status="pending", **fields)
        db.add(payment)
        db.commit()
        db.refresh(payment)
        return payment.id
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            f"Failed to record pending payment for PaymentIntent {intent_id} "
            f"(type={fields.get('type')}, user={fields.get('user_id')}, amount={fields.get('amount_cents')}): {e}"
        )
        return None


def _check_amount(payment_type: str, submitted: int, expected: int) -> None:
    if submitted != expected:
        price_mismatch_counter.labels(type=payment_type).inc()
        logger.info(f"Price mismatch for {payment_type}: expected {expected}, got {submitted}")
        raise PriceMismatch()


def _check_currency(submitted: str, expected: str) -> str:
    if submitted.lower() != expected.lower():
        raise ValidationFailed(f"Unsupported currency {submitted}")
    return expected.lower()


def _create_buyer_intent(
    db: Session,
    buyer: User,
    *,
    payment_type: str,
    amount_cents: int,
    currency: str,
    metadata: Dict[str, Any],
    idempotency_key: str,
    payment_fields: Dict[str, Any],
    extra_intent_params: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    customer_id = ensure_customer(db, buyer)
    ephemeral_key = stripe_service.create_ephemeral_key(customer_id)

    params = {
        "amount": amount_cents,
        "currency": currency,
        "customer": customer_id,
        "automatic_payment_methods": {"enabled": True},
        "metadata": metadata,
    }
    params.update(extra_intent_params or {})
    intent = stripe_service.create_payment_intent(idempotency_key, **params)

    payment_id = _record_pending_payment(
        db, intent.id,
        user_id=buyer.id,
        amount_cents=amount_cents,
        currency=currency,
        type=payment_type,
        **payment_fields,
    )
    payment_intents_counter.labels(type=payment_type).inc()

    return {
        "payment_intent_id": intent.id,
        "client_secret": intent.client_secret,
        "customer_id": customer_id,
        "ephemeral_key": ephemeral_key,
        "payment_id": payment_id,
    }


# ============================================================================
# PRIMARY / VENDOR POS
# ============================================================================

def create_primary_purchase_intent(
    db: Session,
    user_id: int,
    event_id: int,
    quantity: int,
    amount_cents: int,
    currency: str = "usd",
    payment_type: str = "primary_purchase",
    client_metadata: Optional[Dict[str, Any]] = None,
    client_idempotency_key: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a PaymentIntent for ``quantity`` tickets at the event's price

    Raises:
        NotFound: Event or buyer missing
        ValidationFailed: Bad quantity, currency, or a free event
        PriceMismatch: ``amount_cents`` is not exactly fees(price * quantity).total
    """
    if quantity < 1 or quantity > MAX_QUANTITY:
        raise ValidationFailed(f"Quantity must be between 1 and {MAX_QUANTITY}")

    event = get_event(db, event_id)
    buyer = get_user(db, user_id)
    currency = _check_currency(currency, event.currency)

    fees = compute_fees(event.price_cents * quantity)
    if fees.total_cents <= 0:
        raise ValidationFailed("Free tickets do not require payment")
    _check_amount(payment_type, amount_cents, fees.total_cents)

    metadata = _build_metadata(
        client_metadata,
        event_id=event.id,
        user_id=buyer.id,
        type=payment_type,
        event_title=event.title,
        quantity=quantity,
        **_fee_metadata(fees),
    )
    result = _create_buyer_intent(
        db, buyer,
        payment_type=payment_type,
        amount_cents=amount_cents,
        currency=currency,
        metadata=metadata,
        idempotency_key=_intent_idempotency_key(payment_type, buyer.id, event.id, client_idempotency_key),
        payment_fields={
            "event_id": event.id,
            "platform_fee_cents": fees.service_fee_cents,
            "processor_fee_cents": fees.stripe_fee_cents,
            "extra_metadata": {"event_title": event.title, "quantity": quantity, "fee_breakdown": fees.to_dict()},
        },
        extra_intent_params={"setup_future_usage": "off_session"},
    )
    result["fee_breakdown"] = fees.to_dict()
    return result


# ============================================================================
# FAVOR OFFERS
# ============================================================================

def create_favor_purchase_intent(
    db: Session,
    user_id: int,
    offer_id: int,
    amount_cents: int,
    currency: str = "usd",
    client_metadata: Optional[Dict[str, Any]] = None,
    client_idempotency_key: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a PaymentIntent for a paid favor offer, priced from the offer itself"""
    buyer = get_user(db, user_id)
    offer = db.query(TicketOffer).filter(TicketOffer.id == offer_id).first()
    if not offer:
        raise NotFound("Offer not found")
    if offer.recipient_user_id != buyer.id and offer.recipient_email.lower() != buyer.email.lower():
        raise Forbidden("This offer is not addressed to you")
    if offer.status != "pending":
        raise Conflict(f"Offer is already {offer.status}")
    if as_utc(offer.expires_at) <= utcnow():
        raise ValidationFailed("This offer has expired")
    if offer.price_cents <= 0:
        raise ValidationFailed("Free offers are claimed without payment")

    event = get_event(db, offer.event_id)
    currency = _check_currency(currency, event.currency)
    fees = compute_fees(offer.price_cents)
    _check_amount("favor_ticket_purchase", amount_cents, fees.total_cents)

    metadata = _build_metadata(
        client_metadata,
        event_id=event.id,
        user_id=buyer.id,
        type="favor_ticket_purchase",
        event_title=event.title,
        quantity=1,
        offer_id=offer.id,
        **_fee_metadata(fees),
    )
    result = _create_buyer_intent(
        db, buyer,
        payment_type="favor_ticket_purchase",
        amount_cents=amount_cents,
        currency=currency,
        metadata=metadata,
        idempotency_key=_intent_idempotency_key("favor", buyer.id, offer.id, client_idempotency_key),
        payment_fields={
            "event_id": event.id,
            "offer_id": offer.id,
            "platform_fee_cents": fees.service_fee_cents,
            "processor_fee_cents": fees.stripe_fee_cents,
            "extra_metadata": {"event_title": event.title, "fee_breakdown": fees.to_dict()},
        },
        extra_intent_params={"setup_future_usage": "off_session"},
    )
    result["fee_breakdown"] = fees.to_dict()
    return result


def create_payment_intent(
    db: Session,
    user_id: int,
    event_id: int,
    amount_cents: int,
    currency: str,
    payment_type: str,
    quantity: int = 1,
    offer_id: Optional[int] = None,
    client_metadata: Optional[Dict[str, Any]] = None,
    client_idempotency_key: Optional[str] = None,
) -> Dict[str, Any]:
    """Entry point for ``POST /api/create-payment-intent``"""
    if payment_type in ("primary_purchase", "vendor_pos"):
        return create_primary_purchase_intent(
            db, user_id, event_id, quantity, amount_cents, currency,
            payment_type=payment_type,
            client_metadata=client_metadata,
            client_idempotency_key=client_idempotency_key,
        )
    if payment_type == "favor_ticket_purchase":
        if offer_id is None and client_metadata and client_metadata.get("offer_id"):
            try:
                offer_id = int(client_metadata["offer_id"])
            except (TypeError, ValueError):
                raise ValidationFailed("Invalid offer_id")
        if offer_id is None:
            raise ValidationFailed("offer_id is required for favor ticket purchases")
        return create_favor_purchase_intent(
            db, user_id, offer_id, amount_cents, currency,
            client_metadata=client_metadata,
            client_idempotency_key=client_idempotency_key,
        )
    if payment_type == "resale_purchase":
        raise ValidationFailed("Resale purchases use /api/create-resale-intent")
    raise ValidationFailed(f"Unsupported payment type {payment_type}")


# ============================================================================
# RESALE
# ============================================================================

def create_resale_purchase_intent(
    db: Session,
    user_id: int,
    listing_id: int,
    amount_cents: int,
    currency: str = "usd",
    client_idempotency_key: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a destination-charge PaymentIntent for a resale listing

    Funds settle in the seller's Connect account minus a flat 5% application
    fee, so the platform never holds the seller's proceeds.

    Raises:
        NotFound: Listing missing
        ListingUnavailable: Listing not active
        PriceMismatch: ``amount_cents`` differs from the listing price
        SelfPurchase: Buyer is the seller
        SellerNotPayable: Seller has no Connect account
    """
    buyer = get_user(db, user_id)
    listing = db.query(ResaleListing).filter(ResaleListing.id == listing_id).first()
    if not listing:
        raise NotFound("Listing not found")
    if listing.status != "active":
        raise ListingUnavailable()
    currency = _check_currency(currency, listing.currency)
    _check_amount("resale_purchase", amount_cents, listing.price_cents)
    if listing.seller_id == buyer.id:
        raise SelfPurchase()

    seller_account_id = get_seller_account_id(db, listing.seller_id)
    if not seller_account_id:
        raise SellerNotPayable()

    ticket = db.query(Ticket).filter(Ticket.id == listing.ticket_id).first()
    if not ticket or ticket.status != "valid":
        raise ListingUnavailable()

    split = compute_flat_fee(listing.price_cents)
    metadata = {
        "type": "resale_purchase",
        "resale_listing_id": listing.id,
        "ticket_id": ticket.id,
        "event_id": ticket.event_id,
        "user_id": buyer.id,
        "seller_id": listing.seller_id,
        "platform_fee_cents": split.platform_fee_cents,
        "seller_account_id": seller_account_id,
        "quantity": 1,
    }
    result = _create_buyer_intent(
        db, buyer,
        payment_type="resale_purchase",
        amount_cents=amount_cents,
        currency=currency,
        metadata=metadata,
        idempotency_key=_intent_idempotency_key("resale", buyer.id, listing.id, client_idempotency_key),
        payment_fields={
            "event_id": ticket.event_id,
            "resale_listing_id": listing.id,
            "platform_fee_cents": split.platform_fee_cents,
            "seller_amount_cents": split.seller_amount_cents,
            "extra_metadata": {"seller_id": listing.seller_id, "seller_account_id": seller_account_id},
        },
        extra_intent_params={
            "application_fee_amount": split.platform_fee_cents,
            "on_behalf_of": seller_account_id,
            "transfer_data": {"destination": seller_account_id},
        },
    )
    result["platform_fee_cents"] = split.platform_fee_cents
    result["seller_amount_cents"] = split.seller_amount_cents
    return result


# ============================================================================
# REFUNDS
# ============================================================================

def process_refund(db: Session, user_id: int, payment_id: int, reason: Optional[str] = None) -> Dict[str, Any]:
    """Refund a completed payment in full

    Allowed for the payer, the event organizer, and event admin staff. The
    ``charge.refunded`` webhook that follows is a no-op.
    """
    payment = db.query(Payment).filter(Payment.id == payment_id).with_for_update().first()
    if not payment:
        raise NotFound("Payment not found")
    if payment.status == "refunded":
        raise Conflict("Payment has already been refunded")

    allowed = payment.user_id == user_id
    if not allowed and payment.event_id is not None:
        event = get_event(db, payment.event_id)
        allowed = is_event_staff(db, event, user_id, roles=("admin",))
    if not allowed:
        raise Forbidden("You do not have permission to refund this payment")

    if payment.status != "completed" or not payment.stripe_payment_intent_id:
        raise ValidationFailed("Only completed payments can be refunded")
    if any(_passed_on(payment, ticket) for ticket in _linked_tickets(db, payment)):
        raise Conflict("Tickets from this payment have been resold or transferred")

    stripe_reason = reason if reason in REFUND_REASONS else "requested_by_customer"
    # Destination charges: pull the seller's share and our fee back with the refund
    is_resale = payment.type == "resale_purchase"
    refund = stripe_service.create_refund(
        payment.stripe_payment_intent_id,
        stripe_reason,
        {"payment_id": payment.id, "refunded_by": user_id},
        idempotency_key=f"refund-{payment.id}",
        reverse_transfer=is_resale,
        refund_application_fee=is_resale,
    )

    try:
        payment.status = "refunded"
        payment.extra_metadata = {
            **(payment.extra_metadata or {}),
            "refund_id": refund.id,
            "refund_reason": stripe_reason,
            "refunded_by": user_id,
            "refunded_at": utcnow().isoformat(),
        }
        refunded_tickets = refund_linked_tickets(db, payment)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Refund {refund.id} succeeded for payment {payment.id} but local update failed: {e}")
        refunded_tickets = 0

    logger.info(f"Payment {payment.id} refunded by user {user_id} (refund {refund.id}, {refunded_tickets} tickets)")
    return {
        "success": True,
        "refund_id": refund.id,
        "payment_id": payment.id,
        "amount_cents": payment.amount_cents,
        "status": getattr(refund, "status", None),
    }


def _linked_tickets(db: Session, payment: Payment):
    condition = Ticket.payment_id == payment.id
    if payment.ticket_id:
        condition = condition | (Ticket.id == payment.ticket_id)
    return db.query(Ticket).filter(condition).all()


def _passed_on(payment: Payment, ticket: Ticket) -> bool:
    """True once the ticket left the payer through a resale or transfer"""
    if ticket.owner_user_id != payment.user_id:
        return True
    # A resale purchase leaves its own ticket marked sold
    return ticket.listing_status == "sold" and payment.type != "resale_purchase"


def refund_linked_tickets(db: Session, payment: Payment) -> int:
    """Mark the payer's tickets issued by (or linked to) the payment as refunded

    Tickets that have since been resold or transferred belong to someone
    else and are left alone.
    """
    count = 0
    for ticket in _linked_tickets(db, payment):
        if _passed_on(payment, ticket):
            logger.warning(f"Ticket {ticket.id} from payment {payment.id} changed hands, not refunding it")
            continue
        if ticket.status != "refunded":
            ticket.status = "refunded"
            count += 1
    return count
