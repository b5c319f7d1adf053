"""Stripe webhook reconciler

Stripe delivers events at least once and in no particular order across event
types. Every event id is recorded in the ``stripe_events`` ledger before
dispatch; an event already marked processed is acknowledged without touching
state. Handlers re-derive the target state from the event payload and lock
the rows they change, so a replay or a concurrent redelivery is a no-op.
"""
import json
import logging
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tickety_payments.core.config import settings
from tickety_payments.core.metrics import webhook_events_counter
from tickety_payments.models.payment import PAYMENT_TYPES, Payment
from tickety_payments.models.resale_listing import ResaleListing
from tickety_payments.models.stripe_event import StripeEvent
from tickety_payments.models.ticket import Ticket
from tickety_payments.models.ticket_offer import TicketOffer
from tickety_payments.models.user import User
from tickety_payments.schemas.webhooks import (
    AccountObject, ChargeObject, PaymentIntentObject, SubscriptionObject, WebhookEvent, parse_event
)
from tickety_payments.services import seller_service, stripe_service, subscription_service
from tickety_payments.services.payment_service import refund_linked_tickets
from tickety_payments.services.ticket_service import issue_ticket
from tickety_payments.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


class WebhookHandlerError(Exception):
    """A verified event could not be applied. Stripe should redeliver it."""

    def __init__(self, event_id: str, event_type: str, cause: Exception):
        self.event_id = event_id
        self.event_type = event_type
        super().__init__(f"Failed to process {event_type} event {event_id}: {cause}")


# ============================================================================
# EVENT LEDGER
# ============================================================================

def log_stripe_event(
    event_id: str,
    event_type: str,
    payload: Dict[str, Any],
    db: Session,
    source: str = "platform",
) -> StripeEvent:
    """Record a webhook event in the ledger, returning the existing row on redelivery"""
    ledger = db.query(StripeEvent).filter(StripeEvent.event_id == event_id).first()
    if ledger:
        return ledger

    ledger = StripeEvent(
        event_id=event_id,
        event_type=event_type,
        source=source,
        processed=False,
        attempts=0,
        payload=payload,
    )
    db.add(ledger)
    try:
        db.commit()
    except IntegrityError:
        # A concurrent delivery of the same event got there first
        db.rollback()
        return db.query(StripeEvent).filter(StripeEvent.event_id == event_id).one()
    db.refresh(ledger)
    return ledger


def mark_stripe_event_processed(event_id: str, db: Session) -> None:
    ledger = db.query(StripeEvent).filter(StripeEvent.event_id == event_id).first()
    if ledger:
        ledger.processed = True
        ledger.attempts = (ledger.attempts or 0) + 1
        ledger.error_message = None
        ledger.processed_at = utcnow()
        db.commit()


def record_stripe_event_failure(event_id: str, db: Session, error_message: str) -> None:
    """Keep the event unprocessed so the redelivery runs the handler again"""
    ledger = db.query(StripeEvent).filter(StripeEvent.event_id == event_id).first()
    if ledger:
        ledger.attempts = (ledger.attempts or 0) + 1
        ledger.error_message = error_message[:2000]
        db.commit()


# ============================================================================
# PAYMENT HELPERS
# ============================================================================

def _lock_payment_by_intent(db: Session, intent_id: str) -> Optional[Payment]:
    return (
        db.query(Payment)
        .filter(Payment.stripe_payment_intent_id == intent_id)
        .with_for_update()
        .first()
    )


def _metadata_int(metadata: Dict[str, str], key: str) -> Optional[int]:
    value = metadata.get(key)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-integer metadata {key}={value!r}")
        return None


def _rebuild_payment(db: Session, intent: PaymentIntentObject) -> Optional[Payment]:
    """Recreate the pending Payment row from intent metadata

    The row written at intent creation is best-effort, so the webhook may be
    the first time we see the payment locally.
    """
    metadata = intent.metadata
    payment_type = metadata.get("type")
    user_id = _metadata_int(metadata, "user_id")
    if payment_type not in PAYMENT_TYPES or user_id is None:
        logger.warning(f"PaymentIntent {intent.id} has no usable metadata (type={payment_type}, user_id={user_id})")
        return None

    platform_fee = _metadata_int(metadata, "platform_fee_cents")
    if payment_type != "resale_purchase":
        platform_fee = _metadata_int(metadata, "service_fee_cents") or platform_fee
    payment = Payment(
        stripe_payment_intent_id=intent.id,
        user_id=user_id,
        event_id=_metadata_int(metadata, "event_id"),
        resale_listing_id=_metadata_int(metadata, "resale_listing_id"),
        offer_id=_metadata_int(metadata, "offer_id"),
        amount_cents=intent.amount,
        currency=intent.currency.lower(),
        platform_fee_cents=platform_fee or 0,
        processor_fee_cents=_metadata_int(metadata, "stripe_fee_cents") or 0,
        seller_amount_cents=intent.amount - (platform_fee or 0) if payment_type == "resale_purchase" else None,
        status="pending",
        type=payment_type,
        extra_metadata={"rebuilt_from_webhook": True, "quantity": metadata.get("quantity")},
    )
    db.add(payment)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        return _lock_payment_by_intent(db, intent.id)
    logger.warning(f"Rebuilt missing payment {payment.id} for PaymentIntent {intent.id} (type={payment_type})")
    return payment


def _complete_primary(db: Session, payment: Payment, intent: PaymentIntentObject) -> None:
    """Issue ``quantity`` tickets to the buyer and link the first to the payment"""
    if payment.ticket_id or db.query(Ticket.id).filter(Ticket.payment_id == payment.id).first():
        logger.info(f"Tickets already issued for payment {payment.id}, skipping")
        return

    buyer = db.query(User).filter(User.id == payment.user_id).first()
    event_id = payment.event_id or _metadata_int(intent.metadata, "event_id")
    if buyer is None or event_id is None:
        raise ValueError(f"Payment {payment.id} has no buyer or event to issue tickets for")

    quantity = _metadata_int(intent.metadata, "quantity") or 1
    unit_price, remainder = divmod(payment.amount_cents, quantity)
    first_ticket = None
    for index in range(quantity):
        ticket = issue_ticket(
            db,
            event_id=event_id,
            source=payment.type,
            owner_email=buyer.email,
            owner_user_id=buyer.id,
            owner_name=buyer.display_name,
            # The first ticket absorbs the rounding remainder so prices sum to the charge
            price_paid_cents=unit_price + (remainder if index == 0 else 0),
            currency=payment.currency,
            payment_id=payment.id,
        )
        first_ticket = first_ticket or ticket
    payment.ticket_id = first_ticket.id
    logger.info(f"Issued {quantity} tickets for payment {payment.id} (PaymentIntent {intent.id})")


def _complete_resale(db: Session, payment: Payment, intent: PaymentIntentObject) -> None:
    """Mark the listing sold and move the ticket to the buyer"""
    listing_id = payment.resale_listing_id or _metadata_int(intent.metadata, "resale_listing_id")
    listing = db.query(ResaleListing).filter(ResaleListing.id == listing_id).with_for_update().first()
    if listing is None:
        raise ValueError(f"Resale listing {listing_id} for payment {payment.id} not found")

    if listing.status == "sold":
        if listing.buyer_id == payment.user_id:
            payment.ticket_id = payment.ticket_id or listing.ticket_id
            logger.info(f"Listing {listing.id} already sold to user {payment.user_id}, skipping")
        else:
            # Needs a manual refund; the payment stays completed so it shows up
            logger.error(
                f"Listing {listing.id} already sold to user {listing.buyer_id}; "
                f"payment {payment.id} (PaymentIntent {intent.id}) from user {payment.user_id} needs a refund"
            )
        return
    if listing.status == "cancelled":
        logger.warning(f"Listing {listing.id} was cancelled after PaymentIntent {intent.id} was created; completing sale")

    buyer = db.query(User).filter(User.id == payment.user_id).first()
    ticket = db.query(Ticket).filter(Ticket.id == listing.ticket_id).with_for_update().first()
    if buyer is None or ticket is None:
        raise ValueError(f"Buyer or ticket missing for resale payment {payment.id}")

    listing.status = "sold"
    listing.buyer_id = buyer.id
    listing.sold_at = utcnow()
    ticket.owner_email = buyer.email
    ticket.owner_user_id = buyer.id
    ticket.owner_name = buyer.display_name
    ticket.price_paid_cents = payment.amount_cents
    ticket.listing_status = "sold"
    ticket.transfer_token = None
    ticket.transfer_token_expires_at = None
    payment.ticket_id = ticket.id
    logger.info(
        f"Resale listing {listing.id} sold: ticket {ticket.ticket_number} moved from user "
        f"{listing.seller_id} to {buyer.id} (payment {payment.id})"
    )


def _complete_favor(db: Session, payment: Payment, intent: PaymentIntentObject) -> None:
    """Issue the offer's ticket and accept the offer"""
    offer_id = payment.offer_id or _metadata_int(intent.metadata, "offer_id")
    offer = db.query(TicketOffer).filter(TicketOffer.id == offer_id).with_for_update().first()
    if offer is None:
        raise ValueError(f"Offer {offer_id} for payment {payment.id} not found")

    if offer.status == "accepted" and offer.ticket_id:
        payment.ticket_id = payment.ticket_id or offer.ticket_id
        logger.info(f"Offer {offer.id} already accepted, skipping")
        return
    if offer.status != "pending":
        logger.warning(f"Offer {offer.id} is {offer.status} but PaymentIntent {intent.id} succeeded; issuing ticket")

    buyer = db.query(User).filter(User.id == payment.user_id).first()
    if buyer is None:
        raise ValueError(f"Buyer {payment.user_id} for payment {payment.id} not found")

    ticket = issue_ticket(
        db,
        event_id=offer.event_id,
        source=payment.type,
        owner_email=buyer.email,
        owner_user_id=buyer.id,
        owner_name=buyer.display_name,
        price_paid_cents=payment.amount_cents,
        currency=payment.currency,
        ticket_mode=offer.ticket_mode,
        payment_id=payment.id,
        offer_id=offer.id,
        sold_by=offer.created_by,
    )
    offer.status = "accepted"
    offer.ticket_id = ticket.id
    offer.recipient_user_id = buyer.id
    offer.responded_at = utcnow()
    payment.ticket_id = ticket.id


COMPLETION_HANDLERS: Dict[str, Callable[[Session, Payment, PaymentIntentObject], None]] = {
    "primary_purchase": _complete_primary,
    "vendor_pos": _complete_primary,
    "resale_purchase": _complete_resale,
    "favor_ticket_purchase": _complete_favor,
}


# ============================================================================
# PAYMENT EVENT HANDLERS
# ============================================================================

def handle_payment_succeeded(intent: PaymentIntentObject, event: WebhookEvent, db: Session) -> None:
    payment = _lock_payment_by_intent(db, intent.id) or _rebuild_payment(db, intent)
    if payment is None:
        logger.warning(f"No payment for succeeded PaymentIntent {intent.id}, nothing to do")
        return

    if payment.status == "completed":
        logger.info(f"Payment {payment.id} already completed, skipping")
        return
    if not payment.can_transition_to("completed"):
        # Refunded before the success event arrived
        logger.info(f"Payment {payment.id} is {payment.status}, ignoring success for PaymentIntent {intent.id}")
        db.commit()
        return

    previous = payment.status
    payment.status = "completed"
    if intent.latest_charge and not payment.stripe_charge_id:
        payment.stripe_charge_id = intent.latest_charge
    COMPLETION_HANDLERS[payment.type](db, payment, intent)
    db.commit()
    logger.info(f"Payment {payment.id} {previous} -> completed (PaymentIntent {intent.id}, type={payment.type})")


def handle_payment_failed(intent: PaymentIntentObject, event: WebhookEvent, db: Session) -> None:
    payment = _lock_payment_by_intent(db, intent.id) or _rebuild_payment(db, intent)
    if payment is None:
        logger.warning(f"No payment for failed PaymentIntent {intent.id}, nothing to do")
        return
    if not payment.can_transition_to("failed"):
        logger.info(f"Payment {payment.id} is {payment.status}, ignoring failure for PaymentIntent {intent.id}")
        db.commit()
        return

    payment.status = "failed"
    if intent.last_payment_error:
        payment.extra_metadata = {
            **(payment.extra_metadata or {}),
            "failure_code": intent.last_payment_error.code,
            "failure_message": intent.last_payment_error.message,
        }
    db.commit()
    logger.info(f"Payment {payment.id} pending -> failed (PaymentIntent {intent.id})")


def handle_charge_refunded(charge: ChargeObject, event: WebhookEvent, db: Session) -> None:
    payment = (
        db.query(Payment)
        .filter(Payment.stripe_charge_id == charge.id)
        .with_for_update()
        .first()
    )
    if payment is None and charge.payment_intent:
        payment = _lock_payment_by_intent(db, charge.payment_intent)
    if payment is None:
        logger.warning(f"No payment for refunded charge {charge.id} (PaymentIntent {charge.payment_intent})")
        return

    if not charge.refunded:
        # Partial refund; tickets stay valid
        payment.extra_metadata = {**(payment.extra_metadata or {}), "amount_refunded_cents": charge.amount_refunded}
        db.commit()
        logger.info(f"Charge {charge.id} partially refunded ({charge.amount_refunded} cents) for payment {payment.id}")
        return
    if payment.status == "refunded":
        logger.info(f"Payment {payment.id} already refunded, skipping")
        return
    if not payment.can_transition_to("refunded"):
        logger.warning(f"Payment {payment.id} is {payment.status}, cannot apply refund for charge {charge.id}")
        return

    previous = payment.status
    payment.status = "refunded"
    payment.stripe_charge_id = payment.stripe_charge_id or charge.id
    payment.extra_metadata = {
        **(payment.extra_metadata or {}),
        "amount_refunded_cents": charge.amount_refunded,
        "refunded_at": utcnow().isoformat(),
    }
    count = refund_linked_tickets(db, payment)
    db.commit()
    logger.info(f"Payment {payment.id} {previous} -> refunded (charge {charge.id}, {count} tickets refunded)")


def handle_subscription_event(subscription: SubscriptionObject, event: WebhookEvent, db: Session) -> None:
    if event.type == "customer.subscription.deleted":
        subscription_service.handle_subscription_deleted(subscription, event.created, db)
    else:
        subscription_service.handle_subscription_upsert(
            subscription, event.created, db, is_created=event.type == "customer.subscription.created"
        )


PLATFORM_HANDLERS = {
    "payment_intent.succeeded": handle_payment_succeeded,
    "payment_intent.payment_failed": handle_payment_failed,
    "charge.refunded": handle_charge_refunded,
    "customer.subscription.created": handle_subscription_event,
    "customer.subscription.updated": handle_subscription_event,
    "customer.subscription.deleted": handle_subscription_event,
}


# ============================================================================
# CONNECT EVENT HANDLERS
# ============================================================================

def handle_account_updated(account: AccountObject, event: WebhookEvent, db: Session) -> None:
    seller_service.handle_account_updated(account, db)


def handle_account_deauthorized(application: Any, event: WebhookEvent, db: Session) -> None:
    if not event.account:
        logger.warning(f"Deauthorization event {event.id} has no account, skipping")
        return
    seller_service.handle_account_deauthorized(event.account, db)


CONNECT_HANDLERS = {
    "account.updated": handle_account_updated,
    "account.application.deauthorized": handle_account_deauthorized,
}


# ============================================================================
# ENTRY POINTS
# ============================================================================

def _verify(payload: bytes, sig_header: str, secret: str) -> Tuple[WebhookEvent, Dict[str, Any]]:
    """Check the signature, then validate the envelope

    Raises:
        ValueError: Secret not configured or payload malformed
        stripe.error.SignatureVerificationError: Bad signature
    """
    if not secret:
        logger.error("Webhook secret not configured")
        raise ValueError("Webhook secret not configured")
    stripe_service.construct_event(payload, sig_header, secret)
    try:
        raw = json.loads(payload)
    except (TypeError, json.JSONDecodeError) as e:
        raise ValueError("Invalid payload") from e
    return parse_event(raw), raw


def _dispatch(event: WebhookEvent, raw_payload: Dict[str, Any], handlers: Dict[str, Callable], db: Session, source: str) -> Dict[str, Any]:
    ledger = log_stripe_event(event.id, event.type, raw_payload, db, source=source)
    if ledger.processed:
        logger.info(f"Webhook event {event.id} already processed")
        webhook_events_counter.labels(event_type=event.type, status="already_processed").inc()
        return {"status": "already_processed"}

    handler = handlers.get(event.type)
    if handler is None:
        mark_stripe_event_processed(event.id, db)
        webhook_events_counter.labels(event_type=event.type, status="ignored").inc()
        return {"status": "ignored"}

    try:
        handler(event.parse_object(), event, db)
    except Exception as e:
        db.rollback()
        logger.error(f"Error processing webhook {event.id} ({event.type}): {e}", exc_info=True)
        record_stripe_event_failure(event.id, db, str(e))
        webhook_events_counter.labels(event_type=event.type, status="error").inc()
        raise WebhookHandlerError(event.id, event.type, e) from e

    mark_stripe_event_processed(event.id, db)
    webhook_events_counter.labels(event_type=event.type, status="success").inc()
    logger.info(f"Successfully processed webhook event {event.id} of type {event.type}")
    return {"status": "success"}


def process_stripe_webhook(payload: bytes, sig_header: str, db: Session) -> Dict[str, Any]:
    """Verify and apply a platform webhook event

    Raises:
        ValueError: Invalid payload or missing secret
        stripe.error.SignatureVerificationError: Bad signature
        WebhookHandlerError: The handler failed; the event stays unprocessed
    """
    event, raw = _verify(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
    return _dispatch(event, raw, PLATFORM_HANDLERS, db, source="platform")


def process_connect_webhook(payload: bytes, sig_header: str, db: Session) -> Dict[str, Any]:
    """Verify and apply a Connect webhook event (events from seller accounts)"""
    event, raw = _verify(payload, sig_header, settings.STRIPE_CONNECT_WEBHOOK_SECRET)
    return _dispatch(event, raw, CONNECT_HANDLERS, db, source="connect")
