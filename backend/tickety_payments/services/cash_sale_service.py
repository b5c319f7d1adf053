"""In-person cash sales

The ticket is issued synchronously: the customer has already paid cash. The
platform fee is then charged off-session to the organizer's card on file, and
a failed fee charge is reported back as a warning rather than undoing the sale.
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tickety_payments.core.errors import Forbidden, NotFound, PriceMismatch, UpstreamFailure, ValidationFailed
from tickety_payments.core.metrics import cash_fee_charges_counter, price_mismatch_counter
from tickety_payments.models.cash_transaction import CashTransaction
from tickety_payments.models.event import Event, EventTicketType
from tickety_payments.services import stripe_service
from tickety_payments.services.fee_service import compute_flat_fee
from tickety_payments.services.ticket_service import (
    assign_transfer_token, get_event, is_event_staff, issue_ticket, ticket_to_dict
)

logger = logging.getLogger(__name__)

DELIVERY_METHODS = ("nfc", "email", "in_person")


def _lock_ticket_type(db: Session, event: Event, ticket_type_id: int, amount_cents: int) -> EventTicketType:
    ticket_type = (
        db.query(EventTicketType)
        .filter(EventTicketType.id == ticket_type_id, EventTicketType.event_id == event.id)
        .with_for_update()
        .first()
    )
    if not ticket_type:
        raise NotFound("Ticket type not found")
    if ticket_type.price_cents != amount_cents:
        price_mismatch_counter.labels(type="cash_sale").inc()
        logger.info(f"Cash sale price mismatch for ticket type {ticket_type.id}: expected {ticket_type.price_cents}, got {amount_cents}")
        raise PriceMismatch()
    if ticket_type.is_sold_out:
        raise ValidationFailed(f"{ticket_type.name} tickets are sold out")
    return ticket_type


def _charge_platform_fee(event: Event, ticket, seller_id: int, amount_cents: int, fee_cents: int) -> Dict[str, Any]:
    """Charge the organizer's saved card; never raises for provider failures"""
    if fee_cents <= 0:
        cash_fee_charges_counter.labels(outcome="free").inc()
        return {"fee_charged": True, "fee_payment_intent_id": None, "fee_charge_error": None}

    try:
        intent = stripe_service.create_payment_intent(
            f"cash-fee-{ticket.id}",
            amount=fee_cents,
            currency=event.currency,
            customer=event.organizer_stripe_customer_id,
            payment_method=event.organizer_payment_method_id,
            off_session=True,
            confirm=True,
            metadata={
                "type": "cash_sale_platform_fee",
                "event_id": event.id,
                "event_title": event.title,
                "ticket_id": ticket.id,
                "ticket_number": ticket.ticket_number,
                "sale_amount_cents": amount_cents,
                "seller_id": seller_id,
            },
        )
    except UpstreamFailure as e:
        cash_fee_charges_counter.labels(outcome="error").inc()
        logger.error(f"Platform fee charge failed for cash sale ticket {ticket.id} (event {event.id}): {e}")
        return {"fee_charged": False, "fee_payment_intent_id": None, "fee_charge_error": str(e)}

    if intent.status != "succeeded":
        cash_fee_charges_counter.labels(outcome="incomplete").inc()
        logger.warning(f"Platform fee PaymentIntent {intent.id} for ticket {ticket.id} is {intent.status}")
        return {
            "fee_charged": False,
            "fee_payment_intent_id": intent.id,
            "fee_charge_error": f"Payment status: {intent.status}",
        }

    cash_fee_charges_counter.labels(outcome="charged").inc()
    logger.info(f"Platform fee charged: {fee_cents} cents (PaymentIntent {intent.id}, ticket {ticket.id})")
    return {"fee_charged": True, "fee_payment_intent_id": intent.id, "fee_charge_error": None}


def process_cash_sale(
    db: Session,
    user_id: int,
    event_id: int,
    amount_cents: int,
    delivery_method: str,
    ticket_type_id: Optional[int] = None,
    customer_name: Optional[str] = None,
    customer_email: Optional[str] = None,
) -> Dict[str, Any]:
    """Sell a ticket for cash at the door

    Raises:
        NotFound: Event or ticket type missing
        Forbidden: Caller is neither organizer nor staff
        ValidationFailed: Cash sales disabled, no organizer card, sold out
        PriceMismatch: ``amount_cents`` differs from the server-side price
    """
    if delivery_method not in DELIVERY_METHODS:
        raise ValidationFailed("Invalid delivery_method. Must be: nfc, email, or in_person")
    if amount_cents < 0:
        raise ValidationFailed("amount_cents must not be negative")

    event = get_event(db, event_id)
    if not is_event_staff(db, event, user_id):
        raise Forbidden("You do not have permission to sell tickets for this event")
    if not event.cash_sales_enabled:
        raise ValidationFailed("Cash sales are not enabled for this event")
    if not event.organizer_stripe_customer_id or not event.organizer_payment_method_id:
        raise ValidationFailed("Organizer has not set up payment method for cash sales")

    ticket_type = None
    if ticket_type_id is not None:
        ticket_type = _lock_ticket_type(db, event, ticket_type_id, amount_cents)
    elif amount_cents != event.price_cents:
        price_mismatch_counter.labels(type="cash_sale").inc()
        raise PriceMismatch()

    ticket = issue_ticket(
        db,
        event_id=event.id,
        source="cash_sale",
        owner_email=customer_email,
        owner_name=customer_name,
        price_paid_cents=amount_cents,
        currency=event.currency,
        ticket_type_id=ticket_type.id if ticket_type else None,
        payment_method="cash",
        delivery_method=delivery_method,
        sold_by=user_id,
    )
    transfer_token = expires_at = None
    if delivery_method == "nfc":
        transfer_token, expires_at = assign_transfer_token(ticket)
    if ticket_type:
        ticket_type.quantity_sold += 1

    fee = compute_flat_fee(amount_cents)
    cash_tx = CashTransaction(
        event_id=event.id,
        ticket_id=ticket.id,
        seller_id=user_id,
        amount_cents=amount_cents,
        platform_fee_cents=fee.platform_fee_cents,
        currency=event.currency,
        customer_name=customer_name,
        customer_email=customer_email,
        delivery_method=delivery_method,
        status="pending",
    )
    db.add(cash_tx)
    db.commit()
    db.refresh(ticket)
    logger.info(f"Cash sale: ticket {ticket.ticket_number} for event {event.id} sold by user {user_id} ({amount_cents} cents)")
    ticket_data = ticket_to_dict(ticket)
    cash_tx_id = cash_tx.id

    outcome = _charge_platform_fee(event, ticket, user_id, amount_cents, fee.platform_fee_cents)
    # Ticket and fee are final at this point, so a bookkeeping error must not fail the sale
    try:
        cash_tx.fee_charged = outcome["fee_charged"]
        cash_tx.fee_payment_intent_id = outcome["fee_payment_intent_id"]
        cash_tx.fee_charge_error = outcome["fee_charge_error"]
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            f"Fee outcome for cash transaction {cash_tx_id} (ticket {ticket_data['id']}, "
            f"PaymentIntent {outcome['fee_payment_intent_id']}) was not saved: {e}"
        )

    result = {
        "success": True,
        "ticket": ticket_data,
        "cash_transaction_id": cash_tx_id,
        "platform_fee_cents": fee.platform_fee_cents,
        "fee_charged": outcome["fee_charged"],
        "transfer_token": transfer_token,
        "transfer_token_expires_at": expires_at,
    }
    if not outcome["fee_charged"]:
        result["warning"] = "Ticket created but platform fee charge failed. Please update your payment method."
        result["fee_error"] = outcome["fee_charge_error"]
    return result
