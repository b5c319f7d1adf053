"""Ticket API routes: cash sales, claims, offers and resale listings"""
import logging
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from tickety_payments.core.security import require_auth
from tickety_payments.db.session import get_db
from tickety_payments.schemas.tickets import (
    ClaimFavorOfferRequest, ClaimTicketTransferRequest, CreateListingRequest,
    ProcessCashSaleRequest, UpdateListingRequest
)
from tickety_payments.services.cash_sale_service import process_cash_sale
from tickety_payments.services.listing_service import cancel_listing, create_listing, update_listing_price
from tickety_payments.services.ticket_service import (
    cancel_offer, claim_favor_offer, claim_ticket_transfer, decline_offer, ticket_to_dict
)

router = APIRouter(prefix="/api", tags=["tickets"])
logger = logging.getLogger(__name__)


@router.post("/process-cash-sale")
def process_cash_sale_route(
    request_data: ProcessCashSaleRequest,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Sell a ticket for cash at the door"""
    return process_cash_sale(
        db,
        user_id,
        event_id=request_data.event_id,
        amount_cents=request_data.amount_cents,
        delivery_method=request_data.delivery_method,
        ticket_type_id=request_data.ticket_type_id,
        customer_name=request_data.customer_name,
        customer_email=request_data.customer_email,
    )


@router.post("/claim-ticket-transfer")
def claim_ticket_transfer_route(
    request_data: ClaimTicketTransferRequest,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Take ownership of a ticket handed over by NFC"""
    ticket = claim_ticket_transfer(db, user_id, request_data.transfer_token)
    return {"success": True, "ticket": ticket_to_dict(ticket)}


# ============================================================================
# FAVOR OFFERS
# ============================================================================

@router.post("/claim-favor-offer")
def claim_favor_offer_route(
    request_data: ClaimFavorOfferRequest,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Accept a free favor offer"""
    ticket, ticket_mode = claim_favor_offer(db, user_id, request_data.offer_id, request_data.skip_minting_fee)
    return {"success": True, "ticket": ticket_to_dict(ticket), "ticket_mode": ticket_mode}


@router.post("/ticket-offers/{offer_id}/decline")
def decline_offer_route(offer_id: int, user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    offer = decline_offer(db, user_id, offer_id)
    return {"success": True, "offer_id": offer.id, "status": offer.status}


@router.post("/ticket-offers/{offer_id}/cancel")
def cancel_offer_route(offer_id: int, user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    offer = cancel_offer(db, user_id, offer_id)
    return {"success": True, "offer_id": offer.id, "status": offer.status}


# ============================================================================
# RESALE LISTINGS
# ============================================================================

@router.post("/resale-listings")
def create_listing_route(
    request_data: CreateListingRequest,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """List a ticket for resale"""
    return {"listing": create_listing(db, user_id, request_data.ticket_id, request_data.price_cents)}


@router.patch("/resale-listings/{listing_id}")
def update_listing_route(
    listing_id: int,
    request_data: UpdateListingRequest,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    return {"listing": update_listing_price(db, user_id, listing_id, request_data.price_cents)}


@router.post("/resale-listings/{listing_id}/cancel")
def cancel_listing_route(listing_id: int, user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    return {"listing": cancel_listing(db, user_id, listing_id)}
