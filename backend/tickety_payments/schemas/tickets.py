"""Pydantic schemas for tickets, offers, listings and cash sales"""
from pydantic import BaseModel, EmailStr, Field, StrictInt
from typing import Literal, Optional


class ProcessCashSaleRequest(BaseModel):
    event_id: int
    ticket_type_id: Optional[int] = None
    amount_cents: StrictInt = Field(ge=0)
    customer_name: Optional[str] = Field(default=None, max_length=255)
    customer_email: Optional[EmailStr] = None
    delivery_method: Literal["nfc", "email", "in_person"]


class ClaimFavorOfferRequest(BaseModel):
    offer_id: int
    skip_minting_fee: bool = False


class ClaimTicketTransferRequest(BaseModel):
    transfer_token: str = Field(min_length=1, max_length=128)


class CreateListingRequest(BaseModel):
    ticket_id: int
    price_cents: StrictInt = Field(gt=0)


class UpdateListingRequest(BaseModel):
    price_cents: StrictInt = Field(gt=0)
