"""Pydantic schemas for payment intents and refunds

Amounts are integer cents everywhere; a float in a money field is rejected.
"""
from pydantic import BaseModel, Field, StrictInt
from typing import Any, Dict, Literal, Optional


class CreatePaymentIntentRequest(BaseModel):
    event_id: int
    amount_cents: StrictInt = Field(gt=0)
    currency: str = Field(default="usd", min_length=3, max_length=3)
    type: Literal["primary_purchase", "vendor_pos", "favor_ticket_purchase", "resale_purchase"] = "primary_purchase"
    quantity: int = Field(default=1, ge=1)
    offer_id: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None


class CreateResaleIntentRequest(BaseModel):
    resale_listing_id: int
    amount_cents: StrictInt = Field(gt=0)
    currency: str = Field(default="usd", min_length=3, max_length=3)


class ProcessRefundRequest(BaseModel):
    payment_id: int
    reason: Optional[str] = None
