"""Pydantic schemas for seller accounts"""
from pydantic import BaseModel, Field, StrictInt
from typing import Optional


class InitiateWithdrawalRequest(BaseModel):
    amount_cents: Optional[StrictInt] = Field(default=None, gt=0)  # Defaults to the full available balance
