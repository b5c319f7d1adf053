"""Pydantic schemas for subscriptions"""
from pydantic import BaseModel
from typing import Literal, Optional


class DevOverrideSubscriptionRequest(BaseModel):
    tier: Literal["base", "pro", "enterprise"]
    status: Optional[Literal["active", "past_due", "trialing", "canceled", "paused"]] = None
    cancel_at_period_end: bool = False
