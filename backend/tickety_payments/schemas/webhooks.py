"""Typed views of the Stripe webhook payloads we act on

Each handled event type maps to one model for its ``data.object``. Payloads
are validated here, after the signature check, so handlers never touch raw
dictionaries.
"""
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from typing import Dict, List, Optional, Tuple, Type


class StripeObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    metadata: Dict[str, str] = Field(default_factory=dict)


class PaymentErrorRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: Optional[str] = None
    message: Optional[str] = None


class PaymentIntentObject(StripeObject):
    amount: int
    currency: str = "usd"
    status: Optional[str] = None
    customer: Optional[str] = None
    latest_charge: Optional[str] = None
    last_payment_error: Optional[PaymentErrorRef] = None


class ChargeObject(StripeObject):
    payment_intent: Optional[str] = None
    amount: int = 0
    amount_refunded: int = 0
    refunded: bool = False


class PriceRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str


class SubscriptionItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    price: Optional[PriceRef] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None


class SubscriptionItems(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: List[SubscriptionItem] = Field(default_factory=list)


class SubscriptionObject(StripeObject):
    customer: Optional[str] = None
    status: str
    items: SubscriptionItems = Field(default_factory=SubscriptionItems)
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False

    @property
    def price_id(self) -> Optional[str]:
        for item in self.items.data:
            if item.price:
                return item.price.id
        return None

    @property
    def period_bounds(self) -> Tuple[Optional[int], Optional[int]]:
        # Newer API versions moved the period onto the items
        start, end = self.current_period_start, self.current_period_end
        if start is None and self.items.data:
            start = self.items.data[0].current_period_start
        if end is None and self.items.data:
            end = self.items.data[0].current_period_end
        return start, end


class AccountObject(StripeObject):
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False


class ApplicationObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None


EVENT_OBJECT_TYPES: Dict[str, Type[BaseModel]] = {
    "payment_intent.succeeded": PaymentIntentObject,
    "payment_intent.payment_failed": PaymentIntentObject,
    "charge.refunded": ChargeObject,
    "customer.subscription.created": SubscriptionObject,
    "customer.subscription.updated": SubscriptionObject,
    "customer.subscription.deleted": SubscriptionObject,
    "account.updated": AccountObject,
    "account.application.deauthorized": ApplicationObject,
}


class EventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: dict


class WebhookEvent(BaseModel):
    """Envelope common to every Stripe event"""
    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    created: int = 0
    account: Optional[str] = None  # Set on Connect events
    livemode: bool = False
    data: EventData

    def parse_object(self) -> Optional[BaseModel]:
        """Validate ``data.object`` against the model for this event type

        Returns None for event types we do not handle.

        Raises:
            ValueError: The object does not match the expected shape
        """
        model = EVENT_OBJECT_TYPES.get(self.type)
        if model is None:
            return None
        try:
            return model.model_validate(self.data.object)
        except ValidationError as e:
            raise ValueError(f"Malformed {self.type} payload: {e.error_count()} validation errors") from e


def parse_event(raw: dict) -> WebhookEvent:
    """Validate the event envelope

    Raises:
        ValueError: The payload is not a Stripe event
    """
    try:
        return WebhookEvent.model_validate(raw)
    except ValidationError as e:
        raise ValueError(f"Malformed webhook event: {e.error_count()} validation errors") from e
