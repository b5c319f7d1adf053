"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from tickety_payments.models.base import Base
from tickety_payments.models.user import User
from tickety_payments.models.event import Event, EventStaff, EventTicketType
from tickety_payments.models.ticket import Ticket
from tickety_payments.models.ticket_offer import TicketOffer
from tickety_payments.models.resale_listing import ResaleListing
from tickety_payments.models.payment import Payment
from tickety_payments.models.subscription import Subscription
from tickety_payments.models.seller_balance import SellerBalance
from tickety_payments.models.cash_transaction import CashTransaction
from tickety_payments.models.stripe_event import StripeEvent

# Export all for convenience
__all__ = [
    "Base", "User", "Event", "EventStaff", "EventTicketType", "Ticket",
    "TicketOffer", "ResaleListing", "Payment", "Subscription",
    "SellerBalance", "CashTransaction", "StripeEvent"
]
