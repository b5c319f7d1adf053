"""Payment model"""
from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, JSON, String
from datetime import datetime, timezone
from tickety_payments.models.base import Base


PAYMENT_TYPES = ("primary_purchase", "resale_purchase", "vendor_pos", "favor_ticket_purchase")

# status -> statuses it may move to. Anything else is a no-op for the reconciler.
PAYMENT_TRANSITIONS = {
    "pending": ("completed", "failed", "refunded"),
    "failed": ("completed",),  # Stripe retries a failed intent with a new payment method
    "completed": ("refunded",),
    "refunded": (),
}


class Payment(Base):
    """One money movement attempt"""
    __tablename__ = "payments"
    
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)  # Payer
    event_id = Column(Integer, ForeignKey("events.id"), nullable=True, index=True)
    resale_listing_id = Column(Integer, ForeignKey("resale_listings.id"), nullable=True, index=True)
    offer_id = Column(Integer, ForeignKey("ticket_offers.id"), nullable=True, index=True)
    # First ticket issued for this payment
    ticket_id = Column(Integer, ForeignKey("tickets.id", use_alter=True, name="fk_payments_ticket_id"), nullable=True)
    
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), default="usd", nullable=False)
    platform_fee_cents = Column(Integer, default=0, nullable=False)  # Everything the platform adds or keeps
    processor_fee_cents = Column(Integer, default=0, nullable=False)
    seller_amount_cents = Column(Integer, nullable=True)  # Resale only
    
    status = Column(String(20), default="pending", nullable=False)  # pending, completed, failed, refunded
    type = Column(String(30), nullable=False)
    
    stripe_payment_intent_id = Column(String(255), unique=True, nullable=True, index=True)
    stripe_charge_id = Column(String(255), unique=True, nullable=True, index=True)
    extra_metadata = Column("metadata", JSON, nullable=True)
    
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
    
    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_payments_amount_positive"),
        CheckConstraint("status IN ('pending', 'completed', 'failed', 'refunded')", name="ck_payments_status"),
        CheckConstraint(
            "type IN ('primary_purchase', 'resale_purchase', 'vendor_pos', 'favor_ticket_purchase')",
            name="ck_payments_type"
        ),
    )
    
    def can_transition_to(self, status: str) -> bool:
        return status in PAYMENT_TRANSITIONS.get(self.status, ())
    
    def __repr__(self):
        return f"<Payment(id={self.id}, intent={self.stripe_payment_intent_id}, status={self.status})>"
