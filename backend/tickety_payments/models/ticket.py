"""Ticket model"""
from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from tickety_payments.models.base import Base


class Ticket(Base):
    """A saleable, transferable admission unit"""
    __tablename__ = "tickets"
    
    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    ticket_type_id = Column(Integer, ForeignKey("event_ticket_types.id"), nullable=True)
    ticket_number = Column(String(32), unique=True, nullable=False, index=True)
    
    # Ownership
    owner_email = Column(String(255), nullable=True, index=True)
    owner_user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    owner_name = Column(String(255), nullable=True)
    
    price_paid_cents = Column(Integer, default=0, nullable=False)
    currency = Column(String(3), default="usd", nullable=False)
    status = Column(String(20), default="valid", nullable=False)  # valid, used, cancelled, refunded
    ticket_mode = Column(String(20), default="standard", nullable=False)  # standard, private, public
    listing_status = Column(String(20), default="none", nullable=False)  # none, listed, sold, cancelled
    
    # Provenance
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True, index=True)
    offer_id = Column(Integer, ForeignKey("ticket_offers.id"), nullable=True, index=True)
    payment_method = Column(String(20), default="stripe", nullable=False)  # stripe, cash, comp
    delivery_method = Column(String(20), nullable=True)  # nfc, email, in_person
    sold_by = Column(Integer, ForeignKey("users.id"), nullable=True)  # Staff member for cash sales
    
    # NFC hand-off
    transfer_token = Column(String(64), unique=True, nullable=True, index=True)
    transfer_token_expires_at = Column(DateTime(timezone=True), nullable=True)
    consumed_transfer_token = Column(String(64), unique=True, nullable=True, index=True)
    
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
    
    event = relationship("Event")
    
    __table_args__ = (
        CheckConstraint("status IN ('valid', 'used', 'cancelled', 'refunded')", name="ck_tickets_status"),
        CheckConstraint("ticket_mode IN ('standard', 'private', 'public')", name="ck_tickets_ticket_mode"),
        CheckConstraint("listing_status IN ('none', 'listed', 'sold', 'cancelled')", name="ck_tickets_listing_status"),
        CheckConstraint(
            "transfer_token IS NULL OR transfer_token_expires_at IS NOT NULL",
            name="ck_tickets_transfer_token_expiry"
        ),
    )
    
    def __repr__(self):
        return f"<Ticket(id={self.id}, number={self.ticket_number}, status={self.status})>"
