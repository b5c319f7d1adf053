"""TicketOffer (favor ticket) model"""
from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from datetime import datetime, timezone, timedelta
from tickety_payments.models.base import Base

OFFER_TTL = timedelta(days=7)
TERMINAL_OFFER_STATUSES = ("accepted", "declined", "cancelled", "expired")


class TicketOffer(Base):
    """Comp/gift ticket offered to a recipient by email"""
    __tablename__ = "ticket_offers"
    
    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    recipient_email = Column(String(255), nullable=False, index=True)
    recipient_user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    price_cents = Column(Integer, default=0, nullable=False)
    ticket_mode = Column(String(20), default="private", nullable=False)  # private, public
    status = Column(String(20), default="pending", nullable=False)
    expires_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc) + OFFER_TTL, nullable=False)
    # Ticket issued when the offer was accepted
    ticket_id = Column(Integer, ForeignKey("tickets.id", use_alter=True, name="fk_ticket_offers_ticket_id"), nullable=True)
    responded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    
    __table_args__ = (
        CheckConstraint("price_cents >= 0", name="ck_ticket_offers_price_non_negative"),
        CheckConstraint("ticket_mode IN ('private', 'public')", name="ck_ticket_offers_ticket_mode"),
        CheckConstraint(
            "status IN ('pending', 'accepted', 'declined', 'cancelled', 'expired')",
            name="ck_ticket_offers_status"
        ),
    )
    
    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_OFFER_STATUSES
