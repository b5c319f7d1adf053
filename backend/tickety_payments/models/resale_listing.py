"""ResaleListing model"""
from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String, event, select, text
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from tickety_payments.core.errors import ValidationFailed
from tickety_payments.models.base import Base
from tickety_payments.models.ticket import Ticket


class ResaleListing(Base):
    """An offer to sell an existing ticket"""
    __tablename__ = "resale_listings"
    
    id = Column(Integer, primary_key=True, index=True)
    ticket_id = Column(Integer, ForeignKey("tickets.id"), nullable=False, index=True)
    seller_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    price_cents = Column(Integer, nullable=False)
    currency = Column(String(3), default="usd", nullable=False)
    status = Column(String(20), default="active", nullable=False)  # active, sold, cancelled
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    sold_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
    
    ticket = relationship("Ticket")
    
    __table_args__ = (
        CheckConstraint("price_cents > 0", name="ck_resale_listings_price_positive"),
        CheckConstraint("status IN ('active', 'sold', 'cancelled')", name="ck_resale_listings_status"),
        # At most one active listing per ticket
        Index(
            "uq_resale_listings_active_ticket", "ticket_id", unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )


@event.listens_for(ResaleListing, "before_insert")
def reject_unlistable_tickets(mapper, connection, target):
    """Refuse to insert a listing for a private or non-valid ticket, whatever the caller"""
    row = connection.execute(
        select(Ticket.ticket_mode, Ticket.status).where(Ticket.id == target.ticket_id)
    ).first()
    if row is None:
        raise ValidationFailed("Ticket not found")
    if row.ticket_mode == "private":
        raise ValidationFailed("Private tickets cannot be resold")
    if row.status != "valid":
        raise ValidationFailed("Only valid tickets can be listed for resale")
