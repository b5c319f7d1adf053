"""Event, staff and ticket type models"""
from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from tickety_payments.models.base import Base


class Event(Base):
    """A ticketed event"""
    __tablename__ = "events"
    
    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    organizer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    price_cents = Column(Integer, default=0, nullable=False)  # Base ticket price
    currency = Column(String(3), default="usd", nullable=False)
    
    # Cash sales
    cash_sales_enabled = Column(Boolean, default=False, nullable=False)
    organizer_stripe_customer_id = Column(String(255), nullable=True)  # Charged off-session for cash sale fees
    organizer_payment_method_id = Column(String(255), nullable=True)
    
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    
    staff = relationship("EventStaff", back_populates="event", cascade="all, delete-orphan")
    ticket_types = relationship("EventTicketType", back_populates="event", cascade="all, delete-orphan")
    
    __table_args__ = (
        CheckConstraint("price_cents >= 0", name="ck_events_price_non_negative"),
    )


class EventStaff(Base):
    """Staff assignment for an event"""
    __tablename__ = "event_staff"
    
    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String(20), nullable=False)  # admin, usher, seller, vendor
    
    event = relationship("Event", back_populates="staff")
    
    __table_args__ = (
        UniqueConstraint("event_id", "user_id", name="uq_event_staff_event_user"),
        CheckConstraint("role IN ('admin', 'usher', 'seller', 'vendor')", name="ck_event_staff_role"),
    )


class EventTicketType(Base):
    """Priced ticket tier for an event (GA, VIP, ...)"""
    __tablename__ = "event_ticket_types"
    
    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    price_cents = Column(Integer, default=0, nullable=False)
    quantity_limit = Column(Integer, nullable=True)  # None means unlimited
    quantity_sold = Column(Integer, default=0, nullable=False)
    
    event = relationship("Event", back_populates="ticket_types")
    
    @property
    def is_sold_out(self) -> bool:
        return self.quantity_limit is not None and self.quantity_sold >= self.quantity_limit
