"""CashTransaction model"""
from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text
from datetime import datetime, timezone
from tickety_payments.models.base import Base


class CashTransaction(Base):
    """In-person cash sale and the platform fee charged for it"""
    __tablename__ = "cash_transactions"
    
    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    ticket_id = Column(Integer, ForeignKey("tickets.id"), nullable=False, index=True)
    seller_id = Column(Integer, ForeignKey("users.id"), nullable=False)  # Staff member who took the cash
    amount_cents = Column(Integer, nullable=False)
    platform_fee_cents = Column(Integer, default=0, nullable=False)
    currency = Column(String(3), default="usd", nullable=False)
    customer_name = Column(String(255), nullable=True)
    customer_email = Column(String(255), nullable=True)
    delivery_method = Column(String(20), nullable=False)  # nfc, email, in_person
    status = Column(String(20), default="pending", nullable=False)  # pending, collected, disputed
    
    # Fee charged to the organizer's card on file
    fee_charged = Column(Boolean, default=False, nullable=False)
    fee_payment_intent_id = Column(String(255), nullable=True)
    fee_charge_error = Column(Text, nullable=True)
    
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    collected_at = Column(DateTime(timezone=True), nullable=True)
    
    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_cash_transactions_amount_non_negative"),
        CheckConstraint("status IN ('pending', 'collected', 'disputed')", name="ck_cash_transactions_status"),
        CheckConstraint("delivery_method IN ('nfc', 'email', 'in_person')", name="ck_cash_transactions_delivery"),
    )
