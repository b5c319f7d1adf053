"""SellerBalance model"""
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from datetime import datetime, timezone
from tickety_payments.models.base import Base


class SellerBalance(Base):
    """Seller's Connect account linkage and cached balance"""
    __tablename__ = "seller_balances"
    
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False, index=True)
    stripe_account_id = Column(String(255), unique=True, nullable=True, index=True)
    
    # Cached from Stripe, refreshed by get_seller_balance and the Connect webhook
    available_balance_cents = Column(Integer, default=0, nullable=False)
    pending_balance_cents = Column(Integer, default=0, nullable=False)
    currency = Column(String(3), default="usd", nullable=False)
    payouts_enabled = Column(Boolean, default=False, nullable=False)
    details_submitted = Column(Boolean, default=False, nullable=False)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
