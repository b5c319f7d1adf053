"""User model"""
from sqlalchemy import Column, Integer, String, DateTime
from datetime import datetime, timezone
from tickety_payments.models.base import Base


class User(Base):
    """User accounts (buyers, sellers, organizers and staff)"""
    __tablename__ = "users"
    
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    display_name = Column(String(255), nullable=True)
    password_hash = Column(String(255), nullable=True)
    stripe_customer_id = Column(String(255), nullable=True, unique=True, index=True)  # Buyer-side Stripe customer
    stripe_connect_account_id = Column(String(255), nullable=True, index=True)  # Legacy seller linkage, see SellerBalance
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    
    def __repr__(self):
        return f"<User(id={self.id}, email={self.email})>"
