"""Tests for model constraints and helpers"""
import pytest
from datetime import datetime, timezone
from sqlalchemy.exc import IntegrityError

from tickety_payments.models.event import EventTicketType
from tickety_payments.models.payment import PAYMENT_TRANSITIONS, Payment
from tickety_payments.models.resale_listing import ResaleListing
from tickety_payments.models.stripe_event import StripeEvent
from tickety_payments.models.subscription import Subscription
from tickety_payments.models.ticket import Ticket
from tickety_payments.models.ticket_offer import TicketOffer
from conftest import make_ticket


@pytest.mark.critical
class TestPaymentTransitions:
    """Test the payment status machine"""

    @pytest.mark.parametrize("current,target", [
        ("pending", "completed"),
        ("pending", "failed"),
        ("pending", "refunded"),
        ("failed", "completed"),
        ("completed", "refunded"),
    ])
    def test_allowed(self, current, target):
        """Test transitions the reconciler may apply"""
        assert Payment(status=current).can_transition_to(target)

    @pytest.mark.parametrize("current,target", [
        ("completed", "failed"),
        ("completed", "pending"),
        ("completed", "completed"),
        ("refunded", "completed"),
        ("refunded", "failed"),
        ("failed", "refunded"),
    ])
    def test_rejected(self, current, target):
        """Test late or out-of-order events cannot move a payment backwards"""
        assert not Payment(status=current).can_transition_to(target)

    def test_refunded_is_terminal(self):
        """Test refunded has no outgoing transitions"""
        assert PAYMENT_TRANSITIONS["refunded"] == ()

    def test_amount_must_be_positive(self, db_session, buyer):
        """Test zero-amount payments are rejected by the database"""
        db_session.add(Payment(user_id=buyer.id, amount_cents=0, type="primary_purchase"))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_unknown_type_rejected(self, db_session, buyer):
        """Test the payment type is constrained"""
        db_session.add(Payment(user_id=buyer.id, amount_cents=100, type="donation"))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_intent_id_unique(self, db_session, buyer):
        """Test one Payment row per PaymentIntent"""
        db_session.add(Payment(user_id=buyer.id, amount_cents=100, type="primary_purchase",
                               stripe_payment_intent_id="pi_dup"))
        db_session.commit()
        db_session.add(Payment(user_id=buyer.id, amount_cents=100, type="primary_purchase",
                               stripe_payment_intent_id="pi_dup"))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()


@pytest.mark.high
class TestTicketConstraints:
    """Test ticket table constraints"""

    def test_ticket_number_unique(self, db_session, event, buyer):
        """Test ticket numbers cannot repeat"""
        make_ticket(db_session, event, buyer, number="TKT-SAME")
        with pytest.raises(IntegrityError):
            make_ticket(db_session, event, buyer, number="TKT-SAME")
        db_session.rollback()

    def test_invalid_status(self, db_session, event, buyer):
        """Test unknown ticket statuses are rejected"""
        with pytest.raises(IntegrityError):
            make_ticket(db_session, event, buyer, status="lost")
        db_session.rollback()

    def test_transfer_token_requires_expiry(self, db_session, event, buyer):
        """Test a transfer token can never be stored without an expiry"""
        db_session.add(Ticket(event_id=event.id, ticket_number="TKT-NOEXP", owner_user_id=buyer.id,
                              transfer_token="a" * 64))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_one_active_listing_per_ticket(self, db_session, event, seller):
        """Test the partial unique index on active listings"""
        ticket = make_ticket(db_session, event, seller)
        db_session.add(ResaleListing(ticket_id=ticket.id, seller_id=seller.id, price_cents=4000))
        db_session.commit()
        db_session.add(ResaleListing(ticket_id=ticket.id, seller_id=seller.id, price_cents=4500))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_cancelled_listings_do_not_block(self, db_session, event, seller):
        """Test cancelled listings fall outside the unique index"""
        ticket = make_ticket(db_session, event, seller)
        db_session.add(ResaleListing(ticket_id=ticket.id, seller_id=seller.id, price_cents=4000, status="cancelled"))
        db_session.add(ResaleListing(ticket_id=ticket.id, seller_id=seller.id, price_cents=4500))
        db_session.commit()
        assert db_session.query(ResaleListing).count() == 2


@pytest.mark.medium
class TestModelHelpers:
    """Test small model properties"""

    @pytest.mark.parametrize("status,terminal", [
        ("pending", False),
        ("accepted", True),
        ("declined", True),
        ("cancelled", True),
        ("expired", True),
    ])
    def test_offer_is_terminal(self, status, terminal):
        """Test terminal offer statuses"""
        assert TicketOffer(status=status).is_terminal is terminal

    def test_ticket_type_sold_out(self):
        """Test sold-out detection"""
        assert EventTicketType(quantity_limit=2, quantity_sold=2).is_sold_out
        assert not EventTicketType(quantity_limit=2, quantity_sold=1).is_sold_out
        assert not EventTicketType(quantity_limit=None, quantity_sold=500).is_sold_out

    def test_subscription_to_dict(self):
        """Test subscription serialization"""
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        sub = Subscription(tier="pro", status="active", stripe_subscription_id="sub_1",
                           current_period_start=start, cancel_at_period_end=False)
        data = sub.to_dict()
        assert data["tier"] == "pro"
        assert data["current_period_start"] == "2024-01-01T00:00:00+00:00"
        assert data["current_period_end"] is None

    def test_stripe_event_id_unique(self, db_session):
        """Test the webhook ledger refuses duplicate event ids"""
        db_session.add(StripeEvent(event_id="evt_1", event_type="charge.refunded", payload={}))
        db_session.commit()
        db_session.add(StripeEvent(event_id="evt_1", event_type="charge.refunded", payload={}))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()
