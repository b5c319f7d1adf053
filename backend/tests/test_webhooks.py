"""Tests for the Stripe webhook reconciler"""
import pytest
import stripe
from unittest.mock import patch

from tickety_payments.core.config import settings
from tickety_payments.models.payment import Payment
from tickety_payments.models.resale_listing import ResaleListing
from tickety_payments.models.seller_balance import SellerBalance
from tickety_payments.models.stripe_event import StripeEvent
from tickety_payments.models.subscription import Subscription
from tickety_payments.models.ticket import Ticket
from tickety_payments.models.ticket_offer import TicketOffer
from tickety_payments.utils.timeutils import utcnow
from tickety_payments.services.webhook_service import (
    WebhookHandlerError, log_stripe_event, process_connect_webhook, process_stripe_webhook
)
from conftest import make_ticket, make_user, webhook_payload

SIG = "t=1700000000,v1=test_signature"


def deliver(client, payload, path="/api/stripe-webhook"):
    return client.post(path, content=payload, headers={"stripe-signature": SIG, "Content-Type": "application/json"})


def pending_payment(db_session, buyer, event, intent_id="pi_abc", amount=9761, payment_type="primary_purchase", **fields):
    payment = Payment(
        user_id=buyer.id, event_id=event.id, amount_cents=amount, status=fields.pop("status", "pending"),
        type=payment_type, stripe_payment_intent_id=intent_id, **fields
    )
    db_session.add(payment)
    db_session.commit()
    db_session.refresh(payment)
    return payment


def intent_object(buyer, event, intent_id="pi_abc", amount=9761, payment_type="primary_purchase", quantity=3, **extra):
    metadata = {
        "type": payment_type,
        "user_id": str(buyer.id),
        "event_id": str(event.id),
        "quantity": str(quantity),
    }
    metadata.update(extra.pop("metadata", {}))
    obj = {
        "id": intent_id,
        "object": "payment_intent",
        "amount": amount,
        "currency": "usd",
        "status": "succeeded",
        "latest_charge": "ch_abc",
        "metadata": metadata,
    }
    obj.update(extra)
    return obj


def charge_object(intent_id="pi_abc", charge_id="ch_abc", amount=9761, refunded=True, amount_refunded=None):
    return {
        "id": charge_id,
        "object": "charge",
        "payment_intent": intent_id,
        "amount": amount,
        "amount_refunded": amount if amount_refunded is None else amount_refunded,
        "refunded": refunded,
    }


def tickets_for(db_session, payment):
    return db_session.query(Ticket).filter(Ticket.payment_id == payment.id).order_by(Ticket.id).all()


@pytest.mark.critical
class TestPaymentSucceeded:
    """Test payment_intent.succeeded reconciliation"""

    def test_issues_one_ticket_per_quantity(self, client, db_session, buyer, event):
        """Test three tickets are issued and their prices sum to the charge"""
        payment = pending_payment(db_session, buyer, event)

        response = deliver(client, webhook_payload("evt_1", "payment_intent.succeeded", intent_object(buyer, event)))

        assert response.status_code == 200
        assert response.json() == {"status": "success"}
        db_session.expire_all()
        payment = db_session.query(Payment).filter(Payment.id == payment.id).one()
        assert payment.status == "completed"
        assert payment.stripe_charge_id == "ch_abc"

        tickets = tickets_for(db_session, payment)
        assert len(tickets) == 3
        assert sum(t.price_paid_cents for t in tickets) == 9761
        assert [t.price_paid_cents for t in tickets] == [3255, 3253, 3253]
        assert payment.ticket_id == tickets[0].id
        assert all(t.owner_user_id == buyer.id and t.status == "valid" for t in tickets)
        assert len({t.ticket_number for t in tickets}) == 3

        ledger = db_session.query(StripeEvent).filter(StripeEvent.event_id == "evt_1").one()
        assert ledger.processed is True
        assert ledger.attempts == 1

    def test_replayed_event_is_acknowledged_without_changes(self, client, db_session, buyer, event):
        """Test the same event id delivered twice issues tickets once"""
        payment = pending_payment(db_session, buyer, event)
        payload = webhook_payload("evt_1", "payment_intent.succeeded", intent_object(buyer, event))

        assert deliver(client, payload).json() == {"status": "success"}
        assert deliver(client, payload).json() == {"status": "already_processed"}

        db_session.expire_all()
        assert len(tickets_for(db_session, payment)) == 3

    def test_second_event_for_same_intent_is_noop(self, db_session, buyer, event):
        """Test a different event id for an already completed payment issues nothing"""
        payment = pending_payment(db_session, buyer, event)
        obj = intent_object(buyer, event)

        process_stripe_webhook(webhook_payload("evt_1", "payment_intent.succeeded", obj), SIG, db_session)
        result = process_stripe_webhook(webhook_payload("evt_2", "payment_intent.succeeded", obj), SIG, db_session)

        assert result == {"status": "success"}
        assert len(tickets_for(db_session, payment)) == 3

    def test_rebuilds_missing_payment_from_metadata(self, db_session, buyer, event):
        """Test a success for an intent with no local row recreates it and issues tickets"""
        obj = intent_object(buyer, event, intent_id="pi_orphan", amount=3232, quantity=1,
                            metadata={"service_fee_cents": "233", "stripe_fee_cents": "83"})

        process_stripe_webhook(webhook_payload("evt_1", "payment_intent.succeeded", obj), SIG, db_session)

        payment = db_session.query(Payment).filter(Payment.stripe_payment_intent_id == "pi_orphan").one()
        assert payment.status == "completed"
        assert payment.user_id == buyer.id
        assert payment.event_id == event.id
        assert payment.amount_cents == 3232
        assert payment.platform_fee_cents == 233
        assert payment.extra_metadata["rebuilt_from_webhook"] is True
        assert len(tickets_for(db_session, payment)) == 1

    def test_unusable_metadata_is_ignored(self, db_session, buyer, event):
        """Test an unknown intent without our metadata is acknowledged"""
        obj = intent_object(buyer, event, intent_id="pi_foreign", metadata={"type": "something_else"})
        result = process_stripe_webhook(webhook_payload("evt_1", "payment_intent.succeeded", obj), SIG, db_session)
        assert result == {"status": "success"}
        assert db_session.query(Payment).count() == 0

    def test_failed_then_succeeded(self, db_session, buyer, event):
        """Test a retried intent moves failed to completed"""
        payment = pending_payment(db_session, buyer, event)
        failed = intent_object(buyer, event, status="requires_payment_method",
                               last_payment_error={"code": "card_declined", "message": "Your card was declined."})

        process_stripe_webhook(webhook_payload("evt_1", "payment_intent.payment_failed", failed), SIG, db_session)
        db_session.refresh(payment)
        assert payment.status == "failed"
        assert payment.extra_metadata["failure_code"] == "card_declined"
        assert tickets_for(db_session, payment) == []

        process_stripe_webhook(webhook_payload("evt_2", "payment_intent.succeeded", intent_object(buyer, event)), SIG, db_session)
        db_session.refresh(payment)
        assert payment.status == "completed"
        assert len(tickets_for(db_session, payment)) == 3

    def test_failure_after_success_is_ignored(self, db_session, buyer, event):
        """Test a late payment_failed does not undo a completed payment"""
        payment = pending_payment(db_session, buyer, event)
        process_stripe_webhook(webhook_payload("evt_1", "payment_intent.succeeded", intent_object(buyer, event)), SIG, db_session)
        process_stripe_webhook(webhook_payload("evt_2", "payment_intent.payment_failed", intent_object(buyer, event)), SIG, db_session)
        db_session.refresh(payment)
        assert payment.status == "completed"


@pytest.mark.critical
class TestResaleAndFavorCompletion:
    """Test completion of resale and paid favor purchases"""

    def _listing(self, db_session, seller, event, status="active", buyer_id=None):
        ticket = make_ticket(db_session, event, owner=seller, listing_status="listed")
        ticket.transfer_token = "nfc-token"
        ticket.transfer_token_expires_at = utcnow()
        db_session.commit()
        listing = ResaleListing(ticket_id=ticket.id, seller_id=seller.id, price_cents=5000, status="active")
        db_session.add(listing)
        db_session.commit()
        if status != "active":
            listing.status = status
            listing.buyer_id = buyer_id
            db_session.commit()
        db_session.refresh(listing)
        return listing, ticket

    def test_resale_moves_ticket_to_buyer(self, db_session, buyer, seller, event):
        """Test the listing is marked sold and ownership moves"""
        listing, ticket = self._listing(db_session, seller, event)
        payment = pending_payment(db_session, buyer, event, intent_id="pi_resale", amount=5000,
                                  payment_type="resale_purchase", resale_listing_id=listing.id)
        obj = intent_object(buyer, event, intent_id="pi_resale", amount=5000, payment_type="resale_purchase",
                            quantity=1, metadata={"resale_listing_id": str(listing.id)})

        process_stripe_webhook(webhook_payload("evt_1", "payment_intent.succeeded", obj), SIG, db_session)

        db_session.refresh(listing)
        db_session.refresh(ticket)
        db_session.refresh(payment)
        assert listing.status == "sold"
        assert listing.buyer_id == buyer.id
        assert listing.sold_at is not None
        assert ticket.owner_user_id == buyer.id
        assert ticket.owner_email == buyer.email
        assert ticket.listing_status == "sold"
        assert ticket.price_paid_cents == 5000
        assert ticket.transfer_token is None
        assert payment.status == "completed"
        assert payment.ticket_id == ticket.id

    def test_listing_sold_to_someone_else(self, db_session, buyer, seller, event):
        """Test a second buyer's payment completes but ownership stays put"""
        other = make_user(db_session, "other@tickety.test")
        listing, ticket = self._listing(db_session, seller, event, status="sold", buyer_id=other.id)
        ticket.owner_user_id = other.id
        ticket.owner_email = other.email
        db_session.commit()
        payment = pending_payment(db_session, buyer, event, intent_id="pi_late", amount=5000,
                                  payment_type="resale_purchase", resale_listing_id=listing.id)
        obj = intent_object(buyer, event, intent_id="pi_late", amount=5000, payment_type="resale_purchase", quantity=1)

        process_stripe_webhook(webhook_payload("evt_1", "payment_intent.succeeded", obj), SIG, db_session)

        db_session.refresh(ticket)
        db_session.refresh(payment)
        assert ticket.owner_user_id == other.id
        assert payment.status == "completed"
        assert payment.ticket_id is None

    def test_paid_favor_offer_issues_ticket(self, db_session, buyer, organizer, event):
        """Test a paid offer is accepted and its ticket carries the offer's mode"""
        offer = TicketOffer(event_id=event.id, created_by=organizer.id, recipient_email=buyer.email,
                            price_cents=1500, ticket_mode="public")
        db_session.add(offer)
        db_session.commit()
        payment = pending_payment(db_session, buyer, event, intent_id="pi_favor", amount=1653,
                                  payment_type="favor_ticket_purchase", offer_id=offer.id)
        obj = intent_object(buyer, event, intent_id="pi_favor", amount=1653, payment_type="favor_ticket_purchase",
                            quantity=1, metadata={"offer_id": str(offer.id)})

        process_stripe_webhook(webhook_payload("evt_1", "payment_intent.succeeded", obj), SIG, db_session)

        db_session.refresh(offer)
        db_session.refresh(payment)
        ticket = db_session.query(Ticket).filter(Ticket.id == payment.ticket_id).one()
        assert offer.status == "accepted"
        assert offer.ticket_id == ticket.id
        assert ticket.ticket_mode == "public"
        assert ticket.offer_id == offer.id
        assert ticket.owner_user_id == buyer.id


@pytest.mark.critical
class TestChargeRefunded:
    """Test charge.refunded reconciliation"""

    def test_refund_before_success(self, db_session, buyer, event):
        """Test a refund arriving first wins over the later success"""
        payment = pending_payment(db_session, buyer, event)

        process_stripe_webhook(webhook_payload("evt_1", "charge.refunded", charge_object()), SIG, db_session)
        db_session.refresh(payment)
        assert payment.status == "refunded"

        process_stripe_webhook(webhook_payload("evt_2", "payment_intent.succeeded", intent_object(buyer, event)), SIG, db_session)
        db_session.refresh(payment)
        assert payment.status == "refunded"
        assert tickets_for(db_session, payment) == []

    def test_full_refund_refunds_tickets(self, db_session, buyer, event):
        """Test a full refund after completion invalidates the issued tickets"""
        payment = pending_payment(db_session, buyer, event)
        process_stripe_webhook(webhook_payload("evt_1", "payment_intent.succeeded", intent_object(buyer, event)), SIG, db_session)

        process_stripe_webhook(webhook_payload("evt_2", "charge.refunded", charge_object()), SIG, db_session)

        db_session.refresh(payment)
        assert payment.status == "refunded"
        assert payment.extra_metadata["amount_refunded_cents"] == 9761
        assert {t.status for t in tickets_for(db_session, payment)} == {"refunded"}

    def test_partial_refund_keeps_payment_completed(self, db_session, buyer, event):
        """Test a partial refund is recorded without a transition"""
        payment = pending_payment(db_session, buyer, event, status="completed", stripe_charge_id="ch_abc")

        process_stripe_webhook(
            webhook_payload("evt_1", "charge.refunded", charge_object(refunded=False, amount_refunded=500)),
            SIG, db_session
        )

        db_session.refresh(payment)
        assert payment.status == "completed"
        assert payment.extra_metadata["amount_refunded_cents"] == 500

    def test_refund_replay_is_noop(self, db_session, buyer, event):
        """Test a second full refund event changes nothing"""
        payment = pending_payment(db_session, buyer, event, status="refunded", stripe_charge_id="ch_abc")
        result = process_stripe_webhook(webhook_payload("evt_9", "charge.refunded", charge_object()), SIG, db_session)
        assert result == {"status": "success"}
        db_session.refresh(payment)
        assert payment.status == "refunded"


@pytest.mark.critical
class TestWebhookVerificationAndFailures:
    """Test signature handling, ledger bookkeeping and error responses"""

    def test_missing_signature_header(self, client):
        """Test a request without stripe-signature is rejected"""
        response = client.post("/api/stripe-webhook", content=b"{}")
        assert response.status_code == 400
        assert "stripe-signature" in response.json()["error"]

    def test_bad_signature(self, client, db_session, auto_mock_stripe):
        """Test a signature failure returns 400 and records nothing"""
        auto_mock_stripe.Webhook.construct_event.side_effect = stripe.error.SignatureVerificationError(
            "No signatures found matching the expected signature", SIG
        )
        response = deliver(client, webhook_payload("evt_1", "payment_intent.succeeded", {"id": "pi_x", "amount": 1}))
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid signature"}
        assert db_session.query(StripeEvent).count() == 0

    def test_signature_checked_with_platform_secret(self, db_session, auto_mock_stripe):
        """Test the raw body and header are passed to Stripe for verification"""
        payload = webhook_payload("evt_1", "invoice.paid", {"id": "in_1"})
        process_stripe_webhook(payload, SIG, db_session)
        auto_mock_stripe.Webhook.construct_event.assert_called_once_with(payload, SIG, settings.STRIPE_WEBHOOK_SECRET)

    def test_invalid_json(self, client):
        """Test an unparseable body returns 400"""
        response = deliver(client, b"not json")
        assert response.status_code == 400

    def test_missing_secret(self, db_session):
        """Test an unconfigured secret is refused"""
        with patch.object(settings, "STRIPE_WEBHOOK_SECRET", ""):
            with pytest.raises(ValueError):
                process_stripe_webhook(webhook_payload("evt_1", "invoice.paid", {"id": "in_1"}), SIG, db_session)

    def test_unhandled_type_is_ignored_and_marked(self, client, db_session):
        """Test events we do not handle are acknowledged and marked processed"""
        response = deliver(client, webhook_payload("evt_1", "invoice.paid", {"id": "in_1"}))
        assert response.json() == {"status": "ignored"}
        ledger = db_session.query(StripeEvent).filter(StripeEvent.event_id == "evt_1").one()
        assert ledger.processed is True

    def test_handler_error_returns_500_and_keeps_event_unprocessed(self, client, db_session, buyer, event):
        """Test a failing handler asks Stripe to redeliver"""
        pending_payment(db_session, buyer, event, intent_id="pi_resale", amount=5000,
                        payment_type="resale_purchase", resale_listing_id=999)
        obj = intent_object(buyer, event, intent_id="pi_resale", amount=5000, payment_type="resale_purchase", quantity=1)

        response = deliver(client, webhook_payload("evt_1", "payment_intent.succeeded", obj))

        assert response.status_code == 500
        assert response.json() == {"error": "Webhook processing failed"}
        db_session.expire_all()
        ledger = db_session.query(StripeEvent).filter(StripeEvent.event_id == "evt_1").one()
        assert ledger.processed is False
        assert ledger.attempts == 1
        assert "999" in ledger.error_message
        payment = db_session.query(Payment).filter(Payment.stripe_payment_intent_id == "pi_resale").one()
        assert payment.status == "pending"

    def test_malformed_object_is_a_handler_failure(self, db_session):
        """Test a payment intent without an amount raises WebhookHandlerError"""
        with pytest.raises(WebhookHandlerError):
            process_stripe_webhook(webhook_payload("evt_1", "payment_intent.succeeded", {"id": "pi_x"}), SIG, db_session)
        ledger = db_session.query(StripeEvent).filter(StripeEvent.event_id == "evt_1").one()
        assert ledger.processed is False

    def test_ledger_insert_is_idempotent(self, db_session):
        """Test logging the same event twice returns the same row"""
        first = log_stripe_event("evt_1", "invoice.paid", {"id": "evt_1"}, db_session)
        second = log_stripe_event("evt_1", "invoice.paid", {"id": "evt_1"}, db_session)
        assert first.id == second.id
        assert db_session.query(StripeEvent).count() == 1

    def test_webhooks_are_not_rate_limited(self, client, mock_redis):
        """Test webhook deliveries never touch the rate limiter"""
        deliver(client, webhook_payload("evt_1", "invoice.paid", {"id": "in_1"}))
        assert mock_redis.keys("rate_limit:*") == []


@pytest.mark.high
class TestSubscriptionEvents:
    """Test subscription webhook reconciliation"""

    def _subscription(self, user, status="active", sub_id="sub_1", price="price_pro", **extra):
        obj = {
            "id": sub_id,
            "object": "subscription",
            "customer": "cus_sub",
            "status": status,
            "metadata": {"user_id": str(user.id)},
            "items": {"data": [{"price": {"id": price}, "current_period_start": 1700000000, "current_period_end": 1702592000}]},
            "cancel_at_period_end": False,
        }
        obj.update(extra)
        return obj

    def _record(self, db_session, user):
        db_session.expire_all()
        return db_session.query(Subscription).filter(Subscription.user_id == user.id).one()

    def test_created_maps_price_to_tier(self, db_session, buyer):
        """Test the price id resolves the tier"""
        with patch.object(settings, "STRIPE_PRO_PRICE_ID", "price_pro"):
            process_stripe_webhook(
                webhook_payload("evt_1", "customer.subscription.created", self._subscription(buyer)), SIG, db_session
            )
        record = self._record(db_session, buyer)
        assert record.tier == "pro"
        assert record.status == "active"
        assert record.stripe_subscription_id == "sub_1"
        assert record.stripe_price_id == "price_pro"
        assert record.current_period_end is not None

    def test_metadata_tier_wins(self, db_session, buyer):
        """Test a tier in subscription metadata is used as-is"""
        sub = self._subscription(buyer, price="price_unknown")
        sub["metadata"]["tier"] = "enterprise"
        process_stripe_webhook(webhook_payload("evt_1", "customer.subscription.created", sub), SIG, db_session)
        assert self._record(db_session, buyer).tier == "enterprise"

    def test_unknown_price_defaults_to_base(self, db_session, buyer):
        """Test an unrecognised price never grants a paid tier"""
        process_stripe_webhook(
            webhook_payload("evt_1", "customer.subscription.created", self._subscription(buyer, price="price_other")),
            SIG, db_session
        )
        assert self._record(db_session, buyer).tier == "base"

    def test_incomplete_expired_maps_to_canceled(self, db_session, buyer):
        """Test statuses we do not model become canceled"""
        process_stripe_webhook(
            webhook_payload("evt_1", "customer.subscription.updated", self._subscription(buyer, status="incomplete_expired")),
            SIG, db_session
        )
        assert self._record(db_session, buyer).status == "canceled"

    def test_stale_update_is_ignored(self, db_session, buyer):
        """Test an event older than the last applied one changes nothing"""
        process_stripe_webhook(
            webhook_payload("evt_new", "customer.subscription.updated", self._subscription(buyer, status="active"), created=1700002000),
            SIG, db_session
        )
        process_stripe_webhook(
            webhook_payload("evt_old", "customer.subscription.updated", self._subscription(buyer, status="past_due"), created=1700001000),
            SIG, db_session
        )
        assert self._record(db_session, buyer).status == "active"

    def test_same_second_created_after_updated_is_ignored(self, db_session, buyer):
        """Test a created event delivered after its same-second update does not roll the status back"""
        process_stripe_webhook(
            webhook_payload("evt_upd", "customer.subscription.updated", self._subscription(buyer, status="active"), created=1700000000),
            SIG, db_session
        )
        process_stripe_webhook(
            webhook_payload("evt_crt", "customer.subscription.created", self._subscription(buyer, status="incomplete"), created=1700000000),
            SIG, db_session
        )
        assert self._record(db_session, buyer).status == "active"

    def test_same_second_update_still_applies(self, db_session, buyer):
        """Test an update in the same second as the created event is applied"""
        process_stripe_webhook(
            webhook_payload("evt_crt", "customer.subscription.created", self._subscription(buyer, status="incomplete"), created=1700000000),
            SIG, db_session
        )
        process_stripe_webhook(
            webhook_payload("evt_upd", "customer.subscription.updated", self._subscription(buyer, status="active"), created=1700000000),
            SIG, db_session
        )
        assert self._record(db_session, buyer).status == "active"

    def test_same_second_created_for_new_subscription_applies(self, db_session, buyer):
        """Test a created event for a different subscription is not treated as stale"""
        process_stripe_webhook(
            webhook_payload("evt_old", "customer.subscription.updated", self._subscription(buyer, sub_id="sub_old"), created=1700000000),
            SIG, db_session
        )
        process_stripe_webhook(
            webhook_payload("evt_new", "customer.subscription.created", self._subscription(buyer, sub_id="sub_new", status="trialing"), created=1700000000),
            SIG, db_session
        )
        record = self._record(db_session, buyer)
        assert record.stripe_subscription_id == "sub_new"
        assert record.status == "trialing"

    def test_deleted_resets_to_base(self, db_session, buyer):
        """Test deletion drops the user back to base with the Stripe ids cleared"""
        with patch.object(settings, "STRIPE_PRO_PRICE_ID", "price_pro"):
            process_stripe_webhook(
                webhook_payload("evt_1", "customer.subscription.created", self._subscription(buyer), created=1700000000),
                SIG, db_session
            )
            process_stripe_webhook(
                webhook_payload("evt_2", "customer.subscription.deleted", self._subscription(buyer, status="canceled"), created=1700000100),
                SIG, db_session
            )
        record = self._record(db_session, buyer)
        assert record.tier == "base"
        assert record.status == "active"
        assert record.stripe_subscription_id is None
        assert record.stripe_price_id is None

    def test_delete_of_replaced_subscription_is_ignored(self, db_session, buyer):
        """Test deleting an old subscription leaves the newer one alone"""
        with patch.object(settings, "STRIPE_PRO_PRICE_ID", "price_pro"):
            process_stripe_webhook(
                webhook_payload("evt_1", "customer.subscription.created", self._subscription(buyer, sub_id="sub_new"), created=1700000000),
                SIG, db_session
            )
            process_stripe_webhook(
                webhook_payload("evt_2", "customer.subscription.deleted", self._subscription(buyer, sub_id="sub_old", status="canceled"), created=1700000100),
                SIG, db_session
            )
        record = self._record(db_session, buyer)
        assert record.tier == "pro"
        assert record.stripe_subscription_id == "sub_new"

    def test_user_resolved_by_customer_id(self, db_session, buyer):
        """Test a subscription without user metadata is matched by Stripe customer"""
        buyer.stripe_customer_id = "cus_sub"
        db_session.commit()
        sub = self._subscription(buyer, metadata={})
        process_stripe_webhook(webhook_payload("evt_1", "customer.subscription.created", sub), SIG, db_session)
        assert self._record(db_session, buyer).stripe_subscription_id == "sub_1"


@pytest.mark.high
class TestConnectEvents:
    """Test Connect account webhooks"""

    def test_account_updated_refreshes_flags(self, client, db_session, seller):
        """Test payouts_enabled and details_submitted are copied locally"""
        db_session.add(SellerBalance(user_id=seller.id, stripe_account_id="acct_seller"))
        db_session.commit()
        obj = {"id": "acct_seller", "object": "account", "charges_enabled": True,
               "payouts_enabled": True, "details_submitted": True}

        response = deliver(client, webhook_payload("evt_1", "account.updated", obj, account="acct_seller"),
                           path="/api/webhooks/stripe-connect")

        assert response.status_code == 200
        db_session.expire_all()
        balance = db_session.query(SellerBalance).filter(SellerBalance.user_id == seller.id).one()
        assert balance.payouts_enabled is True
        assert balance.details_submitted is True
        ledger = db_session.query(StripeEvent).filter(StripeEvent.event_id == "evt_1").one()
        assert ledger.source == "connect"

    def test_connect_uses_connect_secret(self, db_session, auto_mock_stripe):
        """Test Connect events are verified with their own secret"""
        payload = webhook_payload("evt_1", "account.updated", {"id": "acct_none"}, account="acct_none")
        process_connect_webhook(payload, SIG, db_session)
        auto_mock_stripe.Webhook.construct_event.assert_called_once_with(
            payload, SIG, settings.STRIPE_CONNECT_WEBHOOK_SECRET
        )

    def test_deauthorized_clears_account_and_listings(self, db_session, seller, event):
        """Test deauthorization unlinks the seller and cancels active listings"""
        db_session.add(SellerBalance(user_id=seller.id, stripe_account_id="acct_gone", payouts_enabled=True))
        ticket = make_ticket(db_session, event, owner=seller, listing_status="listed")
        listing = ResaleListing(ticket_id=ticket.id, seller_id=seller.id, price_cents=4000)
        db_session.add(listing)
        db_session.commit()

        process_connect_webhook(
            webhook_payload("evt_1", "account.application.deauthorized", {"id": "ca_123", "object": "application"},
                            account="acct_gone"),
            SIG, db_session
        )

        db_session.expire_all()
        balance = db_session.query(SellerBalance).filter(SellerBalance.user_id == seller.id).one()
        assert balance.stripe_account_id is None
        assert balance.payouts_enabled is False
        assert db_session.query(ResaleListing).filter(ResaleListing.id == listing.id).one().status == "cancelled"
        assert db_session.query(Ticket).filter(Ticket.id == ticket.id).one().listing_status == "cancelled"

    def test_platform_events_on_connect_endpoint_are_ignored(self, db_session):
        """Test the Connect endpoint only dispatches account events"""
        result = process_connect_webhook(
            webhook_payload("evt_1", "charge.refunded", charge_object()), SIG, db_session
        )
        assert result == {"status": "ignored"}
