"""Create payments, tickets and reconciliation tables

Revision ID: 001
Revises:
Create Date: 2026-02-04 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    # Tables may already exist when init_db() ran first
    conn = op.get_bind()
    existing_tables = inspect(conn).get_table_names()

    if 'users' not in existing_tables:
        op.create_table(
            'users',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('email', sa.String(length=255), nullable=False),
            sa.Column('display_name', sa.String(length=255), nullable=True),
            sa.Column('password_hash', sa.String(length=255), nullable=True),
            sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
            sa.Column('stripe_connect_account_id', sa.String(length=255), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_users_email', 'users', ['email'], unique=True)
        op.create_index('ix_users_stripe_customer_id', 'users', ['stripe_customer_id'], unique=True)
        op.create_index('ix_users_stripe_connect_account_id', 'users', ['stripe_connect_account_id'])

    if 'events' not in existing_tables:
        op.create_table(
            'events',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('title', sa.String(length=255), nullable=False),
            sa.Column('organizer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('price_cents', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('currency', sa.String(length=3), nullable=False, server_default='usd'),
            sa.Column('cash_sales_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('organizer_stripe_customer_id', sa.String(length=255), nullable=True),
            sa.Column('organizer_payment_method_id', sa.String(length=255), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint('id'),
            sa.CheckConstraint('price_cents >= 0', name='ck_events_price_non_negative')
        )
        op.create_index('ix_events_organizer_id', 'events', ['organizer_id'])

    if 'event_staff' not in existing_tables:
        op.create_table(
            'event_staff',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('event_id', sa.Integer(), sa.ForeignKey('events.id', ondelete='CASCADE'), nullable=False),
            sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
            sa.Column('role', sa.String(length=20), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('event_id', 'user_id', name='uq_event_staff_event_user'),
            sa.CheckConstraint("role IN ('admin', 'usher', 'seller', 'vendor')", name='ck_event_staff_role')
        )
        op.create_index('ix_event_staff_event_id', 'event_staff', ['event_id'])
        op.create_index('ix_event_staff_user_id', 'event_staff', ['user_id'])

    if 'event_ticket_types' not in existing_tables:
        op.create_table(
            'event_ticket_types',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('event_id', sa.Integer(), sa.ForeignKey('events.id', ondelete='CASCADE'), nullable=False),
            sa.Column('name', sa.String(length=100), nullable=False),
            sa.Column('price_cents', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('quantity_limit', sa.Integer(), nullable=True),
            sa.Column('quantity_sold', sa.Integer(), nullable=False, server_default='0'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_event_ticket_types_event_id', 'event_ticket_types', ['event_id'])

    if 'ticket_offers' not in existing_tables:
        op.create_table(
            'ticket_offers',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('event_id', sa.Integer(), sa.ForeignKey('events.id'), nullable=False),
            sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('recipient_email', sa.String(length=255), nullable=False),
            sa.Column('recipient_user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
            sa.Column('price_cents', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('ticket_mode', sa.String(length=20), nullable=False, server_default='private'),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
            sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('ticket_id', sa.Integer(), nullable=True),
            sa.Column('responded_at', sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint('id'),
            sa.CheckConstraint('price_cents >= 0', name='ck_ticket_offers_price_non_negative'),
            sa.CheckConstraint("ticket_mode IN ('private', 'public')", name='ck_ticket_offers_ticket_mode'),
            sa.CheckConstraint(
                "status IN ('pending', 'accepted', 'declined', 'cancelled', 'expired')",
                name='ck_ticket_offers_status'
            )
        )
        op.create_index('ix_ticket_offers_event_id', 'ticket_offers', ['event_id'])
        op.create_index('ix_ticket_offers_recipient_email', 'ticket_offers', ['recipient_email'])
        op.create_index('ix_ticket_offers_recipient_user_id', 'ticket_offers', ['recipient_user_id'])

    if 'payments' not in existing_tables:
        op.create_table(
            'payments',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
            sa.Column('event_id', sa.Integer(), sa.ForeignKey('events.id'), nullable=True),
            sa.Column('resale_listing_id', sa.Integer(), nullable=True),
            sa.Column('offer_id', sa.Integer(), sa.ForeignKey('ticket_offers.id'), nullable=True),
            sa.Column('ticket_id', sa.Integer(), nullable=True),
            sa.Column('amount_cents', sa.Integer(), nullable=False),
            sa.Column('currency', sa.String(length=3), nullable=False, server_default='usd'),
            sa.Column('platform_fee_cents', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('processor_fee_cents', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('seller_amount_cents', sa.Integer(), nullable=True),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
            sa.Column('type', sa.String(length=30), nullable=False),
            sa.Column('stripe_payment_intent_id', sa.String(length=255), nullable=True),
            sa.Column('stripe_charge_id', sa.String(length=255), nullable=True),
            sa.Column('metadata', sa.JSON(), nullable=True),
            *_timestamps(),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.CheckConstraint('amount_cents > 0', name='ck_payments_amount_positive'),
            sa.CheckConstraint("status IN ('pending', 'completed', 'failed', 'refunded')", name='ck_payments_status'),
            sa.CheckConstraint(
                "type IN ('primary_purchase', 'resale_purchase', 'vendor_pos', 'favor_ticket_purchase')",
                name='ck_payments_type'
            )
        )
        op.create_index('ix_payments_user_id', 'payments', ['user_id'])
        op.create_index('ix_payments_event_id', 'payments', ['event_id'])
        op.create_index('ix_payments_resale_listing_id', 'payments', ['resale_listing_id'])
        op.create_index('ix_payments_offer_id', 'payments', ['offer_id'])
        op.create_index('ix_payments_stripe_payment_intent_id', 'payments', ['stripe_payment_intent_id'], unique=True)
        op.create_index('ix_payments_stripe_charge_id', 'payments', ['stripe_charge_id'], unique=True)

    if 'tickets' not in existing_tables:
        op.create_table(
            'tickets',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('event_id', sa.Integer(), sa.ForeignKey('events.id'), nullable=False),
            sa.Column('ticket_type_id', sa.Integer(), sa.ForeignKey('event_ticket_types.id'), nullable=True),
            sa.Column('ticket_number', sa.String(length=32), nullable=False),
            sa.Column('owner_email', sa.String(length=255), nullable=True),
            sa.Column('owner_user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
            sa.Column('owner_name', sa.String(length=255), nullable=True),
            sa.Column('price_paid_cents', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('currency', sa.String(length=3), nullable=False, server_default='usd'),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='valid'),
            sa.Column('ticket_mode', sa.String(length=20), nullable=False, server_default='standard'),
            sa.Column('listing_status', sa.String(length=20), nullable=False, server_default='none'),
            sa.Column('payment_id', sa.Integer(), sa.ForeignKey('payments.id'), nullable=True),
            sa.Column('offer_id', sa.Integer(), sa.ForeignKey('ticket_offers.id'), nullable=True),
            sa.Column('payment_method', sa.String(length=20), nullable=False, server_default='stripe'),
            sa.Column('delivery_method', sa.String(length=20), nullable=True),
            sa.Column('sold_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
            sa.Column('transfer_token', sa.String(length=64), nullable=True),
            sa.Column('transfer_token_expires_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('consumed_transfer_token', sa.String(length=64), nullable=True),
            *_timestamps(),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.CheckConstraint("status IN ('valid', 'used', 'cancelled', 'refunded')", name='ck_tickets_status'),
            sa.CheckConstraint("ticket_mode IN ('standard', 'private', 'public')", name='ck_tickets_ticket_mode'),
            sa.CheckConstraint(
                "listing_status IN ('none', 'listed', 'sold', 'cancelled')",
                name='ck_tickets_listing_status'
            ),
            sa.CheckConstraint(
                'transfer_token IS NULL OR transfer_token_expires_at IS NOT NULL',
                name='ck_tickets_transfer_token_expiry'
            )
        )
        op.create_index('ix_tickets_event_id', 'tickets', ['event_id'])
        op.create_index('ix_tickets_ticket_number', 'tickets', ['ticket_number'], unique=True)
        op.create_index('ix_tickets_owner_email', 'tickets', ['owner_email'])
        op.create_index('ix_tickets_owner_user_id', 'tickets', ['owner_user_id'])
        op.create_index('ix_tickets_payment_id', 'tickets', ['payment_id'])
        op.create_index('ix_tickets_offer_id', 'tickets', ['offer_id'])
        op.create_index('ix_tickets_transfer_token', 'tickets', ['transfer_token'], unique=True)
        op.create_index('ix_tickets_consumed_transfer_token', 'tickets', ['consumed_transfer_token'], unique=True)

        # payments and ticket_offers point back at tickets
        op.create_foreign_key('fk_payments_ticket_id', 'payments', 'tickets', ['ticket_id'], ['id'])
        op.create_foreign_key('fk_ticket_offers_ticket_id', 'ticket_offers', 'tickets', ['ticket_id'], ['id'])

    if 'resale_listings' not in existing_tables:
        op.create_table(
            'resale_listings',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('ticket_id', sa.Integer(), sa.ForeignKey('tickets.id'), nullable=False),
            sa.Column('seller_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('price_cents', sa.Integer(), nullable=False),
            sa.Column('currency', sa.String(length=3), nullable=False, server_default='usd'),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
            sa.Column('buyer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
            sa.Column('sold_at', sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.CheckConstraint('price_cents > 0', name='ck_resale_listings_price_positive'),
            sa.CheckConstraint("status IN ('active', 'sold', 'cancelled')", name='ck_resale_listings_status')
        )
        op.create_index('ix_resale_listings_ticket_id', 'resale_listings', ['ticket_id'])
        op.create_index('ix_resale_listings_seller_id', 'resale_listings', ['seller_id'])
        op.create_index(
            'uq_resale_listings_active_ticket', 'resale_listings', ['ticket_id'], unique=True,
            postgresql_where=sa.text("status = 'active'")
        )
        op.create_foreign_key('fk_payments_resale_listing_id', 'payments', 'resale_listings', ['resale_listing_id'], ['id'])

        # A private or non-valid ticket can never be listed, whatever the writer
        if conn.dialect.name == 'postgresql':
            op.execute("""
                CREATE OR REPLACE FUNCTION reject_unlistable_tickets() RETURNS trigger AS $$
                BEGIN
                    IF EXISTS (
                        SELECT 1 FROM tickets
                        WHERE id = NEW.ticket_id AND (ticket_mode = 'private' OR status <> 'valid')
                    ) THEN
                        RAISE EXCEPTION 'Ticket % cannot be listed for resale', NEW.ticket_id;
                    END IF;
                    RETURN NEW;
                END;
                $$ LANGUAGE plpgsql;
            """)
            op.execute("""
                CREATE TRIGGER trg_resale_listings_listable
                BEFORE INSERT ON resale_listings
                FOR EACH ROW EXECUTE FUNCTION reject_unlistable_tickets();
            """)

    if 'subscriptions' not in existing_tables:
        op.create_table(
            'subscriptions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
            sa.Column('tier', sa.String(length=20), nullable=False, server_default='base'),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
            sa.Column('stripe_subscription_id', sa.String(length=255), nullable=True),
            sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
            sa.Column('stripe_price_id', sa.String(length=255), nullable=True),
            sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
            sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
            sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('last_event_at', sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'], unique=True)
        op.create_index('ix_subscriptions_stripe_subscription_id', 'subscriptions', ['stripe_subscription_id'], unique=True)
        op.create_index('ix_subscriptions_stripe_customer_id', 'subscriptions', ['stripe_customer_id'])

    if 'seller_balances' not in existing_tables:
        op.create_table(
            'seller_balances',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
            sa.Column('stripe_account_id', sa.String(length=255), nullable=True),
            sa.Column('available_balance_cents', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('pending_balance_cents', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('currency', sa.String(length=3), nullable=False, server_default='usd'),
            sa.Column('payouts_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('details_submitted', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_seller_balances_user_id', 'seller_balances', ['user_id'], unique=True)
        op.create_index('ix_seller_balances_stripe_account_id', 'seller_balances', ['stripe_account_id'], unique=True)

    if 'cash_transactions' not in existing_tables:
        op.create_table(
            'cash_transactions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('event_id', sa.Integer(), sa.ForeignKey('events.id'), nullable=False),
            sa.Column('ticket_id', sa.Integer(), sa.ForeignKey('tickets.id'), nullable=False),
            sa.Column('seller_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('amount_cents', sa.Integer(), nullable=False),
            sa.Column('platform_fee_cents', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('currency', sa.String(length=3), nullable=False, server_default='usd'),
            sa.Column('customer_name', sa.String(length=255), nullable=True),
            sa.Column('customer_email', sa.String(length=255), nullable=True),
            sa.Column('delivery_method', sa.String(length=20), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
            sa.Column('fee_charged', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('fee_payment_intent_id', sa.String(length=255), nullable=True),
            sa.Column('fee_charge_error', sa.Text(), nullable=True),
            *_timestamps(),
            sa.Column('collected_at', sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint('id'),
            sa.CheckConstraint('amount_cents >= 0', name='ck_cash_transactions_amount_non_negative'),
            sa.CheckConstraint("status IN ('pending', 'collected', 'disputed')", name='ck_cash_transactions_status'),
            sa.CheckConstraint(
                "delivery_method IN ('nfc', 'email', 'in_person')",
                name='ck_cash_transactions_delivery'
            )
        )
        op.create_index('ix_cash_transactions_event_id', 'cash_transactions', ['event_id'])
        op.create_index('ix_cash_transactions_ticket_id', 'cash_transactions', ['ticket_id'])

    if 'stripe_events' not in existing_tables:
        op.create_table(
            'stripe_events',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('event_id', sa.String(length=255), nullable=False),
            sa.Column('event_type', sa.String(length=100), nullable=False),
            sa.Column('source', sa.String(length=20), nullable=False, server_default='platform'),
            sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('payload', sa.JSON(), nullable=False),
            sa.Column('error_message', sa.Text(), nullable=True),
            *_timestamps(),
            sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_stripe_events_event_id', 'stripe_events', ['event_id'], unique=True)
        op.create_index('ix_stripe_events_event_type', 'stripe_events', ['event_type'])


def downgrade() -> None:
    conn = op.get_bind()
    existing_tables = inspect(conn).get_table_names()

    if conn.dialect.name == 'postgresql' and 'resale_listings' in existing_tables:
        op.execute("DROP TRIGGER IF EXISTS trg_resale_listings_listable ON resale_listings")
        op.execute("DROP FUNCTION IF EXISTS reject_unlistable_tickets()")

    if 'payments' in existing_tables:
        op.drop_constraint('fk_payments_ticket_id', 'payments', type_='foreignkey')
        op.drop_constraint('fk_payments_resale_listing_id', 'payments', type_='foreignkey')
    if 'ticket_offers' in existing_tables:
        op.drop_constraint('fk_ticket_offers_ticket_id', 'ticket_offers', type_='foreignkey')

    for table in (
        'stripe_events', 'cash_transactions', 'seller_balances', 'subscriptions',
        'resale_listings', 'tickets', 'payments', 'ticket_offers',
        'event_ticket_types', 'event_staff', 'events', 'users',
    ):
        if table in existing_tables:
            op.drop_table(table)
