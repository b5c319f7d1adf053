"""Prometheus metrics for the application"""
from prometheus_client import Counter

# Payment intent metrics
payment_intents_counter = Counter(
    'tickety_payment_intents_created_total',
    'Total number of payment intents created',
    ['type']
)

price_mismatch_counter = Counter(
    'tickety_price_mismatch_total',
    'Total number of purchase requests rejected for a client/server amount mismatch',
    ['type']
)

# Webhook metrics
webhook_events_counter = Counter(
    'tickety_webhook_events_total',
    'Total number of Stripe webhook events received',
    ['event_type', 'status']
)

# Ticket metrics
tickets_issued_counter = Counter(
    'tickety_tickets_issued_total',
    'Total number of tickets issued',
    ['source']
)

# Cash sale metrics
cash_fee_charges_counter = Counter(
    'tickety_cash_fee_charges_total',
    'Platform fee charges attempted for cash sales',
    ['outcome']
)

# Seller metrics
payouts_counter = Counter(
    'tickety_payouts_initiated_total',
    'Total number of seller payouts initiated'
)

# Auth metrics
login_attempts_counter = Counter(
    'tickety_login_attempts_total',
    'Total number of login attempts',
    ['status']
)
