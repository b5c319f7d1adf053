"""Stripe API access

Every call to Stripe goes through this module so that configuration,
idempotency keys and error translation live in one place. Stripe SDK
exceptions never leave this module: they become ``UpstreamFailure``.
"""
import logging
import stripe
from typing import Any, Dict, Optional

from tickety_payments.core.config import settings
from tickety_payments.core.errors import UpstreamFailure

logger = logging.getLogger(__name__)

# Configure Stripe
stripe.api_key = settings.STRIPE_SECRET_KEY
stripe.api_version = settings.STRIPE_API_VERSION


def configure_stripe():
    """Apply request timeout and retry policy to the global Stripe client"""
    stripe.api_key = settings.STRIPE_SECRET_KEY
    stripe.api_version = settings.STRIPE_API_VERSION
    stripe.max_network_retries = settings.STRIPE_MAX_NETWORK_RETRIES
    stripe.default_http_client = stripe.RequestsClient(timeout=settings.STRIPE_REQUEST_TIMEOUT)
    logger.info(
        f"Stripe configured (api_version={settings.STRIPE_API_VERSION}, "
        f"timeout={settings.STRIPE_REQUEST_TIMEOUT}s, retries={settings.STRIPE_MAX_NETWORK_RETRIES})"
    )


# ============================================================================
# STRIPE OBJECT ACCESS HELPER
# ============================================================================

def get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key, default)
        return default if value is None else value
    value = getattr(obj, key, None)
    if value is not None:
        return value
    try:
        value = obj[key]
    except (KeyError, TypeError, AttributeError):
        return default
    return default if value is None else value


def _call(action: str, func, *args, **kwargs):
    """Run a Stripe SDK call, translating its errors"""
    try:
        return func(*args, **kwargs)
    except (stripe.error.APIConnectionError, stripe.error.RateLimitError) as e:
        # Timeouts surface as APIConnectionError; Stripe may or may not have applied the request
        logger.error(f"Stripe {action} failed (retryable): {e}")
        raise UpstreamFailure("Payment provider is unavailable. Please try again.", retryable=True) from e
    except stripe.error.CardError as e:
        logger.warning(f"Stripe {action} declined: {e}")
        raise UpstreamFailure(getattr(e, "user_message", None) or "Card was declined") from e
    except stripe.error.StripeError as e:
        logger.error(f"Stripe {action} failed: {e}")
        raise UpstreamFailure(f"Payment provider error during {action}") from e


# ============================================================================
# WEBHOOKS
# ============================================================================

def construct_event(payload: bytes, sig_header: str, secret: str):
    """Verify a webhook signature and return the event

    Raises:
        ValueError: For an unparseable payload
        stripe.error.SignatureVerificationError: For a bad signature
    """
    return stripe.Webhook.construct_event(payload, sig_header, secret)


# ============================================================================
# CUSTOMERS
# ============================================================================

def create_customer(email: str, user_id: int, name: Optional[str] = None) -> str:
    """Create a Stripe customer for a user and return its id"""
    params = {"email": email, "metadata": {"user_id": str(user_id)}}
    if name:
        params["name"] = name
    customer = _call(
        "customer creation", stripe.Customer.create,
        idempotency_key=f"customer-{user_id}", **params
    )
    logger.info(f"Created Stripe customer {customer.id} for user {user_id}")
    return customer.id


def create_ephemeral_key(customer_id: str) -> str:
    """Ephemeral key the mobile PaymentSheet uses to act on the customer"""
    key = _call(
        "ephemeral key creation", stripe.EphemeralKey.create,
        customer=customer_id, stripe_version=settings.STRIPE_API_VERSION
    )
    return key.secret


# ============================================================================
# PAYMENT INTENTS & REFUNDS
# ============================================================================

def create_payment_intent(idempotency_key: str, **params):
    """Create a PaymentIntent. Metadata values are stringified as Stripe requires."""
    if "metadata" in params:
        params["metadata"] = {k: str(v) for k, v in params["metadata"].items() if v is not None}
    intent = _call(
        "payment intent creation", stripe.PaymentIntent.create,
        idempotency_key=idempotency_key, **params
    )
    logger.info(
        f"Created PaymentIntent {intent.id} for {params.get('amount')} {params.get('currency')} "
        f"(type={params.get('metadata', {}).get('type')})"
    )
    return intent


def create_refund(
    payment_intent_id: str,
    reason: str,
    metadata: Dict[str, Any],
    idempotency_key: str,
    reverse_transfer: bool = False,
    refund_application_fee: bool = False
):
    params: Dict[str, Any] = {}
    if reverse_transfer:
        params["reverse_transfer"] = True
    if refund_application_fee:
        params["refund_application_fee"] = True
    refund = _call(
        "refund", stripe.Refund.create,
        payment_intent=payment_intent_id,
        reason=reason,
        metadata={k: str(v) for k, v in metadata.items()},
        idempotency_key=idempotency_key,
        **params
    )
    logger.info(f"Created refund {refund.id} for PaymentIntent {payment_intent_id}")
    return refund


# ============================================================================
# CONNECT
# ============================================================================

def create_connect_account(email: str, user_id: int):
    """Create a minimal Express account (email only, KYC deferred to withdrawal)"""
    account = _call(
        "connect account creation", stripe.Account.create,
        type="express",
        email=email,
        metadata={"user_id": str(user_id)},
        capabilities={
            "card_payments": {"requested": True},
            "transfers": {"requested": True},
        },
        business_type="individual",
        business_profile={
            "mcc": "7922",  # Theatrical producers and ticket agencies
            "product_description": "Event ticket resale",
        },
        settings={"payouts": {"schedule": {"interval": "manual"}}},
        idempotency_key=f"connect-account-{user_id}",
    )
    logger.info(f"Created Connect account {account.id} for user {user_id}")
    return account


def retrieve_account(account_id: str):
    return _call("account retrieval", stripe.Account.retrieve, account_id)


def retrieve_balance(account_id: str):
    return _call("balance retrieval", stripe.Balance.retrieve, stripe_account=account_id)


def create_account_link(account_id: str, refresh_url: str, return_url: str) -> str:
    link = _call(
        "account link creation", stripe.AccountLink.create,
        account=account_id,
        refresh_url=refresh_url,
        return_url=return_url,
        type="account_onboarding",
        collection_options={"fields": "eventually_due"},
    )
    return link.url


def create_login_link(account_id: str) -> str:
    link = _call("login link creation", stripe.Account.create_login_link, account_id)
    return link.url


def create_payout(account_id: str, amount_cents: int, currency: str, idempotency_key: str):
    payout = _call(
        "payout", stripe.Payout.create,
        amount=amount_cents,
        currency=currency,
        stripe_account=account_id,
        idempotency_key=idempotency_key,
    )
    logger.info(f"Created payout {payout.id} of {amount_cents} {currency} on account {account_id}")
    return payout
