"""Purchase fulfillment shared by the webhook and client-confirmation paths.

Both transports build a ``PurchaseCompleted`` and call ``fulfill_purchase``;
the payment ledger's unique key decides which one issues the license.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from typing import Optional

from extensions import db
from models import (
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
    SUB_ACTIVE,
    TIER_TRIAL,
    VALID_TIERS,
    License,
    LicensePayment,
    LicenseSubscription,
)
from services import licensing, payments, pending_checkouts, subscriptions
from services.audit import log_action
from services.errors import (
    AlreadyProcessed,
    SemanticError,
    SignatureError,
    UnknownProviderError,
)
from services.gateways import get_gateway
from services.notifications import (
    NOTICE_PURCHASE_CONFIRMED,
    Notice,
    dispatch_notices,
    license_notice,
)
from services.webhook_events import PurchaseCompleted
from utils import utc_now

logger = logging.getLogger(__name__)


@dataclass
class FulfillmentResult:
    license: License
    subscription: LicenseSubscription
    payment: LicensePayment
    notices: list[Notice] = field(default_factory=list)


def fulfill_purchase(
    purchase: PurchaseCompleted,
    now: Optional[datetime.datetime] = None,
) -> FulfillmentResult:
    """Issue a license for a confirmed first payment. Does not commit.

    Raises ``AlreadyProcessed`` when the payment or subscription is already
    recorded and ``SemanticError`` when the purchase lacks a sellable tier or
    an email.
    """
    if payments.payment_exists(purchase.provider, purchase.payment_id):
        raise AlreadyProcessed("payment", f"{purchase.provider}:{purchase.payment_id}")
    if subscriptions.get_by_provider_id(purchase.provider, purchase.subscription_id):
        raise AlreadyProcessed("subscription", f"{purchase.provider}:{purchase.subscription_id}")
    if purchase.tier not in VALID_TIERS or purchase.tier == TIER_TRIAL:
        raise SemanticError(f"Purchase {purchase.payment_id} has no sellable tier: {purchase.tier!r}")
    if not purchase.email:
        raise SemanticError(f"Purchase {purchase.payment_id} has no customer email")

    gateway = get_gateway(purchase.provider)
    price = gateway.get_price_for_tier(purchase.tier)
    now = now or utc_now()

    license = licensing.issue_license(
        tier=purchase.tier,
        email=purchase.email,
        name=purchase.name,
        company=purchase.company,
        domain=purchase.domain,
        provider=purchase.provider,
        external_subscription_id=purchase.subscription_id,
        now=now,
    )
    license.renewal_currency = gateway.currency
    license.auto_renew = purchase.auto_renew
    if not purchase.auto_renew:
        license.next_renewal_date = None

    subscription = subscriptions.create_subscription(LicenseSubscription(
        license_id=license.id,
        provider=purchase.provider,
        provider_subscription_id=purchase.subscription_id,
        provider_customer_id=purchase.customer_id,
        status=SUB_ACTIVE,
        tier=purchase.tier,
        customer_email=license.customer_email,
        customer_name=license.customer_name,
        licensed_domain=purchase.domain,
        amount=price,
        currency=gateway.currency,
        billing_interval=gateway.licensing.billing_interval,
        current_period_start=license.valid_from,
        current_period_end=license.valid_until,
        next_payment_date=license.valid_until if purchase.auto_renew else None,
        auto_renew=purchase.auto_renew,
        payment_count=0,
    ))

    payment = payments.record_payment(LicensePayment(
        subscription_id=subscription.id,
        license_id=license.id,
        provider=purchase.provider,
        provider_payment_id=purchase.payment_id,
        provider_invoice_id=purchase.invoice_id,
        provider_customer_id=purchase.customer_id,
        status=PAYMENT_SUCCEEDED,
        payment_type="subscription" if purchase.auto_renew else "one_time",
        amount=purchase.amount if purchase.amount is not None else price,
        currency=purchase.currency or gateway.currency,
        tier=purchase.tier,
        customer_email=license.customer_email,
        paid_at=now,
        period_start=license.valid_from,
        period_end=license.valid_until,
        card_brand=purchase.card_brand,
        card_last4=purchase.card_last4,
    ))
    subscriptions.increment_payment_count(subscription.id, paid_at=now)

    if purchase.order_id:
        pending_checkouts.discard_pending_checkout(purchase.provider, purchase.order_id)
    log_action(
        "license_issued", "license", license.id,
        details=f"{purchase.provider} payment {purchase.payment_id}, tier {purchase.tier}",
    )
    logger.info(
        "Fulfilled %s purchase %s: license %s",
        purchase.provider, purchase.payment_id, licensing.mask_license_key(license.key),
    )
    return FulfillmentResult(
        license=license,
        subscription=subscription,
        payment=payment,
        notices=[license_notice(NOTICE_PURCHASE_CONFIRMED, license)],
    )


def license_for_payment(provider: str, provider_payment_id: str) -> Optional[License]:
    payment = payments.get_payment(provider, provider_payment_id)
    return payment.license if payment else None


def confirm_client_payment(
    provider: str,
    order_id: str,
    payment_id: str,
    signature: str,
) -> tuple[License, bool]:
    """Fulfill a purchase the browser reports as paid.

    Returns ``(license, created)``; ``created`` is False when the webhook (or an
    earlier confirmation) already issued the license for this payment.
    """
    gateway = get_gateway(provider)
    if not gateway.supports_client_confirmation:
        raise UnknownProviderError(f"{provider} does not support client confirmation")
    if not gateway.verify_payment_signature(order_id, payment_id, signature):
        raise SignatureError("Invalid payment signature")

    existing = license_for_payment(provider, payment_id)
    if existing is not None:
        return existing, False

    pending = pending_checkouts.get_pending_checkout(provider, order_id)
    if pending is None:
        raise SemanticError(f"Order {order_id} is unknown or expired")
    provider_payment = gateway.get_payment(payment_id)
    if provider_payment is None or provider_payment.status == PAYMENT_FAILED:
        raise SemanticError(f"Payment {payment_id} not found or failed at {provider}")
    if provider_payment.order_id and provider_payment.order_id != order_id:
        raise SemanticError(f"Payment {payment_id} belongs to another order")

    purchase = PurchaseCompleted(
        provider=provider,
        payment_id=payment_id,
        subscription_id=order_id,
        order_id=order_id,
        tier=pending.tier,
        email=pending.customer_email,
        name=pending.customer_name,
        company=pending.company,
        domain=pending.domain,
        amount=provider_payment.amount,
        currency=provider_payment.currency,
        auto_renew=False,
        card_brand=provider_payment.card_brand,
        card_last4=provider_payment.card_last4,
    )
    try:
        result = fulfill_purchase(purchase)
    except AlreadyProcessed:
        # The webhook won the race for this payment.
        existing = license_for_payment(provider, payment_id)
        if existing is None:
            raise
        return existing, False
    db.session.commit()
    dispatch_notices(result.notices)
    return result.license, True
