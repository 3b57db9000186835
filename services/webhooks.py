"""Webhook verification, routing and the per-delivery unit of work.

Each delivery is one database transaction: the processed-event marker, the
license, subscription and payment writes all commit together or not at all.
Notifications are dispatched only after the commit succeeded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from extensions import db
from models import PAYMENT_SUCCEEDED, TERMINAL_SUBSCRIPTION_STATUSES, LicensePayment
from services import licensing, payments, subscriptions
from services.errors import (
    AlreadyProcessed,
    GatewayError,
    PayloadError,
    SemanticError,
    SignatureError,
    UnknownProviderError,
)
from services.fulfillment import fulfill_purchase
from services.gateways import get_gateway
from services.idempotency import claim_event
from services.notifications import (
    NOTICE_LICENSE_RENEWED,
    NOTICE_PAYMENT_FAILED,
    NOTICE_SUBSCRIPTION_CANCELLED,
    Notice,
    dispatch_notices,
    license_notice,
)
from services.webhook_events import (
    EventKind,
    PaymentFailed,
    PurchaseCompleted,
    RenewalPaid,
    SubscriptionCancelled,
    parse_envelope,
    parse_event,
)
from utils import add_interval, as_utc, utc_now

logger = logging.getLogger(__name__)

OUTCOME_PROCESSED = "processed"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_IGNORED = "ignored"
OUTCOME_DROPPED = "dropped"
OUTCOME_REJECTED = "rejected"
OUTCOME_ERROR = "error"


@dataclass(frozen=True)
class WebhookResult:
    status_code: int
    outcome: str
    event_type: Optional[str] = None
    detail: str = ""


# ---------------------------------------------------------------------------
# Handlers: each returns the notices to send once the transaction commits.
# ---------------------------------------------------------------------------

def handle_purchase(event: PurchaseCompleted) -> list[Notice]:
    return fulfill_purchase(event).notices


def handle_renewal(event: RenewalPaid) -> list[Notice]:
    """Extend the license by one interval and count the payment."""
    sub = subscriptions.get_by_provider_id(event.provider, event.subscription_id)
    if sub is None:
        raise SemanticError(f"Renewal for unknown subscription {event.subscription_id}")
    if payments.payment_exists(event.provider, event.payment_id):
        raise AlreadyProcessed("payment", f"{event.provider}:{event.payment_id}")
    if sub.status in TERMINAL_SUBSCRIPTION_STATUSES:
        raise SemanticError(f"Renewal {event.payment_id} for {sub.status} subscription {sub.id}")

    interval = sub.billing_interval or current_app.config["LICENSING_CONFIG"].billing_interval
    license = licensing.extend_license(sub.license_id, interval=interval)
    if license is None:
        raise SemanticError(f"Subscription {sub.id} references missing license {sub.license_id}")

    # The new period follows the previous one, whatever the wall clock says.
    previous_end = as_utc(sub.current_period_end)
    new_end = add_interval(previous_end, interval)
    subscriptions.advance_period(sub.id, previous_end, new_end)

    paid_at = event.paid_at or utc_now()
    payments.record_payment(LicensePayment(
        subscription_id=sub.id,
        license_id=license.id,
        provider=event.provider,
        provider_payment_id=event.payment_id,
        provider_invoice_id=event.invoice_id,
        provider_customer_id=sub.provider_customer_id,
        status=PAYMENT_SUCCEEDED,
        payment_type="subscription",
        amount=event.amount if event.amount is not None else sub.amount,
        currency=event.currency or sub.currency,
        tier=sub.tier,
        customer_email=sub.customer_email,
        paid_at=paid_at,
        period_start=previous_end,
        period_end=new_end,
        receipt_url=event.receipt_url,
        invoice_url=event.invoice_url,
    ))
    count = subscriptions.increment_payment_count(sub.id, paid_at=paid_at)
    logger.info(
        "Renewed license %s via %s payment %s (payment #%s, period ends %s)",
        license.id, event.provider, event.payment_id, count, new_end.isoformat(),
    )
    return [license_notice(
        NOTICE_LICENSE_RENEWED, license,
        amount=event.amount if event.amount is not None else sub.amount,
        currency=event.currency or sub.currency,
    )]


def handle_payment_failed(event: PaymentFailed) -> list[Notice]:
    sub = subscriptions.get_by_provider_id(event.provider, event.subscription_id)
    if sub is None:
        raise SemanticError(
            f"Payment failure {event.payment_id} for unknown subscription {event.subscription_id}"
        )
    if payments.payment_exists(event.provider, event.payment_id):
        logger.info("Ignoring failure for %s payment %s, it was paid since", event.provider, event.payment_id)
        return []
    if payments.has_one_time_charge(sub.id):
        # A paid one-time order has nothing left to fail; this is an earlier attempt.
        logger.info("Ignoring failure %s for paid order %s", event.payment_id, event.subscription_id)
        return []
    if not subscriptions.record_failure(sub.id, event.reason, event.period_end):
        return []
    return [license_notice(NOTICE_PAYMENT_FAILED, sub.license, reason=event.reason)]


def handle_cancellation(event: SubscriptionCancelled) -> list[Notice]:
    """Provider-side cancellation: immediate, and the provider is not called back."""
    sub = subscriptions.get_by_provider_id(event.provider, event.subscription_id)
    if sub is None:
        raise SemanticError(f"Cancellation for unknown subscription {event.subscription_id}")
    if sub.status in TERMINAL_SUBSCRIPTION_STATUSES:
        logger.info("Subscription %s already %s", sub.id, sub.status)
        return []
    subscriptions.cancel_subscription(sub.id, cancel_at_period_end=False, notify_provider=False)
    return [license_notice(NOTICE_SUBSCRIPTION_CANCELLED, sub.license)]


HANDLERS: dict[EventKind, Callable[..., list[Notice]]] = {
    EventKind.PURCHASE_COMPLETED: handle_purchase,
    EventKind.RENEWAL_PAID: handle_renewal,
    EventKind.PAYMENT_FAILED: handle_payment_failed,
    EventKind.SUBSCRIPTION_CANCELLED: handle_cancellation,
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def process_webhook(
    provider: str,
    raw_body: bytes,
    signature: Optional[str],
    event_id: Optional[str] = None,
) -> WebhookResult:
    """Verify, route and apply one webhook delivery.

    *event_id* is the provider's event id when it travels outside the body
    (Razorpay's ``X-Razorpay-Event-Id`` header).
    """
    try:
        gateway = get_gateway(provider)
    except UnknownProviderError as e:
        logger.warning("Webhook for unknown provider %r", provider)
        return WebhookResult(404, OUTCOME_REJECTED, detail=str(e))

    try:
        body = gateway.verify_webhook(raw_body, signature)
        envelope = parse_envelope(gateway.name, body, event_id)
        event = parse_event(envelope)
    except SignatureError as e:
        logger.warning("Rejected %s webhook: %s", provider, e)
        return WebhookResult(400, OUTCOME_REJECTED, detail=str(e))
    except PayloadError as e:
        logger.warning("Rejected %s webhook payload: %s", provider, e)
        return WebhookResult(400, OUTCOME_REJECTED, detail=str(e))
    except GatewayError as e:
        logger.error("Cannot verify %s webhook: %s", provider, e)
        return WebhookResult(500, OUTCOME_ERROR, detail=str(e))

    event_type = envelope.event_type
    if envelope.kind is None:
        logger.info("Ignoring unhandled %s event %s (%s)", provider, event_type, envelope.event_id)
        return WebhookResult(200, OUTCOME_IGNORED, event_type)
    if event is None:
        logger.info("No action needed for %s event %s (%s)", provider, event_type, envelope.event_id)
        return WebhookResult(200, OUTCOME_IGNORED, event_type)

    try:
        if envelope.event_id:
            claim_event(gateway.name, envelope.event_id, event_type)
        notices = HANDLERS[envelope.kind](event)
        db.session.commit()
    except AlreadyProcessed as e:
        db.session.rollback()
        logger.info("Duplicate %s event %s: %s", provider, event_type, e)
        return WebhookResult(200, OUTCOME_DUPLICATE, event_type, str(e))
    except SemanticError as e:
        db.session.rollback()
        # Retrying cannot fix bad data; log loudly and acknowledge.
        logger.error("Dropped %s event %s (%s): %s", provider, event_type, envelope.event_id, e)
        return WebhookResult(200, OUTCOME_DROPPED, event_type, str(e))
    except IntegrityError as e:
        db.session.rollback()
        logger.info("Concurrent delivery of %s event %s already applied: %s", provider, event_type, e)
        return WebhookResult(200, OUTCOME_DUPLICATE, event_type)
    except (GatewayError, SQLAlchemyError) as e:
        db.session.rollback()
        logger.exception("Transient failure processing %s event %s", provider, event_type)
        return WebhookResult(500, OUTCOME_ERROR, event_type, str(e))

    logger.info("Processed %s event %s (%s)", provider, event_type, envelope.event_id)
    dispatch_notices(notices)
    return WebhookResult(200, OUTCOME_PROCESSED, event_type)
