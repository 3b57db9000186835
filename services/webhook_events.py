"""Versioned webhook event DTOs and the per-provider parsers that build them.

Only the fields the license engine acts on are extracted from the provider
JSON; nothing downstream touches raw payloads or SDK objects. Bump
``DTO_VERSION`` when a field changes meaning.
"""

from __future__ import annotations

import datetime
import enum
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

from models import PROVIDER_RAZORPAY, PROVIDER_STRIPE
from services.errors import PayloadError
from utils import clean_str, from_timestamp, minor_to_decimal

DTO_VERSION = 1


class EventKind(enum.Enum):
    PURCHASE_COMPLETED = "purchase_completed"
    RENEWAL_PAID = "renewal_paid"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"


EVENT_KINDS: dict[tuple[str, str], EventKind] = {
    (PROVIDER_STRIPE, "checkout.session.completed"): EventKind.PURCHASE_COMPLETED,
    (PROVIDER_STRIPE, "invoice.paid"): EventKind.RENEWAL_PAID,
    (PROVIDER_STRIPE, "invoice.payment_failed"): EventKind.PAYMENT_FAILED,
    (PROVIDER_STRIPE, "customer.subscription.deleted"): EventKind.SUBSCRIPTION_CANCELLED,
    (PROVIDER_RAZORPAY, "order.paid"): EventKind.PURCHASE_COMPLETED,
    (PROVIDER_RAZORPAY, "subscription.charged"): EventKind.RENEWAL_PAID,
    (PROVIDER_RAZORPAY, "payment.failed"): EventKind.PAYMENT_FAILED,
    (PROVIDER_RAZORPAY, "subscription.cancelled"): EventKind.SUBSCRIPTION_CANCELLED,
}


# ---------------------------------------------------------------------------
# DTOs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WebhookEnvelope:
    provider: str
    event_type: str
    event_id: Optional[str]
    kind: Optional[EventKind]
    body: dict


@dataclass(frozen=True)
class PurchaseCompleted:
    """A first payment that should result in a new license."""
    provider: str
    payment_id: str
    subscription_id: str  # provider subscription id, or the order id for one-time purchases
    tier: Optional[str]
    email: Optional[str]
    name: Optional[str] = None
    company: Optional[str] = None
    domain: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    customer_id: Optional[str] = None
    invoice_id: Optional[str] = None
    order_id: Optional[str] = None
    auto_renew: bool = True
    card_brand: Optional[str] = None
    card_last4: Optional[str] = None


@dataclass(frozen=True)
class RenewalPaid:
    provider: str
    subscription_id: str
    payment_id: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    invoice_id: Optional[str] = None
    period_start: Optional[datetime.datetime] = None
    period_end: Optional[datetime.datetime] = None
    paid_at: Optional[datetime.datetime] = None
    receipt_url: Optional[str] = None
    invoice_url: Optional[str] = None


@dataclass(frozen=True)
class PaymentFailed:
    provider: str
    subscription_id: Optional[str]
    payment_id: Optional[str]
    reason: str
    period_end: Optional[datetime.datetime] = None


@dataclass(frozen=True)
class SubscriptionCancelled:
    provider: str
    subscription_id: str


WebhookEvent = Union[PurchaseCompleted, RenewalPaid, PaymentFailed, SubscriptionCancelled]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _obj(value) -> dict:
    return value if isinstance(value, dict) else {}


def _require(value, what: str) -> str:
    value = clean_str(value)
    if not value:
        raise PayloadError(f"Missing {what}")
    return value


def _amount(raw) -> Optional[Decimal]:
    if raw in (None, ""):
        return None
    try:
        return minor_to_decimal(raw)
    except (ValueError, TypeError, ArithmeticError) as e:
        raise PayloadError(f"Invalid amount {raw!r}") from e


def _currency(raw) -> Optional[str]:
    raw = clean_str(raw)
    return raw.upper() if raw else None


def _ref(value) -> Optional[str]:
    """Stripe fields hold either an id or an expanded object."""
    if isinstance(value, dict):
        return clean_str(value.get("id"))
    return clean_str(value)


def parse_envelope(provider: str, body: dict, event_id_header: Optional[str] = None) -> WebhookEnvelope:
    event_type = body.get("type") if provider == PROVIDER_STRIPE else body.get("event")
    if not isinstance(event_type, str) or not event_type:
        raise PayloadError("Event type missing")
    if provider == PROVIDER_STRIPE:
        event_id = clean_str(body.get("id"))
    else:
        # Razorpay sends the event id only as a header.
        event_id = clean_str(event_id_header) or clean_str(body.get("id"))
    return WebhookEnvelope(
        provider=provider,
        event_type=event_type,
        event_id=event_id,
        kind=EVENT_KINDS.get((provider, event_type)),
        body=body,
    )


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------

def _stripe_object(body: dict) -> dict:
    obj = _obj(_obj(body.get("data")).get("object"))
    if not obj:
        raise PayloadError("Stripe event has no data.object")
    return obj


def _stripe_invoice_subscription(invoice: dict) -> Optional[str]:
    sub = _ref(invoice.get("subscription"))
    if sub:
        return sub
    # Newer API versions moved the reference under ``parent``.
    details = _obj(_obj(invoice.get("parent")).get("subscription_details"))
    return _ref(details.get("subscription"))


def _stripe_line_period(invoice: dict) -> tuple[Optional[datetime.datetime], Optional[datetime.datetime]]:
    lines = _obj(invoice.get("lines")).get("data") or []
    if lines and isinstance(lines[0], dict):
        period = _obj(lines[0].get("period"))
        return from_timestamp(period.get("start")), from_timestamp(period.get("end"))
    return from_timestamp(invoice.get("period_start")), from_timestamp(invoice.get("period_end"))


def _stripe_checkout_completed(obj: dict) -> Optional[PurchaseCompleted]:
    if obj.get("payment_status") == "unpaid":
        return None
    metadata = _obj(obj.get("metadata"))
    details = _obj(obj.get("customer_details"))
    session_id = _require(obj.get("id"), "checkout session id")
    subscription_id = _ref(obj.get("subscription")) or session_id
    return PurchaseCompleted(
        provider=PROVIDER_STRIPE,
        payment_id=_ref(obj.get("invoice")) or _ref(obj.get("payment_intent")) or session_id,
        subscription_id=subscription_id,
        tier=clean_str(metadata.get("tier")),
        email=clean_str(obj.get("customer_email")) or clean_str(details.get("email")),
        name=clean_str(metadata.get("customer_name")) or clean_str(details.get("name")),
        company=clean_str(metadata.get("company_name")),
        domain=clean_str(metadata.get("domain")),
        amount=_amount(obj.get("amount_total")),
        currency=_currency(obj.get("currency")),
        customer_id=_ref(obj.get("customer")),
        invoice_id=_ref(obj.get("invoice")),
        auto_renew=subscription_id != session_id,
    )


def _stripe_invoice_paid(obj: dict) -> Optional[RenewalPaid]:
    # The first invoice of a subscription is covered by checkout.session.completed.
    if obj.get("billing_reason") != "subscription_cycle":
        return None
    subscription_id = _stripe_invoice_subscription(obj)
    if not subscription_id:
        return None
    invoice_id = _require(obj.get("id"), "invoice id")
    period_start, period_end = _stripe_line_period(obj)
    transitions = _obj(obj.get("status_transitions"))
    return RenewalPaid(
        provider=PROVIDER_STRIPE,
        subscription_id=subscription_id,
        payment_id=invoice_id,
        invoice_id=invoice_id,
        amount=_amount(obj.get("amount_paid")),
        currency=_currency(obj.get("currency")),
        period_start=period_start,
        period_end=period_end,
        paid_at=from_timestamp(transitions.get("paid_at")),
        invoice_url=clean_str(obj.get("hosted_invoice_url")),
        receipt_url=clean_str(obj.get("invoice_pdf")),
    )


def _stripe_payment_failed(obj: dict) -> PaymentFailed:
    invoice_id = clean_str(obj.get("id"))
    _, period_end = _stripe_line_period(obj)
    return PaymentFailed(
        provider=PROVIDER_STRIPE,
        subscription_id=_stripe_invoice_subscription(obj),
        payment_id=invoice_id,
        reason=f"Invoice {invoice_id} payment failed (attempt {obj.get('attempt_count') or 1})",
        period_end=period_end,
    )


def _stripe_subscription_deleted(obj: dict) -> SubscriptionCancelled:
    return SubscriptionCancelled(
        provider=PROVIDER_STRIPE,
        subscription_id=_require(obj.get("id"), "subscription id"),
    )


# ---------------------------------------------------------------------------
# Razorpay
# ---------------------------------------------------------------------------

def _razorpay_entity(body: dict, name: str) -> dict:
    return _obj(_obj(_obj(body.get("payload")).get(name)).get("entity"))


def _razorpay_order_paid(body: dict) -> PurchaseCompleted:
    payment = _razorpay_entity(body, "payment")
    order = _razorpay_entity(body, "order")
    if not payment:
        raise PayloadError("Razorpay order.paid without payment entity")
    notes = {**_obj(payment.get("notes")), **_obj(order.get("notes"))}
    order_id = _require(order.get("id") or payment.get("order_id"), "order id")
    card = _obj(payment.get("card"))
    return PurchaseCompleted(
        provider=PROVIDER_RAZORPAY,
        payment_id=_require(payment.get("id"), "payment id"),
        subscription_id=order_id,
        order_id=order_id,
        tier=clean_str(notes.get("tier")),
        email=clean_str(notes.get("customer_email")) or clean_str(payment.get("email")),
        name=clean_str(notes.get("customer_name")),
        company=clean_str(notes.get("company_name")),
        domain=clean_str(notes.get("domain")),
        amount=_amount(payment.get("amount")),
        currency=_currency(payment.get("currency")),
        customer_id=clean_str(payment.get("customer_id")),
        auto_renew=False,
        card_brand=clean_str(card.get("network")),
        card_last4=clean_str(card.get("last4")),
    )


def _razorpay_subscription_charged(body: dict) -> RenewalPaid:
    subscription = _razorpay_entity(body, "subscription")
    payment = _razorpay_entity(body, "payment")
    payment_id = _require(payment.get("id"), "payment id")
    return RenewalPaid(
        provider=PROVIDER_RAZORPAY,
        subscription_id=_require(subscription.get("id"), "subscription id"),
        payment_id=payment_id,
        invoice_id=clean_str(payment.get("invoice_id")),
        amount=_amount(payment.get("amount")),
        currency=_currency(payment.get("currency")),
        period_start=from_timestamp(subscription.get("current_start")),
        period_end=from_timestamp(subscription.get("current_end")),
        paid_at=from_timestamp(payment.get("created_at")),
    )


def _razorpay_payment_failed(body: dict) -> PaymentFailed:
    payment = _razorpay_entity(body, "payment")
    reason = clean_str(payment.get("error_description")) or clean_str(payment.get("error_reason"))
    return PaymentFailed(
        provider=PROVIDER_RAZORPAY,
        subscription_id=clean_str(payment.get("subscription_id")) or clean_str(payment.get("order_id")),
        payment_id=clean_str(payment.get("id")),
        reason=reason or "Payment failed",
    )


def _razorpay_subscription_cancelled(body: dict) -> SubscriptionCancelled:
    subscription = _razorpay_entity(body, "subscription")
    return SubscriptionCancelled(
        provider=PROVIDER_RAZORPAY,
        subscription_id=_require(subscription.get("id"), "subscription id"),
    )


_PARSERS = {
    (PROVIDER_STRIPE, EventKind.PURCHASE_COMPLETED): lambda b: _stripe_checkout_completed(_stripe_object(b)),
    (PROVIDER_STRIPE, EventKind.RENEWAL_PAID): lambda b: _stripe_invoice_paid(_stripe_object(b)),
    (PROVIDER_STRIPE, EventKind.PAYMENT_FAILED): lambda b: _stripe_payment_failed(_stripe_object(b)),
    (PROVIDER_STRIPE, EventKind.SUBSCRIPTION_CANCELLED): lambda b: _stripe_subscription_deleted(_stripe_object(b)),
    (PROVIDER_RAZORPAY, EventKind.PURCHASE_COMPLETED): _razorpay_order_paid,
    (PROVIDER_RAZORPAY, EventKind.RENEWAL_PAID): _razorpay_subscription_charged,
    (PROVIDER_RAZORPAY, EventKind.PAYMENT_FAILED): _razorpay_payment_failed,
    (PROVIDER_RAZORPAY, EventKind.SUBSCRIPTION_CANCELLED): _razorpay_subscription_cancelled,
}


def parse_event(envelope: WebhookEnvelope) -> Optional[WebhookEvent]:
    """Build the DTO for a mapped event.

    Returns None for events of a known type that need no action (for example
    a Stripe invoice that opened a subscription). Raises ``PayloadError`` when
    a required identifier is missing.
    """
    if envelope.kind is None:
        return None
    return _PARSERS[(envelope.provider, envelope.kind)](envelope.body)
