"""Payment ledger: append-only charges and refunds keyed by provider payment id."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import (
    PAYMENT_REFUNDED,
    PAYMENT_SUCCEEDED,
    LicensePayment,
)
from services.audit import log_action
from services.errors import AlreadyProcessed, SemanticError
from utils import utc_now

logger = logging.getLogger(__name__)


def payment_exists(provider: str, provider_payment_id: Optional[str]) -> bool:
    if not provider_payment_id:
        return False
    return (
        db.session.query(LicensePayment.id)
        .filter_by(provider=provider, provider_payment_id=provider_payment_id)
        .first()
        is not None
    )


def get_payment(provider: str, provider_payment_id: str) -> Optional[LicensePayment]:
    return LicensePayment.query.filter_by(
        provider=provider, provider_payment_id=provider_payment_id
    ).first()


def record_payment(payment: LicensePayment) -> LicensePayment:
    """Append *payment* to the ledger.

    ``(provider, provider_payment_id)`` is unique: a redelivered event that
    tries to insert the same payment rolls back the whole unit of work and
    raises ``AlreadyProcessed``.
    """
    if payment.paid_at is None and payment.status == PAYMENT_SUCCEEDED:
        payment.paid_at = utc_now()
    db.session.add(payment)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise AlreadyProcessed("payment", f"{payment.provider}:{payment.provider_payment_id}")
    logger.info(
        "Recorded %s payment %s: %s %s (%s)",
        payment.provider,
        payment.provider_payment_id,
        payment.amount,
        payment.currency,
        payment.status,
    )
    return payment


def record_refund(
    original_id: int,
    amount: Optional[Decimal],
    provider_refund_id: str,
    reason: str = "",
    actor: str = "system",
) -> LicensePayment:
    """Append a Refunded row pointing at the original charge.

    The original row is never modified. *amount* defaults to the full charge.
    """
    original = db.session.get(LicensePayment, original_id)
    if original is None:
        raise SemanticError(f"Payment {original_id} not found")
    if original.status != PAYMENT_SUCCEEDED:
        raise SemanticError(f"Payment {original_id} is {original.status}, cannot refund")
    remaining = original.amount - refunded_total(original.id)
    amount = Decimal(remaining if amount is None else amount)
    if amount <= 0 or amount > remaining:
        raise SemanticError(
            f"Refund amount {amount} outside 0..{remaining} still refundable on payment {original_id}"
        )

    refund = LicensePayment(
        subscription_id=original.subscription_id,
        license_id=original.license_id,
        refund_of_id=original.id,
        provider=original.provider,
        provider_payment_id=provider_refund_id,
        provider_customer_id=original.provider_customer_id,
        status=PAYMENT_REFUNDED,
        payment_type="refund",
        amount=amount,
        currency=original.currency,
        tier=original.tier,
        customer_email=original.customer_email,
        paid_at=utc_now(),
        failure_reason=reason or None,
    )
    record_payment(refund)
    log_action(
        "payment_refunded", "payment", original.id,
        details=f"{amount} {original.currency} as {provider_refund_id}: {reason}",
        actor=actor,
    )
    return refund


def refunded_total(original_id: int) -> Decimal:
    """Sum of refund rows already recorded against a charge."""
    total = (
        db.session.query(func.coalesce(func.sum(LicensePayment.amount), 0))
        .filter(LicensePayment.refund_of_id == original_id)
        .scalar()
    )
    return Decimal(str(total)).quantize(Decimal("0.01"))


def has_one_time_charge(subscription_id: int) -> bool:
    """True when a one-time order behind the subscription was already paid."""
    return (
        db.session.query(LicensePayment.id)
        .filter_by(subscription_id=subscription_id, status=PAYMENT_SUCCEEDED, payment_type="one_time")
        .first()
        is not None
    )


def succeeded_count(subscription_id: int) -> int:
    """Number of successful charges recorded against the subscription."""
    return LicensePayment.query.filter_by(
        subscription_id=subscription_id, status=PAYMENT_SUCCEEDED
    ).count()
