"""Subscription ledger: period, counter and cancellation state of recurring billing."""

from __future__ import annotations

import datetime
import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError

from extensions import db
from models import (
    SUB_ACTIVE,
    SUB_CANCELLED,
    SUB_EXPIRED,
    SUB_PAST_DUE,
    TERMINAL_SUBSCRIPTION_STATUSES,
    LicenseSubscription,
)
from services.audit import log_action
from services.errors import AlreadyProcessed, SemanticError, StalePeriodError
from utils import as_utc, utc_now

logger = logging.getLogger(__name__)


def get_by_provider_id(provider: str, provider_subscription_id: str) -> Optional[LicenseSubscription]:
    if not provider_subscription_id:
        return None
    return LicenseSubscription.query.filter_by(
        provider=provider, provider_subscription_id=provider_subscription_id
    ).first()


def _get_or_raise(subscription_id: int) -> LicenseSubscription:
    sub = db.session.get(LicenseSubscription, subscription_id)
    if sub is None:
        raise SemanticError(f"Subscription {subscription_id} not found")
    return sub


def create_subscription(subscription: LicenseSubscription) -> LicenseSubscription:
    """Insert *subscription*; one row per (provider, provider subscription id).

    On a uniqueness conflict the whole unit of work is rolled back and
    ``AlreadyProcessed`` is raised.
    """
    db.session.add(subscription)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise AlreadyProcessed(
            "subscription", f"{subscription.provider}:{subscription.provider_subscription_id}"
        )
    logger.info(
        "Created %s subscription %s for license %s (period ends %s)",
        subscription.provider,
        subscription.provider_subscription_id,
        subscription.license_id,
        subscription.current_period_end,
    )
    return subscription


def advance_period(
    subscription_id: int,
    new_start: datetime.datetime,
    new_end: datetime.datetime,
) -> LicenseSubscription:
    """Move the subscription to its next billing period.

    ``current_period_end`` never moves backwards: an out-of-order event
    raises ``StalePeriodError``.
    """
    sub = _get_or_raise(subscription_id)
    current_end = as_utc(sub.current_period_end)
    if as_utc(new_end) < current_end:
        raise StalePeriodError(
            f"Subscription {sub.id}: period end {new_end.isoformat()} "
            f"is before current {current_end.isoformat()}"
        )
    sub.current_period_start = new_start
    sub.current_period_end = new_end
    sub.next_payment_date = new_end if sub.auto_renew else None
    db.session.flush()
    return sub


def increment_payment_count(
    subscription_id: int,
    paid_at: Optional[datetime.datetime] = None,
    actor: str = "system",
) -> int:
    """Atomically add one successful payment to the counter and return the new value.

    A successful charge also clears the failure state, so PastDue goes back to Active.
    """
    sub = _get_or_raise(subscription_id)
    # Atomic increment via SQL expression, never read-modify-write
    sub.payment_count = LicenseSubscription.payment_count + 1
    sub.failure_count = 0
    sub.last_failure_reason = None
    sub.last_payment_at = paid_at or utc_now()
    if sub.status not in TERMINAL_SUBSCRIPTION_STATUSES:
        sub.status = SUB_ACTIVE
    db.session.flush()
    db.session.refresh(sub)
    log_action(
        "subscription_payment_counted",
        "subscription",
        sub.id,
        details=f"payment_count={sub.payment_count}",
        actor=actor,
    )
    return sub.payment_count


def record_failure(
    subscription_id: int,
    reason: Optional[str],
    period_end: Optional[datetime.datetime] = None,
) -> bool:
    """Mark the subscription PastDue after a failed charge.

    A failure for a period that already ended (*period_end* earlier than the
    current period end) is stale and ignored. Returns True when applied.
    """
    sub = _get_or_raise(subscription_id)
    if period_end is not None and as_utc(period_end) < as_utc(sub.current_period_end):
        logger.info(
            "Ignoring stale payment failure for subscription %s (period end %s)",
            sub.id, period_end.isoformat(),
        )
        return False
    if sub.status in TERMINAL_SUBSCRIPTION_STATUSES:
        logger.info("Subscription %s is %s, ignoring payment failure", sub.id, sub.status)
        return False

    sub.failure_count = LicenseSubscription.failure_count + 1
    sub.last_failure_reason = reason or "Payment failed"
    sub.status = SUB_PAST_DUE
    db.session.flush()
    db.session.refresh(sub)
    logger.warning(
        "Subscription %s past due (failure #%s): %s",
        sub.id, sub.failure_count, sub.last_failure_reason,
    )
    return True


def cancel_subscription(
    subscription_id: int,
    cancel_at_period_end: bool,
    notify_provider: bool = True,
    actor: str = "system",
    now: Optional[datetime.datetime] = None,
) -> LicenseSubscription:
    """Cancel a subscription, softly (at period end) or immediately.

    Soft cancellation keeps the status Active with auto-renew off, so access
    lasts until ``current_period_end``. The provider is told first; if that
    call fails ``GatewayError`` propagates and nothing changes locally.
    Does not commit.
    """
    sub = _get_or_raise(subscription_id)
    if sub.status in TERMINAL_SUBSCRIPTION_STATUSES:
        logger.info("Subscription %s already %s", sub.id, sub.status)
        return sub

    if notify_provider:
        from services.gateways import get_gateway

        get_gateway(sub.provider).cancel_subscription(
            sub.provider_subscription_id, cancel_at_period_end
        )

    now = now or utc_now()
    sub.cancelled_at = now
    sub.auto_renew = False
    sub.next_payment_date = None
    if cancel_at_period_end:
        sub.cancel_at_period_end = sub.current_period_end
    else:
        sub.status = SUB_CANCELLED
    if sub.license is not None:
        sub.license.auto_renew = False
        sub.license.next_renewal_date = None
    log_action(
        "subscription_cancelled",
        "subscription",
        sub.id,
        details="at period end" if cancel_at_period_end else "immediately",
        actor=actor,
    )
    db.session.flush()
    logger.info(
        "Cancelled subscription %s (%s)",
        sub.id, "at period end" if cancel_at_period_end else "immediately",
    )
    return sub


def expire_lapsed_subscriptions(now: Optional[datetime.datetime] = None) -> int:
    """Expire soft-cancelled subscriptions whose paid period has ended."""
    now = now or utc_now()
    lapsed = LicenseSubscription.query.filter(
        LicenseSubscription.status == SUB_ACTIVE,
        LicenseSubscription.auto_renew.is_(False),
        LicenseSubscription.cancel_at_period_end.isnot(None),
        LicenseSubscription.current_period_end < now,
    ).all()
    for sub in lapsed:
        sub.status = SUB_EXPIRED
        logger.info("Subscription %s expired after soft cancellation", sub.id)
    db.session.commit()
    return len(lapsed)
