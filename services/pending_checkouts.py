"""Pending checkout store keyed by the provider's order id.

Customer details captured when an order is created are needed later by a
server-to-server webhook, which has no browser session, so they live in the
database with an expiry.
"""

from __future__ import annotations

import datetime
import logging
from decimal import Decimal
from typing import Optional

from flask import current_app

from extensions import db
from models import PendingCheckout
from utils import as_utc, utc_now

logger = logging.getLogger(__name__)


def save_pending_checkout(
    provider: str,
    order_id: str,
    tier: str,
    email: str,
    name: str,
    company: Optional[str],
    domain: Optional[str],
    amount: Decimal,
    currency: str,
) -> PendingCheckout:
    ttl = current_app.config["LICENSING_CONFIG"].pending_checkout_ttl_minutes
    pending = PendingCheckout(
        provider=provider,
        order_id=order_id,
        tier=tier,
        customer_email=email,
        customer_name=name,
        company=company,
        domain=domain,
        amount=amount,
        currency=currency,
        expires_at=utc_now() + datetime.timedelta(minutes=ttl),
    )
    db.session.add(pending)
    db.session.commit()
    logger.info("Stored pending %s checkout %s for %s (%s)", provider, order_id, email, tier)
    return pending


def get_pending_checkout(
    provider: str, order_id: str, now: Optional[datetime.datetime] = None
) -> Optional[PendingCheckout]:
    """Return the live pending checkout, or None if unknown or expired."""
    pending = PendingCheckout.query.filter_by(provider=provider, order_id=order_id).first()
    if pending is None:
        return None
    if as_utc(pending.expires_at) < (now or utc_now()):
        logger.info("Pending %s checkout %s expired", provider, order_id)
        return None
    return pending


def discard_pending_checkout(provider: str, order_id: str) -> None:
    """Delete the pending row once its purchase is fulfilled. Does not commit."""
    PendingCheckout.query.filter_by(provider=provider, order_id=order_id).delete()


def purge_expired(now: Optional[datetime.datetime] = None) -> int:
    deleted = PendingCheckout.query.filter(
        PendingCheckout.expires_at < (now or utc_now())
    ).delete()
    db.session.commit()
    return deleted
