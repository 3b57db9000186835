"""License lifecycle service: issuing, extending and evaluating licenses."""

from __future__ import annotations

import base64
import datetime
import hashlib
import logging
import secrets
from typing import Optional

from flask import current_app

from config_models import LicensingConfig
from extensions import db
from models import (
    ADMIN_LICENSE_STATUSES,
    LICENSE_ACTIVE,
    LICENSE_EXPIRED,
    LICENSE_GRACE_PERIOD,
    LICENSE_PENDING_ACTIVATION,
    LICENSE_REVOKED,
    LICENSE_SUSPENDED,
    TIER_KEY_CODES,
    TIER_TRIAL,
    VALID_TIERS,
    License,
)
from services.audit import log_action
from services.errors import LicensingError, SemanticError
from utils import add_interval, as_utc, clean_str, utc_now

logger = logging.getLogger(__name__)

_KEY_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
_MAX_KEY_ATTEMPTS = 10


def _config() -> LicensingConfig:
    return current_app.config["LICENSING_CONFIG"]


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------

def _random_block(length: int = 4) -> str:
    return "".join(secrets.choice(_KEY_ALPHABET) for _ in range(length))


def generate_license_key(tier: str, now: Optional[datetime.datetime] = None) -> str:
    """Build a key such as ``ALG-STD-7KQ2-2610-MZ4P``.

    The tier code only helps humans recognise the key; it grants nothing.
    """
    now = now or utc_now()
    return f"{_config().key_prefix}-{TIER_KEY_CODES[tier]}-{_random_block()}-{now:%y%m}-{_random_block()}"


def _unique_license_key(tier: str, now: datetime.datetime) -> str:
    for _ in range(_MAX_KEY_ATTEMPTS):
        key = generate_license_key(tier, now)
        if not License.query.filter_by(key=key).first():
            return key
        logger.warning("License key collision on %s, regenerating", key)
    raise LicensingError(f"Could not generate a unique {tier} license key")


def mask_license_key(key: Optional[str]) -> Optional[str]:
    """Keep the first and last four characters of *key*, star the rest."""
    if not key or len(key) < 8:
        return key
    return key[:4] + "*" * (len(key) - 8) + key[-4:]


def license_signature(license: License) -> str:
    """Tamper digest over the fields a customer could be tempted to edit."""
    valid_until = as_utc(license.valid_until)
    data = "{}:{}:{}:{}".format(
        license.key,
        license.customer_email,
        license.tier,
        valid_until.isoformat() if valid_until else "",
    )
    return base64.b64encode(hashlib.sha256(data.encode("utf-8")).digest()).decode("ascii")


def get_license_by_key(key: str) -> Optional[License]:
    return License.query.filter_by(key=key).first()


# ---------------------------------------------------------------------------
# Temporal state
# ---------------------------------------------------------------------------

def evaluate_status(license: License, now: Optional[datetime.datetime] = None) -> str:
    """Return the status *license* should have at *now*.

    Administrative states and licenses that were never activated are returned
    unchanged; everything else is derived from ``valid_until`` and the grace window.
    """
    if license.status in ADMIN_LICENSE_STATUSES or license.status == LICENSE_PENDING_ACTIVATION:
        return license.status
    valid_until = as_utc(license.valid_until)
    if valid_until is None:
        return LICENSE_ACTIVE
    now = now or utc_now()
    if now <= valid_until:
        return LICENSE_ACTIVE
    grace_end = valid_until + datetime.timedelta(days=license.grace_period_days or 0)
    if now <= grace_end:
        return LICENSE_GRACE_PERIOD
    return LICENSE_EXPIRED


def refresh_license_status(license: License, now: Optional[datetime.datetime] = None) -> bool:
    """Store the computed status on *license*. Returns True if it changed."""
    status = evaluate_status(license, now)
    if status == license.status:
        return False
    logger.info("License %s: %s -> %s", license.id, license.status, status)
    license.status = status
    return True


def refresh_all_statuses(now: Optional[datetime.datetime] = None) -> int:
    """Move lapsed licenses to GracePeriod/Expired. Should be run periodically."""
    now = now or utc_now()
    changed = 0
    candidates = License.query.filter(
        License.status.in_((LICENSE_ACTIVE, LICENSE_GRACE_PERIOD)),
        License.valid_until.isnot(None),
        License.valid_until < now,
    ).all()
    for license in candidates:
        if refresh_license_status(license, now):
            changed += 1
    db.session.commit()
    return changed


# ---------------------------------------------------------------------------
# Issuance & renewal
# ---------------------------------------------------------------------------

def issue_license(
    tier: str,
    email: str,
    name: str,
    company: Optional[str],
    domain: Optional[str],
    provider: str,
    external_subscription_id: Optional[str] = None,
    now: Optional[datetime.datetime] = None,
) -> License:
    """Create an Active license for a confirmed payment.

    Does not commit and does not check for duplicates: callers establish
    idempotency through the payment and subscription ledgers.
    """
    if tier not in VALID_TIERS:
        raise SemanticError(f"Unknown license tier: {tier!r}")
    email = clean_str(email)
    if not email:
        raise SemanticError("Cannot issue a license without a customer email")

    cfg = _config()
    policy = cfg.tier_policies[tier]
    now = now or utc_now()
    if tier == TIER_TRIAL:
        valid_until = now + datetime.timedelta(days=cfg.trial_days)
    else:
        valid_until = add_interval(now, cfg.billing_interval)

    license = License(
        key=_unique_license_key(tier, now),
        tier=tier,
        status=LICENSE_ACTIVE,
        customer_email=email,
        customer_name=clean_str(name) or "Customer",
        company=clean_str(company),
        licensed_domains=clean_str(domain),
        valid_from=now,
        valid_until=valid_until,
        grace_period_days=cfg.grace_period_days,
        max_stores=policy.max_stores,
        max_products=policy.max_products,
        max_orders_per_month=policy.max_orders_per_month,
        max_admin_users=policy.max_admin_users,
        max_activations=policy.max_activations,
        auto_renew=tier != TIER_TRIAL,
        payment_processor=provider,
        external_subscription_id=external_subscription_id,
        next_renewal_date=valid_until if tier != TIER_TRIAL else None,
        renewal_amount=cfg.prices.get(tier),
    )
    license.features = policy.features
    license.signature = license_signature(license)
    db.session.add(license)
    db.session.flush()
    logger.info(
        "Issued license %s for %s, tier %s, valid until %s",
        license.key, email, tier, valid_until.isoformat(),
    )
    return license


def extend_license(
    license_id: int,
    now: Optional[datetime.datetime] = None,
    interval: Optional[str] = None,
) -> Optional[License]:
    """Add one billing interval to the license's existing ``valid_until``.

    *interval* is the subscription's own interval; the configured one is used
    when it is not given. Returns None when the license does not exist.
    """
    license = db.session.get(License, license_id)
    if license is None:
        logger.warning("Cannot extend license %s: not found", license_id)
        return None
    valid_until = as_utc(license.valid_until)
    if valid_until is None:
        logger.info("License %s has no expiry, nothing to extend", license.id)
        return license

    license.valid_until = add_interval(valid_until, interval or _config().billing_interval)
    license.next_renewal_date = license.valid_until
    if license.status == LICENSE_PENDING_ACTIVATION:
        license.status = LICENSE_ACTIVE
    refresh_license_status(license, now)
    license.signature = license_signature(license)
    db.session.flush()
    logger.info("Extended license %s until %s", license.id, license.valid_until.isoformat())
    return license


# ---------------------------------------------------------------------------
# Administrative transitions
# ---------------------------------------------------------------------------

def _get_or_raise(license_id: int) -> License:
    license = db.session.get(License, license_id)
    if license is None:
        raise SemanticError(f"License {license_id} not found")
    return license


def _admin_transition(
    license_id: int,
    target: str,
    allowed_from: set[str],
    reason: str,
    actor: str,
) -> License:
    license = _get_or_raise(license_id)
    if license.status not in allowed_from:
        raise SemanticError(
            f"License {license.id} cannot move from {license.status} to {target}"
        )
    previous = license.status
    license.status = target
    license.notes = f"{target}: {reason} at {utc_now():%Y-%m-%d %H:%M:%S}Z"
    log_action(
        f"license_{target}",
        "license",
        license.id,
        details=f"{previous} -> {target}: {reason}",
        actor=actor,
    )
    db.session.commit()
    logger.info("License %s %s -> %s by %s (%s)", license.id, previous, target, actor, reason)
    return license


def suspend_license(license_id: int, reason: str, actor: str = "admin") -> License:
    return _admin_transition(
        license_id, LICENSE_SUSPENDED, {LICENSE_ACTIVE, LICENSE_GRACE_PERIOD}, reason, actor
    )


def revoke_license(license_id: int, reason: str, actor: str = "admin") -> License:
    return _admin_transition(
        license_id,
        LICENSE_REVOKED,
        {LICENSE_ACTIVE, LICENSE_GRACE_PERIOD, LICENSE_SUSPENDED},
        reason,
        actor,
    )


def reactivate_license(license_id: int, actor: str = "admin") -> License:
    """Lift a suspension; the license lands in whatever state its dates imply."""
    license = _get_or_raise(license_id)
    if license.status != LICENSE_SUSPENDED:
        raise SemanticError(f"License {license.id} is {license.status}, not suspended")
    license.status = LICENSE_ACTIVE
    refresh_license_status(license)
    license.signature = license_signature(license)
    log_action(
        "license_reactivated", "license", license.id,
        details=f"suspended -> {license.status}", actor=actor,
    )
    db.session.commit()
    logger.info("Reactivated license %s (%s) by %s", license.id, license.status, actor)
    return license
