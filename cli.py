#!/usr/bin/env python3
"""Administrative CLI for licenses and subscriptions.

Usage:
    python cli.py --help
    python cli.py refresh-status
    python cli.py suspend 42 --reason "chargeback"
    python cli.py issue-trial jane@example.com "Jane Doe"
"""

from __future__ import annotations

import contextlib
import sys
from decimal import Decimal, InvalidOperation
from typing import Optional

import click
from flask import has_app_context

from extensions import db


def get_app_context():
    """Get a Flask application context, reusing the current one if present."""
    if has_app_context():
        return contextlib.nullcontext()
    from app import create_app
    app = create_app()
    return app.app_context()


def _fail(message: str):
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


# ---------------------------------------------------------------------------
# Click CLI Group
# ---------------------------------------------------------------------------

@click.group()
def cli():
    """License portal maintenance tools."""
    pass


# ---------------------------------------------------------------------------
# Status maintenance
# ---------------------------------------------------------------------------

@cli.command("refresh-status")
def refresh_status():
    """Move lapsed licenses to grace period / expired and expire ended subscriptions."""
    with get_app_context():
        from services.licensing import refresh_all_statuses
        from services.subscriptions import expire_lapsed_subscriptions

        licenses = refresh_all_statuses()
        subs = expire_lapsed_subscriptions()
        click.echo(f"Updated {licenses} license(s), expired {subs} subscription(s)")


@cli.command("purge-pending-checkouts")
def purge_pending_checkouts():
    """Delete pending checkouts past their expiry."""
    with get_app_context():
        from services.pending_checkouts import purge_expired

        click.echo(f"Purged {purge_expired()} expired pending checkout(s)")


# ---------------------------------------------------------------------------
# License administration
# ---------------------------------------------------------------------------

@cli.command()
@click.argument("key")
def show(key: str):
    """Show a license by key."""
    with get_app_context():
        from services.licensing import evaluate_status, get_license_by_key, mask_license_key

        license = get_license_by_key(key)
        if license is None:
            _fail(f"License {mask_license_key(key)} not found")
        click.echo(f"License:     {mask_license_key(license.key)} (id {license.id})")
        click.echo(f"Tier:        {license.tier}")
        click.echo(f"Customer:    {license.customer_name} <{license.customer_email}>")
        click.echo(f"Status:      {license.status} (computed: {evaluate_status(license)})")
        click.echo(f"Valid until: {license.valid_until or 'unlimited'}")
        click.echo(f"Features:    {', '.join(license.features)}")


@cli.command()
@click.argument("license_id", type=int)
@click.option("--reason", required=True, help="Why the license is suspended")
def suspend(license_id: int, reason: str):
    """Suspend a license."""
    with get_app_context():
        from services.errors import LicensingError
        from services.licensing import suspend_license

        try:
            license = suspend_license(license_id, reason, actor="cli")
        except LicensingError as e:
            _fail(str(e))
        click.echo(f"License {license.id} is now {license.status}")


@cli.command()
@click.argument("license_id", type=int)
@click.option("--reason", required=True, help="Why the license is revoked")
def revoke(license_id: int, reason: str):
    """Revoke a license permanently."""
    with get_app_context():
        from services.errors import LicensingError
        from services.licensing import revoke_license

        try:
            license = revoke_license(license_id, reason, actor="cli")
        except LicensingError as e:
            _fail(str(e))
        click.echo(f"License {license.id} is now {license.status}")


@cli.command()
@click.argument("license_id", type=int)
def reactivate(license_id: int):
    """Lift a suspension."""
    with get_app_context():
        from services.errors import LicensingError
        from services.licensing import reactivate_license

        try:
            license = reactivate_license(license_id, actor="cli")
        except LicensingError as e:
            _fail(str(e))
        click.echo(f"License {license.id} is now {license.status}")


@cli.command("issue-trial")
@click.argument("email")
@click.argument("name")
@click.option("--company", default=None)
@click.option("--domain", default=None)
def issue_trial(email: str, name: str, company: Optional[str], domain: Optional[str]):
    """Issue a trial license without a payment."""
    with get_app_context():
        from models import PROVIDER_MANUAL, TIER_TRIAL
        from services.audit import log_action
        from services.errors import LicensingError
        from services.licensing import issue_license
        from services.notifications import (
            NOTICE_PURCHASE_CONFIRMED,
            dispatch_notices,
            license_notice,
        )

        try:
            license = issue_license(TIER_TRIAL, email, name, company, domain, PROVIDER_MANUAL)
        except LicensingError as e:
            db.session.rollback()
            _fail(str(e))
        log_action("license_issued", "license", license.id, details="trial", actor="cli")
        db.session.commit()
        dispatch_notices([license_notice(NOTICE_PURCHASE_CONFIRMED, license)])
        click.echo(f"Issued trial license {license.key} valid until {license.valid_until}")


# ---------------------------------------------------------------------------
# Billing administration
# ---------------------------------------------------------------------------

@cli.command("cancel-subscription")
@click.argument("subscription_id", type=int)
@click.option("--immediately", is_flag=True, help="End access now instead of at period end")
@click.option("--local-only", is_flag=True, help="Do not call the payment provider")
def cancel_subscription(subscription_id: int, immediately: bool, local_only: bool):
    """Cancel a subscription (at period end unless --immediately)."""
    with get_app_context():
        from services.errors import LicensingError
        from services.notifications import (
            NOTICE_SUBSCRIPTION_CANCELLED,
            dispatch_notices,
            license_notice,
        )
        from services.subscriptions import cancel_subscription as cancel

        try:
            sub = cancel(
                subscription_id,
                cancel_at_period_end=not immediately,
                notify_provider=not local_only,
                actor="cli",
            )
        except LicensingError as e:
            db.session.rollback()
            _fail(str(e))
        notice = license_notice(NOTICE_SUBSCRIPTION_CANCELLED, sub.license)
        db.session.commit()
        dispatch_notices([notice])
        click.echo(f"Subscription {sub.id}: status {sub.status}, auto-renew {sub.auto_renew}")


@cli.command("record-refund")
@click.argument("payment_id", type=int)
@click.option("--refund-id", required=True, help="Provider refund id")
@click.option("--amount", default=None, help="Refund amount (defaults to the full charge)")
@click.option("--reason", default="", help="Refund reason")
def record_refund(payment_id: int, refund_id: str, amount: Optional[str], reason: str):
    """Append a refund row for a recorded payment."""
    with get_app_context():
        from services.errors import LicensingError
        from services.payments import record_refund as refund

        try:
            value = Decimal(amount) if amount is not None else None
        except InvalidOperation:
            _fail(f"Invalid amount: {amount}")
        try:
            row = refund(payment_id, value, refund_id, reason, actor="cli")
        except LicensingError as e:
            db.session.rollback()
            _fail(str(e))
        db.session.commit()
        click.echo(f"Recorded refund {row.provider_payment_id}: {row.amount} {row.currency}")


if __name__ == "__main__":
    cli()
