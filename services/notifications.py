"""Lifecycle notification emails, sent off the request thread after commit."""

from __future__ import annotations

import datetime
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from flask import current_app

from config_models import EmailConfig
from mailer import MailerError, send_email
from services.licensing import mask_license_key
from utils import as_utc

logger = logging.getLogger(__name__)

NOTICE_PURCHASE_CONFIRMED = "purchase_confirmed"
NOTICE_LICENSE_RENEWED = "license_renewed"
NOTICE_PAYMENT_FAILED = "payment_failed"
NOTICE_SUBSCRIPTION_CANCELLED = "subscription_cancelled"


@dataclass(frozen=True)
class Notice:
    """Plain snapshot of what an email needs; safe to hand to another thread."""
    kind: str
    email: str
    name: str
    tier: str
    license_key: Optional[str] = None
    valid_until: Optional[datetime.datetime] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    reason: Optional[str] = None


def license_notice(kind: str, license, **extra) -> Notice:
    """Snapshot *license* into a ``Notice`` while the session is still open."""
    return Notice(
        kind=kind,
        email=license.customer_email,
        name=license.customer_name,
        tier=license.tier,
        license_key=license.key,
        valid_until=as_utc(license.valid_until),
        **extra,
    )


def _fmt_date(value: Optional[datetime.datetime]) -> str:
    return value.strftime("%Y-%m-%d") if value else "no expiry"


class Notifier:
    """Renders and sends one email per lifecycle notice."""

    def __init__(self, email_config: EmailConfig, app_name: str):
        self.email_config = email_config
        self.app_name = app_name

    def send(self, notice: Notice) -> None:
        if not self.email_config.enabled:
            logger.info("Email disabled, not sending %s to %s", notice.kind, notice.email)
            return
        subject, body = getattr(self, notice.kind)(notice)
        send_email(self.email_config, subject, notice.email, self.email_config.operator_cc, body)

    def purchase_confirmed(self, notice: Notice) -> tuple[str, str]:
        return (
            f"Your {self.app_name} {notice.tier} license",
            f"Hello {notice.name},\n\n"
            f"Thank you for your purchase. Your license key is:\n\n"
            f"    {notice.license_key}\n\n"
            f"It is valid until {_fmt_date(notice.valid_until)}.\n"
            f"Enter the key in your store's backoffice to activate it.\n",
        )

    def license_renewed(self, notice: Notice) -> tuple[str, str]:
        paid = f" We received {notice.amount} {notice.currency}." if notice.amount is not None else ""
        return (
            f"{self.app_name} license renewed",
            f"Hello {notice.name},\n\n"
            f"Your {notice.tier} license {mask_license_key(notice.license_key)} "
            f"has been renewed until {_fmt_date(notice.valid_until)}.{paid}\n",
        )

    def payment_failed(self, notice: Notice) -> tuple[str, str]:
        return (
            f"{self.app_name}: payment failed",
            f"Hello {notice.name},\n\n"
            f"We could not collect the renewal payment for license "
            f"{mask_license_key(notice.license_key)}.\n"
            f"Reason: {notice.reason or 'unknown'}\n\n"
            f"Please update your payment method before {_fmt_date(notice.valid_until)} "
            f"to keep your license active.\n",
        )

    def subscription_cancelled(self, notice: Notice) -> tuple[str, str]:
        return (
            f"{self.app_name} subscription cancelled",
            f"Hello {notice.name},\n\n"
            f"Your subscription for license {mask_license_key(notice.license_key)} "
            f"has been cancelled. The license stays valid until "
            f"{_fmt_date(notice.valid_until)} and will not renew.\n",
        )


class NotificationDispatcher:
    """Fire-and-forget delivery on a small thread pool."""

    def __init__(self, notifier: Notifier, max_workers: int = 2):
        self.notifier = notifier
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="notify"
        )

    def dispatch(self, notices: Iterable[Notice]) -> None:
        for notice in notices:
            self._executor.submit(self._deliver, notice)

    def _deliver(self, notice: Notice) -> None:
        try:
            self.notifier.send(notice)
        except MailerError as e:
            logger.error("Could not send %s email to %s: %s", notice.kind, notice.email, e)
        except Exception:
            logger.exception("Unexpected error sending %s email to %s", notice.kind, notice.email)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def dispatch_notices(notices: Iterable[Notice]) -> None:
    """Hand *notices* to the app's dispatcher. Call only after commit."""
    notices = list(notices)
    if not notices:
        return
    current_app.config["NOTIFICATION_DISPATCHER"].dispatch(notices)
