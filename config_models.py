from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional


@dataclass
class AppConfig:
    name: str
    secret_key: str
    base_url: str


@dataclass
class EmailConfig:
    enabled: bool
    smtp_host: str
    smtp_port: int
    smtp_user: str
    smtp_password: str
    sender: str
    operator_cc: str


@dataclass
class StripeConfig:
    enabled: bool
    secret_key: str
    publishable_key: str
    webhook_secret: str
    currency: str


@dataclass
class RazorpayConfig:
    enabled: bool
    key_id: str
    key_secret: str
    webhook_secret: str
    currency: str
    exchange_rate: Decimal


@dataclass
class TierPolicy:
    """Quotas and feature set granted to one license tier (None = unlimited)."""

    max_stores: Optional[int]
    max_products: Optional[int]
    max_orders_per_month: Optional[int]
    max_admin_users: Optional[int]
    max_activations: int
    features: list[str] = field(default_factory=list)


@dataclass
class LicensingConfig:
    key_prefix: str
    billing_interval: str
    trial_days: int
    grace_period_days: int
    pending_checkout_ttl_minutes: int
    notification_workers: int
    prices: dict[str, Decimal]
    tier_policies: dict[str, TierPolicy]
