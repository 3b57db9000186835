"""Configuration loading: YAML file plus environment-variable overrides."""

from __future__ import annotations

import logging
import os
import secrets
from decimal import Decimal, InvalidOperation

import yaml

from config_models import (
    AppConfig,
    EmailConfig,
    LicensingConfig,
    RazorpayConfig,
    StripeConfig,
    TierPolicy,
)

logger = logging.getLogger(__name__)

_BASE_FEATURES = [
    "gift_cards",
    "returns",
    "email_templates",
    "audit_logging",
    "webhooks",
    "api_access",
]
_STANDARD_FEATURES = _BASE_FEATURES + [
    "advanced_reporting",
    "multi_currency",
    "import_export",
    "advanced_discounts",
]
_ENTERPRISE_FEATURES = ["multi_store"] + _STANDARD_FEATURES + [
    "white_labeling",
    "priority_support",
    "b2b_features",
    "subscriptions",
    "custom_integrations",
]

DEFAULT_TIER_POLICIES = {
    "Trial": {
        "max_stores": 1,
        "max_products": 100,
        "max_orders_per_month": 50,
        "max_admin_users": 2,
        "max_activations": 1,
        "features": _BASE_FEATURES,
    },
    "Standard": {
        "max_stores": 1,
        "max_products": None,
        "max_orders_per_month": None,
        "max_admin_users": 5,
        "max_activations": 1,
        "features": _STANDARD_FEATURES,
    },
    "Enterprise": {
        "max_stores": None,
        "max_products": None,
        "max_orders_per_month": None,
        "max_admin_users": None,
        "max_activations": 5,
        "features": _ENTERPRISE_FEATURES,
    },
}

DEFAULT_PRICES = {"Trial": "0", "Standard": "299.00", "Enterprise": "999.00"}


def _env_bool(name: str, fallback) -> bool:
    return os.environ.get(name, str(fallback)).lower() in ("true", "1", "yes")


def _to_decimal(value, default: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        logger.warning("Could not convert %r to Decimal, using default %s", value, default)
        return Decimal(default)


def _load_tier_policies(raw: dict) -> dict[str, TierPolicy]:
    """Merge tier overrides from config.yaml over the built-in policy table."""
    policies = {}
    for tier, defaults in DEFAULT_TIER_POLICIES.items():
        merged = {**defaults, **(raw.get(tier) or {})}
        policies[tier] = TierPolicy(
            max_stores=merged["max_stores"],
            max_products=merged["max_products"],
            max_orders_per_month=merged["max_orders_per_month"],
            max_admin_users=merged["max_admin_users"],
            max_activations=int(merged["max_activations"]),
            features=list(merged["features"]),
        )
    return policies


def load_config():
    """Load configuration from *config.yaml* with env-var overrides.

    Environment variables take precedence over config.yaml values.
    Returns (AppConfig, EmailConfig, StripeConfig, RazorpayConfig,
    LicensingConfig, database_uri).
    """
    config_path = os.environ.get("CONFIG_PATH", "config.yaml")
    raw: dict = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

    app_cfg = raw.get("app", {})
    email_cfg = raw.get("email", {})
    stripe_cfg = raw.get("stripe", {})
    razorpay_cfg = raw.get("razorpay", {})
    lic_cfg = raw.get("licensing", {})
    db_cfg = raw.get("database", {})

    secret_key = os.environ.get("APP_SECRET_KEY", app_cfg.get("secret_key", ""))
    if not secret_key or secret_key == "change-me":
        secret_key = secrets.token_hex(32)
        logger.warning(
            "Using auto-generated secret key. Set APP_SECRET_KEY env var "
            "or app.secret_key in config.yaml for stable sessions across restarts."
        )

    price_cfg = {**DEFAULT_PRICES, **(lic_cfg.get("prices") or {})}
    prices = {tier: _to_decimal(value, "0") for tier, value in price_cfg.items()}

    razorpay_key_secret = os.environ.get(
        "RAZORPAY_KEY_SECRET", razorpay_cfg.get("key_secret", "")
    )

    return (
        AppConfig(
            name=app_cfg.get("name", "Algora License Portal"),
            secret_key=secret_key,
            base_url=os.environ.get("APP_BASE_URL", app_cfg.get("base_url", "http://localhost:5000")),
        ),
        EmailConfig(
            enabled=_env_bool("EMAIL_ENABLED", email_cfg.get("enabled", False)),
            smtp_host=os.environ.get("SMTP_HOST", email_cfg.get("smtp_host", "")),
            smtp_port=int(os.environ.get("SMTP_PORT", email_cfg.get("smtp_port", 587))),
            smtp_user=os.environ.get("SMTP_USER", email_cfg.get("smtp_user", "")),
            smtp_password=os.environ.get("SMTP_PASSWORD", email_cfg.get("smtp_password", "")),
            sender=os.environ.get("EMAIL_SENDER", email_cfg.get("sender", "")),
            operator_cc=os.environ.get("EMAIL_OPERATOR_CC", email_cfg.get("operator_cc", "")),
        ),
        StripeConfig(
            enabled=_env_bool("STRIPE_ENABLED", stripe_cfg.get("enabled", True)),
            secret_key=os.environ.get("STRIPE_SECRET_KEY", stripe_cfg.get("secret_key", "")),
            publishable_key=os.environ.get(
                "STRIPE_PUBLISHABLE_KEY", stripe_cfg.get("publishable_key", "")
            ),
            webhook_secret=os.environ.get(
                "STRIPE_WEBHOOK_SECRET", stripe_cfg.get("webhook_secret", "")
            ),
            currency=stripe_cfg.get("currency", "USD").upper(),
        ),
        RazorpayConfig(
            enabled=_env_bool("RAZORPAY_ENABLED", razorpay_cfg.get("enabled", True)),
            key_id=os.environ.get("RAZORPAY_KEY_ID", razorpay_cfg.get("key_id", "")),
            key_secret=razorpay_key_secret,
            # Razorpay signs webhooks with a dedicated secret; older setups reuse the key secret.
            webhook_secret=os.environ.get(
                "RAZORPAY_WEBHOOK_SECRET",
                razorpay_cfg.get("webhook_secret", razorpay_key_secret),
            ),
            currency=razorpay_cfg.get("currency", "INR").upper(),
            exchange_rate=_to_decimal(razorpay_cfg.get("exchange_rate", "83"), "83"),
        ),
        LicensingConfig(
            key_prefix=lic_cfg.get("key_prefix", "ALG"),
            billing_interval=lic_cfg.get("billing_interval", "year"),
            trial_days=int(lic_cfg.get("trial_days", 14)),
            grace_period_days=int(
                os.environ.get("LICENSE_GRACE_PERIOD_DAYS", lic_cfg.get("grace_period_days", 7))
            ),
            pending_checkout_ttl_minutes=int(lic_cfg.get("pending_checkout_ttl_minutes", 60)),
            notification_workers=int(lic_cfg.get("notification_workers", 2)),
            prices=prices,
            tier_policies=_load_tier_policies(lic_cfg.get("tiers") or {}),
        ),
        os.environ.get("DATABASE_URI", db_cfg.get("uri", "sqlite:///licenses.db")),
    )


def enable_sqlite_fks(dbapi_conn, _connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
