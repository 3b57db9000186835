"""SQLAlchemy models for licenses, subscriptions and the payment ledger."""

from __future__ import annotations

import json

from extensions import db
from utils import utc_now

# ---------------------------------------------------------------------------
# Vocabularies
# ---------------------------------------------------------------------------

TIER_TRIAL = "Trial"
TIER_STANDARD = "Standard"
TIER_ENTERPRISE = "Enterprise"
VALID_TIERS = (TIER_TRIAL, TIER_STANDARD, TIER_ENTERPRISE)
TIER_KEY_CODES = {TIER_TRIAL: "TRL", TIER_STANDARD: "STD", TIER_ENTERPRISE: "ENT"}

PROVIDER_STRIPE = "stripe"
PROVIDER_RAZORPAY = "razorpay"
PROVIDER_MANUAL = "manual"
VALID_PROVIDERS = (PROVIDER_STRIPE, PROVIDER_RAZORPAY)

LICENSE_PENDING_ACTIVATION = "pending_activation"
LICENSE_ACTIVE = "active"
LICENSE_GRACE_PERIOD = "grace_period"
LICENSE_EXPIRED = "expired"
LICENSE_SUSPENDED = "suspended"
LICENSE_REVOKED = "revoked"
VALID_LICENSE_STATUSES = {
    LICENSE_PENDING_ACTIVATION,
    LICENSE_ACTIVE,
    LICENSE_GRACE_PERIOD,
    LICENSE_EXPIRED,
    LICENSE_SUSPENDED,
    LICENSE_REVOKED,
}
# Statuses owned by administrators; the temporal sweep never touches them.
ADMIN_LICENSE_STATUSES = {LICENSE_SUSPENDED, LICENSE_REVOKED}

SUB_TRIALING = "trialing"
SUB_ACTIVE = "active"
SUB_PAST_DUE = "past_due"
SUB_CANCELLED = "cancelled"
SUB_EXPIRED = "expired"
SUB_PAUSED = "paused"
VALID_SUBSCRIPTION_STATUSES = {
    SUB_TRIALING, SUB_ACTIVE, SUB_PAST_DUE, SUB_CANCELLED, SUB_EXPIRED, SUB_PAUSED,
}
TERMINAL_SUBSCRIPTION_STATUSES = {SUB_CANCELLED, SUB_EXPIRED}

PAYMENT_PENDING = "pending"
PAYMENT_PROCESSING = "processing"
PAYMENT_SUCCEEDED = "succeeded"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"
VALID_PAYMENT_STATUSES = {
    PAYMENT_PENDING, PAYMENT_PROCESSING, PAYMENT_SUCCEEDED, PAYMENT_FAILED, PAYMENT_REFUNDED,
}
VALID_PAYMENT_TYPES = {"subscription", "one_time", "refund"}


# ---------------------------------------------------------------------------
# License
# ---------------------------------------------------------------------------

class License(db.Model):
    """A credential granting product access for a validity window."""
    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(40), unique=True, nullable=False)
    tier = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(30), nullable=False, default=LICENSE_PENDING_ACTIVATION)
    customer_email = db.Column(db.String(255), nullable=False, index=True)
    customer_name = db.Column(db.String(120), nullable=False)
    company = db.Column(db.String(120))
    licensed_domains = db.Column(db.String(500))
    valid_from = db.Column(db.DateTime, nullable=False)
    valid_until = db.Column(db.DateTime)  # NULL = unlimited
    grace_period_days = db.Column(db.Integer, default=7)
    max_stores = db.Column(db.Integer)  # NULL = unlimited
    max_products = db.Column(db.Integer)
    max_orders_per_month = db.Column(db.Integer)
    max_admin_users = db.Column(db.Integer)
    max_activations = db.Column(db.Integer, default=1)
    enabled_features = db.Column(db.Text)  # JSON list
    auto_renew = db.Column(db.Boolean, default=True)
    payment_processor = db.Column(db.String(30))
    external_subscription_id = db.Column(db.String(120), index=True)
    next_renewal_date = db.Column(db.DateTime)
    renewal_amount = db.Column(db.Numeric(10, 2, asdecimal=True))
    renewal_currency = db.Column(db.String(10))
    signature = db.Column(db.String(64))
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    subscriptions = db.relationship("LicenseSubscription", back_populates="license")

    __table_args__ = (
        db.CheckConstraint(
            "valid_until IS NULL OR valid_until >= valid_from",
            name="ck_license_valid_window",
        ),
    )

    @property
    def features(self) -> list[str]:
        return json.loads(self.enabled_features) if self.enabled_features else []

    @features.setter
    def features(self, value: list[str]) -> None:
        self.enabled_features = json.dumps(sorted(set(value)))


# ---------------------------------------------------------------------------
# Subscription
# ---------------------------------------------------------------------------

class LicenseSubscription(db.Model):
    """Recurring-billing relationship funding a license's renewals."""
    id = db.Column(db.Integer, primary_key=True)
    license_id = db.Column(db.Integer, db.ForeignKey("license.id"), nullable=False, index=True)
    provider = db.Column(db.String(30), nullable=False)
    provider_subscription_id = db.Column(db.String(120), nullable=False)
    provider_customer_id = db.Column(db.String(120))
    status = db.Column(db.String(30), nullable=False, default=SUB_ACTIVE)
    tier = db.Column(db.String(20), nullable=False)
    customer_email = db.Column(db.String(255), nullable=False)
    customer_name = db.Column(db.String(120))
    licensed_domain = db.Column(db.String(255))
    amount = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    currency = db.Column(db.String(10), nullable=False)
    billing_interval = db.Column(db.String(10), default="year")
    current_period_start = db.Column(db.DateTime, nullable=False)
    current_period_end = db.Column(db.DateTime, nullable=False)
    next_payment_date = db.Column(db.DateTime)
    auto_renew = db.Column(db.Boolean, default=True)
    payment_count = db.Column(db.Integer, nullable=False, default=0)
    last_payment_at = db.Column(db.DateTime)
    failure_count = db.Column(db.Integer, nullable=False, default=0)
    last_failure_reason = db.Column(db.Text)
    cancelled_at = db.Column(db.DateTime)
    cancel_at_period_end = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    license = db.relationship("License", back_populates="subscriptions")
    payments = db.relationship("LicensePayment", back_populates="subscription")

    __table_args__ = (
        db.UniqueConstraint(
            "provider", "provider_subscription_id", name="uq_subscription_provider_id"
        ),
        db.Index("ix_subscription_status", "status"),
    )


# ---------------------------------------------------------------------------
# Payment ledger
# ---------------------------------------------------------------------------

class LicensePayment(db.Model):
    """Append-only record of one charge or refund."""
    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("license_subscription.id"), index=True)
    license_id = db.Column(db.Integer, db.ForeignKey("license.id"), index=True)
    refund_of_id = db.Column(db.Integer, db.ForeignKey("license_payment.id"))
    provider = db.Column(db.String(30), nullable=False)
    provider_payment_id = db.Column(db.String(120), nullable=False)
    provider_invoice_id = db.Column(db.String(120))
    provider_customer_id = db.Column(db.String(120))
    status = db.Column(db.String(30), nullable=False, default=PAYMENT_PENDING)
    payment_type = db.Column(db.String(20), nullable=False, default="subscription")
    amount = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    currency = db.Column(db.String(10), nullable=False)
    tier = db.Column(db.String(20))
    customer_email = db.Column(db.String(255))
    paid_at = db.Column(db.DateTime)
    period_start = db.Column(db.DateTime)
    period_end = db.Column(db.DateTime)
    receipt_url = db.Column(db.String(500))
    invoice_url = db.Column(db.String(500))
    card_brand = db.Column(db.String(30))
    card_last4 = db.Column(db.String(4))
    failure_reason = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)

    subscription = db.relationship("LicenseSubscription", back_populates="payments")
    license = db.relationship("License")
    refund_of = db.relationship("LicensePayment", remote_side=[id])

    __table_args__ = (
        db.UniqueConstraint("provider", "provider_payment_id", name="uq_payment_provider_id"),
        db.Index("ix_payment_status", "status"),
    )


# ---------------------------------------------------------------------------
# Webhook bookkeeping
# ---------------------------------------------------------------------------

class ProcessedWebhookEvent(db.Model):
    """One row per provider event id whose side effects were committed."""
    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(30), nullable=False)
    event_id = db.Column(db.String(120), nullable=False)
    event_type = db.Column(db.String(80), nullable=False)
    received_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.UniqueConstraint("provider", "event_id", name="uq_processed_event"),
    )


class PendingCheckout(db.Model):
    """Customer details for a provider order awaiting payment confirmation."""
    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(30), nullable=False)
    order_id = db.Column(db.String(120), nullable=False)
    tier = db.Column(db.String(20), nullable=False)
    customer_email = db.Column(db.String(255), nullable=False)
    customer_name = db.Column(db.String(120), nullable=False)
    company = db.Column(db.String(120))
    domain = db.Column(db.String(255))
    amount = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    currency = db.Column(db.String(10), nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.UniqueConstraint("provider", "order_id", name="uq_pending_checkout_order"),
    )


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    actor = db.Column(db.String(120), nullable=False, default="system")
    action = db.Column(db.String(80), nullable=False)
    entity_type = db.Column(db.String(80), nullable=False)
    entity_id = db.Column(db.Integer)
    details = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.Index("ix_audit_log_created_at", "created_at"),
        db.Index("ix_audit_log_entity", "entity_type", "entity_id"),
    )
