"""Payment provider capability interface and registry.

Each provider adapter turns its SDK objects into the small dataclasses below,
with amounts already converted from minor units to ``Decimal``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from flask import current_app

from config_models import LicensingConfig
from models import PAYMENT_PENDING, VALID_TIERS
from services.errors import SemanticError, UnknownProviderError

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


@dataclass
class CheckoutRequest:
    tier: str
    email: str
    name: str
    company: Optional[str] = None
    domain: Optional[str] = None
    success_url: str = ""
    cancel_url: str = ""


@dataclass
class CheckoutResult:
    provider: str
    reference: str  # checkout session id or order id
    amount: Decimal
    currency: str
    redirect_url: Optional[str] = None
    client_params: dict = field(default_factory=dict)


@dataclass
class ProviderPayment:
    payment_id: str
    status: str
    amount: Decimal
    currency: str
    order_id: Optional[str] = None
    email: Optional[str] = None
    card_brand: Optional[str] = None
    card_last4: Optional[str] = None


class PaymentGateway:
    """Uniform surface over a payment provider SDK."""

    name = ""
    # Providers whose checkout is confirmed by the browser with a signed payload.
    supports_client_confirmation = False

    def __init__(self, config, licensing: LicensingConfig):
        self.config = config
        self.licensing = licensing

    @property
    def currency(self) -> str:
        return self.config.currency

    def get_price_for_tier(self, tier: str) -> Decimal:
        """Annual price of *tier* in this provider's currency."""
        if tier not in VALID_TIERS:
            raise SemanticError(f"Unknown license tier: {tier!r}")
        return Decimal(self.licensing.prices.get(tier, 0)).quantize(_CENT, rounding=ROUND_HALF_UP)

    def create_checkout(self, request: CheckoutRequest) -> CheckoutResult:
        raise NotImplementedError

    def verify_webhook(self, raw_body: bytes, signature: Optional[str]) -> dict:
        """Check *signature* over the raw body and return the decoded JSON event.

        Raises ``SignatureError`` or ``PayloadError``.
        """
        raise NotImplementedError

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        raise NotImplementedError(f"{self.name} does not confirm payments client-side")

    def cancel_subscription(self, provider_subscription_id: str, cancel_at_period_end: bool) -> None:
        raise NotImplementedError

    def get_payment(self, payment_id: str) -> Optional[ProviderPayment]:
        raise NotImplementedError


def normalize_payment_status(provider_status: Optional[str]) -> str:
    """Map provider payment states onto the ledger vocabulary."""
    return {
        "succeeded": "succeeded",
        "captured": "succeeded",
        "paid": "succeeded",
        "processing": "processing",
        "authorized": "processing",
        "failed": "failed",
        "canceled": "failed",
        "requires_payment_method": "failed",
        "refunded": "refunded",
    }.get((provider_status or "").lower(), PAYMENT_PENDING)


def get_gateway(name: str) -> PaymentGateway:
    """Return the adapter for provider *name* built from app configuration."""
    from services.razorpay_billing import RazorpayGateway
    from services.stripe_billing import StripeGateway

    registry = {
        StripeGateway.name: (StripeGateway, "STRIPE_CONFIG"),
        RazorpayGateway.name: (RazorpayGateway, "RAZORPAY_CONFIG"),
    }
    entry = registry.get((name or "").lower())
    if entry is None:
        raise UnknownProviderError(f"Unknown payment provider: {name!r}")
    gateway_cls, config_key = entry
    cfg = current_app.config.get(config_key)
    if not cfg or not cfg.enabled:
        raise UnknownProviderError(f"Payment provider {name!r} is not enabled")
    return gateway_cls(cfg, current_app.config["LICENSING_CONFIG"])
