"""Razorpay payment gateway integration service."""

from __future__ import annotations

import json
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import razorpay
import requests
from razorpay.errors import BadRequestError, ServerError, SignatureVerificationError

from services.errors import GatewayError, PayloadError, SignatureError
from services.gateways import (
    CheckoutRequest,
    CheckoutResult,
    PaymentGateway,
    ProviderPayment,
    normalize_payment_status,
)
from utils import decimal_to_minor, minor_to_decimal, utc_now

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


class RazorpayGateway(PaymentGateway):
    name = "razorpay"
    supports_client_confirmation = True

    def _get_client(self) -> razorpay.Client:
        """Create a Razorpay client from the configured key pair."""
        if not self.config.key_id or not self.config.key_secret:
            raise GatewayError("Razorpay credentials not configured")
        return razorpay.Client(auth=(self.config.key_id, self.config.key_secret))

    def get_price_for_tier(self, tier: str) -> Decimal:
        """Catalogue prices are kept in USD and converted at the configured rate."""
        usd = super().get_price_for_tier(tier)
        return (usd * self.config.exchange_rate).quantize(_CENT, rounding=ROUND_HALF_UP)

    def create_checkout(self, request: CheckoutRequest) -> CheckoutResult:
        """Create a one-time order; the browser completes it with Razorpay Checkout."""
        client = self._get_client()
        amount = self.get_price_for_tier(request.tier)
        try:
            order = client.order.create(data={
                "amount": decimal_to_minor(amount),  # paise
                "currency": self.currency,
                "receipt": f"lic_{request.tier}_{utc_now():%Y%m%d%H%M%S}",
                "notes": {
                    "tier": request.tier,
                    "customer_email": request.email,
                    "customer_name": request.name,
                    "company_name": request.company or "",
                    "domain": request.domain or "",
                },
            })
        except (BadRequestError, ServerError, requests.RequestException) as e:
            logger.error("Failed to create Razorpay order for %s: %s", request.email, e)
            raise GatewayError(f"Razorpay order failed: {e}") from e

        logger.info(
            "Created Razorpay order %s for %s, tier %s, amount %s %s",
            order["id"], request.email, request.tier, amount, self.currency,
        )
        return CheckoutResult(
            provider=self.name,
            reference=order["id"],
            amount=amount,
            currency=self.currency,
            client_params={"key_id": self.config.key_id, "order_id": order["id"]},
        )

    def verify_webhook(self, raw_body: bytes, signature: Optional[str]) -> dict:
        if not signature:
            raise SignatureError("Missing X-Razorpay-Signature header")
        if not self.config.webhook_secret:
            logger.warning("RAZORPAY_WEBHOOK_SECRET not configured")
            raise SignatureError("Razorpay webhook secret not configured")
        try:
            body = raw_body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise PayloadError("Razorpay payload is not UTF-8") from e
        try:
            self._get_client().utility.verify_webhook_signature(
                body, signature, self.config.webhook_secret
            )
        except SignatureVerificationError as e:
            logger.warning("Razorpay webhook verification failed: %s", e)
            raise SignatureError("Invalid Razorpay signature") from e
        try:
            event = json.loads(body)
        except ValueError as e:
            raise PayloadError(f"Invalid Razorpay payload: {e}") from e
        if not isinstance(event, dict):
            raise PayloadError("Razorpay event is not a JSON object")
        return event

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """Check the ``order_id|payment_id`` HMAC returned to the browser."""
        if not (order_id and payment_id and signature):
            return False
        try:
            self._get_client().utility.verify_payment_signature({
                "razorpay_order_id": order_id,
                "razorpay_payment_id": payment_id,
                "razorpay_signature": signature,
            })
        except SignatureVerificationError:
            logger.warning("Invalid Razorpay signature for order %s, payment %s", order_id, payment_id)
            return False
        logger.info("Verified Razorpay signature for order %s, payment %s", order_id, payment_id)
        return True

    def cancel_subscription(self, provider_subscription_id: str, cancel_at_period_end: bool) -> None:
        """Cancel a Razorpay subscription. Orders (one-time purchases) have nothing to cancel."""
        if not provider_subscription_id.startswith("sub_"):
            logger.info("Razorpay %s is a one-time order, no provider cancellation", provider_subscription_id)
            return
        client = self._get_client()
        try:
            client.subscription.cancel(
                provider_subscription_id,
                data={"cancel_at_cycle_end": 1 if cancel_at_period_end else 0},
            )
        except (BadRequestError, ServerError, requests.RequestException) as e:
            logger.error("Failed to cancel Razorpay subscription %s: %s", provider_subscription_id, e)
            raise GatewayError(f"Razorpay cancellation failed: {e}") from e
        logger.info(
            "Cancelled Razorpay subscription %s (%s)",
            provider_subscription_id, "at cycle end" if cancel_at_period_end else "immediately",
        )

    def get_payment(self, payment_id: str) -> Optional[ProviderPayment]:
        client = self._get_client()
        try:
            payment = client.payment.fetch(payment_id)
        except BadRequestError:
            logger.warning("Razorpay payment %s not found", payment_id)
            return None
        except (ServerError, requests.RequestException) as e:
            raise GatewayError(f"Razorpay payment lookup failed: {e}") from e

        card = payment.get("card") or {}
        return ProviderPayment(
            payment_id=payment["id"],
            status=normalize_payment_status(payment.get("status")),
            amount=minor_to_decimal(payment.get("amount")),
            currency=(payment.get("currency") or self.currency).upper(),
            order_id=payment.get("order_id"),
            email=payment.get("email"),
            card_brand=card.get("network"),
            card_last4=card.get("last4"),
        )
