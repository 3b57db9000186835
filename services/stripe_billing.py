"""Stripe payment integration service."""

from __future__ import annotations

import json
import logging
from typing import Optional

import stripe

from services.errors import GatewayError, PayloadError, SignatureError
from services.gateways import (
    CheckoutRequest,
    CheckoutResult,
    PaymentGateway,
    ProviderPayment,
    normalize_payment_status,
)
from utils import decimal_to_minor, minor_to_decimal

logger = logging.getLogger(__name__)


class StripeGateway(PaymentGateway):
    name = "stripe"

    def _get_stripe(self):
        """Configure the stripe module with this gateway's secret key."""
        if not self.config.secret_key:
            raise GatewayError("STRIPE_SECRET_KEY not configured")
        stripe.api_key = self.config.secret_key
        return stripe

    def create_checkout(self, request: CheckoutRequest) -> CheckoutResult:
        """Create a subscription-mode Checkout Session for an annual license."""
        client = self._get_stripe()
        amount = self.get_price_for_tier(request.tier)
        metadata = {
            "tier": request.tier,
            "customer_name": request.name,
            "company_name": request.company or "",
            "domain": request.domain or "",
        }
        try:
            session = client.checkout.Session.create(
                mode="subscription",
                payment_method_types=["card"],
                customer_email=request.email,
                success_url=request.success_url + "?session_id={CHECKOUT_SESSION_ID}",
                cancel_url=request.cancel_url,
                line_items=[{
                    "price_data": {
                        "currency": self.currency.lower(),
                        "unit_amount": decimal_to_minor(amount),
                        "recurring": {"interval": self.licensing.billing_interval},
                        "product_data": {
                            "name": f"Algora Commerce {request.tier} License",
                            "description": f"Annual subscription for Algora Commerce {request.tier} tier",
                        },
                    },
                    "quantity": 1,
                }],
                metadata=metadata,
                subscription_data={"metadata": metadata},
                allow_promotion_codes=True,
                billing_address_collection="required",
            )
        except stripe.StripeError as e:
            logger.error("Failed to create Stripe checkout session for %s: %s", request.email, e)
            raise GatewayError(f"Stripe checkout failed: {e}") from e

        logger.info(
            "Created Stripe checkout session %s for %s, tier %s",
            session.id, request.email, request.tier,
        )
        return CheckoutResult(
            provider=self.name,
            reference=session.id,
            amount=amount,
            currency=self.currency,
            redirect_url=session.url,
        )

    def verify_webhook(self, raw_body: bytes, signature: Optional[str]) -> dict:
        if not signature:
            raise SignatureError("Missing Stripe-Signature header")
        if not self.config.webhook_secret:
            logger.warning("STRIPE_WEBHOOK_SECRET not configured")
            raise SignatureError("Stripe webhook secret not configured")
        try:
            stripe.Webhook.construct_event(raw_body, signature, self.config.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning("Stripe webhook verification failed: %s", e)
            raise SignatureError("Invalid Stripe signature") from e
        except ValueError as e:
            raise PayloadError(f"Invalid Stripe payload: {e}") from e
        # Parse the verified bytes ourselves rather than depending on SDK objects.
        try:
            event = json.loads(raw_body)
        except ValueError as e:
            raise PayloadError(f"Invalid Stripe payload: {e}") from e
        if not isinstance(event, dict):
            raise PayloadError("Stripe event is not a JSON object")
        return event

    def cancel_subscription(self, provider_subscription_id: str, cancel_at_period_end: bool) -> None:
        """Cancel at Stripe; ``cancel_at_period_end`` maps to Stripe's inverse ``immediately``."""
        client = self._get_stripe()
        immediately = not cancel_at_period_end
        try:
            if immediately:
                client.Subscription.cancel(provider_subscription_id)
            else:
                client.Subscription.modify(provider_subscription_id, cancel_at_period_end=True)
        except stripe.StripeError as e:
            logger.error("Failed to cancel Stripe subscription %s: %s", provider_subscription_id, e)
            raise GatewayError(f"Stripe cancellation failed: {e}") from e
        logger.info(
            "Cancelled Stripe subscription %s (%s)",
            provider_subscription_id, "immediately" if immediately else "at period end",
        )

    def get_payment(self, payment_id: str) -> Optional[ProviderPayment]:
        client = self._get_stripe()
        try:
            intent = client.PaymentIntent.retrieve(payment_id, expand=["latest_charge"])
        except stripe.InvalidRequestError:
            logger.warning("Stripe payment %s not found", payment_id)
            return None
        except stripe.StripeError as e:
            raise GatewayError(f"Stripe payment lookup failed: {e}") from e

        card = {}
        charge = intent.get("latest_charge")
        if isinstance(charge, dict):
            card = (charge.get("payment_method_details") or {}).get("card") or {}
        return ProviderPayment(
            payment_id=intent["id"],
            status=normalize_payment_status(intent.get("status")),
            amount=minor_to_decimal(intent.get("amount_received") or intent.get("amount")),
            currency=(intent.get("currency") or self.currency).upper(),
            email=intent.get("receipt_email"),
            card_brand=card.get("brand"),
            card_last4=card.get("last4"),
        )
