"""Checkout creation and client-side payment confirmation."""

import logging
import re

from flask import Blueprint, current_app, jsonify, request

from extensions import limiter
from models import TIER_ENTERPRISE, TIER_STANDARD
from services import pending_checkouts
from services.errors import GatewayError, SemanticError, SignatureError, UnknownProviderError
from services.fulfillment import confirm_client_payment
from services.gateways import CheckoutRequest, get_gateway
from services.licensing import mask_license_key
from utils import clean_str

logger = logging.getLogger(__name__)

checkout_bp = Blueprint("checkout", __name__)

SELLABLE_TIERS = (TIER_STANDARD, TIER_ENTERPRISE)
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _request_data() -> dict:
    if request.is_json:
        return request.get_json(silent=True) or {}
    return request.form.to_dict()


def _validate_checkout(data: dict) -> tuple[CheckoutRequest, list[str]]:
    errors = []
    tier = clean_str(data.get("tier"))
    email = clean_str(data.get("email") or data.get("customer_email"))
    name = clean_str(data.get("name") or data.get("customer_name"))
    if tier not in SELLABLE_TIERS:
        errors.append(f"tier must be one of {', '.join(SELLABLE_TIERS)}")
    if not email or not _EMAIL_RE.match(email):
        errors.append("a valid email is required")
    if not name:
        errors.append("name is required")
    base_url = current_app.config["APP_CONFIG"].base_url.rstrip("/")
    return CheckoutRequest(
        tier=tier or "",
        email=email or "",
        name=name or "",
        company=clean_str(data.get("company") or data.get("company_name")),
        domain=clean_str(data.get("domain")),
        success_url=f"{base_url}/checkout/success",
        cancel_url=f"{base_url}/checkout/cancel",
    ), errors


@checkout_bp.route("/checkout/<provider>", methods=["POST"])
@limiter.limit("10 per minute")
def create_checkout(provider):
    """Start a purchase: a Stripe Checkout Session or a Razorpay order."""
    checkout, errors = _validate_checkout(_request_data())
    if errors:
        return jsonify({"error": "; ".join(errors)}), 400
    try:
        gateway = get_gateway(provider)
        result = gateway.create_checkout(checkout)
    except UnknownProviderError as e:
        return jsonify({"error": str(e)}), 404
    except SemanticError as e:
        return jsonify({"error": str(e)}), 400
    except GatewayError as e:
        logger.error("Checkout via %s failed: %s", provider, e)
        return jsonify({"error": "Failed to create checkout"}), 502

    if gateway.supports_client_confirmation:
        pending_checkouts.save_pending_checkout(
            provider=gateway.name,
            order_id=result.reference,
            tier=checkout.tier,
            email=checkout.email,
            name=checkout.name,
            company=checkout.company,
            domain=checkout.domain,
            amount=result.amount,
            currency=result.currency,
        )

    return jsonify({
        "provider": result.provider,
        "reference": result.reference,
        "amount": str(result.amount),
        "currency": result.currency,
        "redirect_url": result.redirect_url,
        **result.client_params,
    }), 201


@checkout_bp.route("/checkout/<provider>/verify", methods=["POST"])
@limiter.limit("20 per minute")
def verify_payment(provider):
    """Confirm a payment reported by the browser and return the license key."""
    data = _request_data()
    order_id = clean_str(data.get("order_id") or data.get("razorpay_order_id"))
    payment_id = clean_str(data.get("payment_id") or data.get("razorpay_payment_id"))
    signature = clean_str(data.get("signature") or data.get("razorpay_signature"))
    if not (order_id and payment_id and signature):
        return jsonify({"error": "order_id, payment_id and signature are required"}), 400

    try:
        license, created = confirm_client_payment(provider.lower(), order_id, payment_id, signature)
    except UnknownProviderError as e:
        return jsonify({"error": str(e)}), 404
    except SignatureError:
        return jsonify({"error": "Invalid payment signature"}), 400
    except SemanticError as e:
        logger.error("Payment confirmation for order %s rejected: %s", order_id, e)
        return jsonify({"error": str(e)}), 400
    except GatewayError as e:
        logger.error("Payment confirmation for order %s failed: %s", order_id, e)
        return jsonify({"error": "Payment verification failed"}), 502

    return jsonify({
        "success": True,
        "created": created,
        # A license issued earlier is only shown masked; the full key went by email.
        "license_key": license.key if created else mask_license_key(license.key),
        "tier": license.tier,
        "valid_until": license.valid_until.isoformat() if license.valid_until else None,
    }), 200
