"""Provider webhook endpoint."""

import json

from flask import Blueprint, request

from extensions import csrf
from services.webhooks import process_webhook

webhooks_bp = Blueprint("webhooks", __name__)

# Header carrying the signature over the raw body, per provider.
SIGNATURE_HEADERS = {
    "stripe": "Stripe-Signature",
    "razorpay": "X-Razorpay-Signature",
}


@webhooks_bp.route("/webhook/<provider>", methods=["POST"])
@csrf.exempt
def receive_webhook(provider):
    """Handle a payment provider webhook delivery."""
    provider = provider.lower()
    # Signatures are computed over the exact bytes sent; never re-serialise.
    payload = request.get_data(cache=False)
    signature = request.headers.get(SIGNATURE_HEADERS.get(provider, ""), "")
    event_id = request.headers.get("X-Razorpay-Event-Id")
    result = process_webhook(provider, payload, signature or None, event_id=event_id)
    body = {"status": result.outcome}
    if result.event_type:
        body["event"] = result.event_type
    return json.dumps(body), result.status_code, {"Content-Type": "application/json"}
