import logging

import stripe
from flask import Blueprint, request, jsonify

from services.errors import GatewayError, NotFoundError
from services.factory import get_engine
from services.gateways import PaystackGateway, StripeGateway
from utils.audit import log_event

logger = logging.getLogger(__name__)

webhook_bp = Blueprint("webhook", __name__, url_prefix="/webhooks")

# Webhooks only tell us which reference to look at; verify_payment asks the gateway.


def _reconcile(reference, source):
    log_event("WEBHOOK_RECEIVED", entity="transaction", entity_id=reference, metadata={"source": source})
    try:
        get_engine().payments.verify_payment(reference)
    except NotFoundError:
        logger.warning("%s webhook for unknown reference %s", source, reference)
    except GatewayError:
        # the gateway retries the webhook; the transaction stays PENDING
        logger.exception("%s webhook verification failed for %s", source, reference)
        return jsonify(ok=False), 502
    return jsonify(ok=True), 200


@webhook_bp.post("/paystack")
def paystack_webhook():
    gateway = get_engine().payments.gateway
    if not isinstance(gateway, PaystackGateway):
        return jsonify(error="Paystack is not the active gateway"), 404

    if not gateway.verify_signature(request.get_data(), request.headers.get("x-paystack-signature")):
        return jsonify(ok=False), 401

    event = request.get_json(silent=True) or {}
    if event.get("event") != "charge.success":
        return jsonify(ok=True), 200

    reference = (event.get("data") or {}).get("reference")
    if not reference:
        return jsonify(ok=True), 200
    return _reconcile(reference, "paystack")


@webhook_bp.post("/stripe")
def stripe_webhook():
    gateway = get_engine().payments.gateway
    if not isinstance(gateway, StripeGateway):
        return jsonify(error="Stripe is not the active gateway"), 404
    if not gateway.webhook_secret:
        return jsonify(error="Webhook secret not configured"), 500

    try:
        event = gateway.construct_event(request.data, request.headers.get("Stripe-Signature"))
    except (ValueError, stripe.SignatureVerificationError):
        return jsonify(error="Invalid webhook signature"), 400

    if event["type"] not in ("checkout.session.completed", "checkout.session.expired"):
        return jsonify(received=True), 200

    session = event["data"]["object"]
    reference = session.get("client_reference_id") or (session.get("metadata") or {}).get("reference")
    if not reference:
        return jsonify(received=True), 200
    return _reconcile(reference, "stripe")
