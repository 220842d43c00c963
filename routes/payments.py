from flask import Blueprint, request, jsonify, g

from services.factory import get_engine
from utils.auth_context import login_required, current_actor
from utils.audit import log_event

payments_bp = Blueprint("payments", __name__, url_prefix="/payments")


@payments_bp.post("/start")
@login_required
def start_payment():
    data = request.get_json(silent=True) or {}
    session_id = data.get("session_id") or data.get("sessionId")
    if not session_id:
        return jsonify(error="Session ID is required"), 400

    actor = current_actor()
    payment = get_engine().payments.initiate_payment(session_id, actor.email, payer_id=actor.user_id)

    log_event("PAYMENT_INITIATED", user_id=actor.user_id, entity="transaction",
              entity_id=payment.reference, metadata={"session_id": session_id})
    return jsonify(payment.to_dict()), 200


@payments_bp.route("/verify", methods=["GET", "POST"])
def verify_payment():
    """Called from the gateway redirect page; re-checks the payment with the gateway."""
    data = request.get_json(silent=True) or {}
    reference = data.get("reference") or request.args.get("reference")
    if not reference:
        return jsonify(ok=False, reason="missing_reference"), 400

    result = get_engine().payments.verify_payment(reference)

    user = getattr(g, "user", None)
    log_event("PAYMENT_VERIFIED", user_id=user.id if user else None, entity="transaction",
              entity_id=reference, metadata={"status": result.status})
    return jsonify(result.to_dict()), 200
