from flask import Blueprint, jsonify

health_bp = Blueprint("health", __name__)


@health_bp.get("/health")
def health():
    return jsonify(status="ok"), 200


from .mentorship import mentorship_bp  # noqa: E402
from .payments import payments_bp  # noqa: E402
from .webhooks import webhook_bp  # noqa: E402
from .admin import admin_bp  # noqa: E402
