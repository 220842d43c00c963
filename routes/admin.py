from datetime import datetime

from flask import Blueprint, jsonify, g, request

from models.mentorship_session import SessionStatus
from security.rbac import require_roles
from services.booking import clean_text, _naive_utc
from services.factory import get_engine
from utils.audit import log_event
from utils.auth_context import current_actor

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


def _parse_day(value):
    # Accept "YYYY-MM-DD" or a full ISO timestamp
    return _naive_utc(datetime.fromisoformat(value)) if value else None


@admin_bp.get("/mentorship/sessions")
@require_roles("ADMIN")
def mentorship_sessions():
    status = request.args.get("status")
    rows = get_engine().bookings.list_all(status=status)
    return jsonify(
        sessions=[s.to_dict() for s in rows],
        stats={
            "totalSessions": len(rows),
            "completedSessions": sum(1 for s in rows if s.status == SessionStatus.COMPLETED),
            "pendingSessions": sum(1 for s in rows if s.status == SessionStatus.SCHEDULED),
            "awaitingReview": sum(1 for s in rows if s.status == SessionStatus.PENDING_MENTOR_REVIEW),
        },
    ), 200


@admin_bp.post("/mentorship/sessions/<session_id>/status")
@require_roles("ADMIN")
def override_status(session_id):
    data = request.get_json(silent=True) or {}
    status = data.get("status")
    if not status:
        return jsonify(error="status required"), 400
    note = clean_text(data.get("note"), "note")

    session = get_engine().bookings.set_status(current_actor(), session_id, status, note=note)
    log_event("MENTORSHIP_STATUS_UPDATE", user_id=g.user.id, entity="mentorship_session",
              entity_id=session_id, metadata={"status": session.status, "note": note, "by": "admin"})
    return jsonify(session=session.to_dict()), 200


@admin_bp.get("/mentorship/finance")
@require_roles("ADMIN")
def mentorship_finance():
    try:
        start = _parse_day(request.args.get("start"))
        end = _parse_day(request.args.get("end"))
    except ValueError:
        return jsonify(error="Invalid date. Use YYYY-MM-DD"), 400

    summary = get_engine().settlement.summarize(
        start=start,
        end=end,
        product_type=request.args.get("product_type"),
        mentor_id=request.args.get("mentor_id", type=int),
    )
    return jsonify(success=True, mentorship=summary.to_dict()), 200
