from flask import Blueprint, request, jsonify, g

from models.mentorship_session import BookingMode
from security.rbac import require_roles
from services.booking import clean_text
from services.factory import get_engine
from utils.auth_context import login_required, current_actor
from utils.audit import log_event

mentorship_bp = Blueprint("mentorship", __name__, url_prefix="/mentorship")


def _duration(data, default=60):
    value = data.get("duration_minutes", data.get("duration", default))
    try:
        return int(value)
    except (TypeError, ValueError):
        return value  # rejected by the pricing calculator


# ---------- pricing preview ----------
@mentorship_bp.get("/quote")
@login_required
def quote():
    mentor_id = request.args.get("mentor_id", type=int)
    duration = request.args.get("duration", default=60, type=int)
    package_code = request.args.get("package")
    if not mentor_id:
        return jsonify(error="mentor_id required"), 400

    result = get_engine().bookings.quote(mentor_id, duration, package_code)
    return jsonify(result.to_dict()), 200


# ---------- STUDENTS: book a mentor ----------
@mentorship_bp.post("/bookings")
@login_required
def create_booking():
    data = request.get_json(silent=True) or {}
    mentor_id = data.get("mentor_id")
    if not mentor_id:
        return jsonify(error="mentor_id required"), 400
    try:
        mentor_id = int(mentor_id)
    except (TypeError, ValueError):
        return jsonify(error="mentor_id must be a number"), 400

    engine = get_engine()
    actor = current_actor()
    session = engine.bookings.create_booking(
        actor,
        mentor_id=mentor_id,
        scheduled_at=data.get("scheduled_at"),
        duration_minutes=_duration(data),
        booking_mode=data.get("booking_mode") or BookingMode.INSTANT,
        title=data.get("topic") or data.get("title"),
        description=data.get("description"),
        package_code=data.get("package_code"),
    )
    log_event("MENTORSHIP_BOOKING_CREATE", user_id=actor.user_id, entity="mentorship_session",
              entity_id=session.id, metadata={"mode": session.booking_mode, "price": str(session.price)})

    body = {"ok": True, "mode": session.booking_mode, "session": session.to_dict()}

    # Instant bookings go straight to checkout unless the client opts out
    if session.booking_mode == BookingMode.INSTANT and data.get("checkout", True):
        payment = engine.payments.initiate_payment(session.id, actor.email, payer_id=actor.user_id)
        log_event("PAYMENT_INITIATED", user_id=actor.user_id, entity="transaction",
                  entity_id=payment.reference, metadata={"session_id": session.id})
        body.update(authorization_url=payment.authorization_url, reference=payment.reference)

    return jsonify(body), 201


# ---------- participants: read ----------
@mentorship_bp.get("/sessions/me")
@login_required
def my_sessions():
    status = request.args.get("status")
    as_mentor = request.args.get("as") == "mentor"
    bookings = get_engine().bookings
    actor = current_actor()
    rows = bookings.list_for_mentor(actor, status) if as_mentor else bookings.list_for_student(actor, status)
    return jsonify([s.to_dict() for s in rows]), 200


@mentorship_bp.get("/sessions/<session_id>")
@login_required
def get_session(session_id):
    session = get_engine().bookings.get_session_for(current_actor(), session_id)
    return jsonify(session=session.to_dict()), 200


# ---------- MENTORS: approval workflow ----------
@mentorship_bp.post("/sessions/<session_id>/approve")
@require_roles("MENTOR")
def approve(session_id):
    data = request.get_json(silent=True) or {}
    session = get_engine().approvals.approve(session_id, current_actor(), note=data.get("note"))
    log_event("MENTORSHIP_APPROVE", user_id=g.user.id, entity="mentorship_session", entity_id=session_id)
    return jsonify(session=session.to_dict()), 200


@mentorship_bp.post("/sessions/<session_id>/reject")
@require_roles("MENTOR")
def reject(session_id):
    data = request.get_json(silent=True) or {}
    reason = clean_text(data.get("reason"), "reason")
    session = get_engine().approvals.reject(session_id, current_actor(), reason=reason)
    log_event("MENTORSHIP_REJECT", user_id=g.user.id, entity="mentorship_session", entity_id=session_id,
              metadata={"reason": reason})
    return jsonify(session=session.to_dict()), 200


# ---------- MENTORS: run the session ----------
@mentorship_bp.post("/sessions/<session_id>/status")
@require_roles("MENTOR", "ADMIN")
def update_status(session_id):
    data = request.get_json(silent=True) or {}
    status = data.get("status")
    if not status:
        return jsonify(error="status required"), 400

    session = get_engine().bookings.set_status(current_actor(), session_id, status)
    log_event("MENTORSHIP_STATUS_UPDATE", user_id=g.user.id, entity="mentorship_session",
              entity_id=session_id, metadata={"status": session.status})
    return jsonify(session=session.to_dict()), 200


# ---------- MENTORS: offerings ----------
@mentorship_bp.post("/offerings")
@require_roles("MENTOR")
def create_offering():
    data = request.get_json(silent=True) or {}
    offering = get_engine().bookings.create_offering(
        current_actor(),
        title=data.get("title"),
        duration_minutes=_duration(data),
        description=data.get("description"),
        course_id=data.get("course_id"),
        scheduled_at=data.get("scheduled_at"),
    )
    log_event("OFFERING_CREATE", user_id=g.user.id, entity="mentorship_session", entity_id=offering.id)
    return jsonify(offering.to_dict()), 201


@mentorship_bp.post("/offerings/<offering_id>/course")
@require_roles("MENTOR")
def link_offering_course(offering_id):
    data = request.get_json(silent=True) or {}
    offering = get_engine().bookings.link_course(current_actor(), offering_id, data.get("course_id"))
    return jsonify(offering.to_dict()), 200


@mentorship_bp.delete("/offerings/<offering_id>")
@require_roles("MENTOR", "ADMIN")
def delete_offering(offering_id):
    get_engine().bookings.delete_offering(current_actor(), offering_id)
    log_event("OFFERING_DELETE", user_id=g.user.id, entity="mentorship_session", entity_id=offering_id)
    return jsonify(message="Offering deleted"), 200


@mentorship_bp.post("/offerings/<offering_id>/book")
@login_required
def book_offering(offering_id):
    data = request.get_json(silent=True) or {}
    actor = current_actor()
    session = get_engine().bookings.book_offering(
        actor,
        offering_id,
        scheduled_at=data.get("scheduled_at"),
        booking_mode=data.get("booking_mode") or BookingMode.INSTANT,
        package_code=data.get("package_code"),
    )
    log_event("MENTORSHIP_BOOKING_CREATE", user_id=actor.user_id, entity="mentorship_session",
              entity_id=session.id, metadata={"offering_id": offering_id})
    return jsonify(ok=True, mode=session.booking_mode, session=session.to_dict()), 201


@mentorship_bp.get("/suggestions")
def course_suggestions():
    course_id = request.args.get("courseId") or request.args.get("course_id")
    offerings = get_engine().bookings.list_course_offerings(course_id)
    suggestions = [
        {
            "id": o.id,
            "title": o.title,
            "description": o.description,
            "duration": o.duration,
            "price": str(o.price),
            "mentor_id": o.mentor_id,
        }
        for o in offerings
    ]
    return jsonify(suggestions=suggestions, total=len(suggestions)), 200


# ---------- MENTORS: earnings ----------
@mentorship_bp.get("/earnings")
@require_roles("MENTOR")
def my_earnings():
    summary = get_engine().settlement.mentor_earnings(g.user.id)
    return jsonify(summary.to_dict()), 200
