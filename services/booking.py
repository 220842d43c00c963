"""
Mentorship session lifecycle.

A session is created priced and in its initial state (``SCHEDULED`` for instant
bookings, ``PENDING_MENTOR_REVIEW`` for requests) and afterwards only moves along
``TRANSITIONS``. Every move is a conditional update on the current status, so
two callers racing on the same session cannot both win.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from models.mentorship_session import (
    MentorshipSession, SessionStatus, BookingMode, PaymentStatus,
)
from services import notifications
from services.errors import ValidationError, ForbiddenError, NotFoundError, StateConflictError
from services.pricing import compute_price, DEFAULT_PLATFORM_SHARE_PERCENT

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Mentorship Session"
DEFAULT_HOURLY_RATE = Decimal("15000")
APPROVAL_WINDOW_HOURS = 72

# events
APPROVE = "approve"
REJECT = "reject"
START = "start"
COMPLETE = "complete"
CANCEL = "cancel"
MARK_NO_SHOW = "no_show"

EVENTS = (APPROVE, REJECT, START, COMPLETE, CANCEL, MARK_NO_SHOW)

TRANSITIONS = {
    (SessionStatus.PENDING_MENTOR_REVIEW, APPROVE): SessionStatus.SCHEDULED,
    (SessionStatus.PENDING_MENTOR_REVIEW, REJECT): SessionStatus.REJECTED,
    (SessionStatus.SCHEDULED, START): SessionStatus.IN_PROGRESS,
    (SessionStatus.IN_PROGRESS, COMPLETE): SessionStatus.COMPLETED,
}
for _state in SessionStatus.ACTIVE:
    TRANSITIONS[(_state, CANCEL)] = SessionStatus.CANCELLED
    TRANSITIONS[(_state, MARK_NO_SHOW)] = SessionStatus.NO_SHOW

# Only the session's mentor decides on a request
MENTOR_ONLY_EVENTS = frozenset({APPROVE, REJECT})

# target status -> event, for callers that speak in statuses
STATUS_EVENTS = {
    SessionStatus.SCHEDULED: APPROVE,
    SessionStatus.REJECTED: REJECT,
    SessionStatus.IN_PROGRESS: START,
    SessionStatus.COMPLETED: COMPLETE,
    SessionStatus.CANCELLED: CANCEL,
    SessionStatus.NO_SHOW: MARK_NO_SHOW,
}


@dataclass(frozen=True)
class Actor:
    user_id: int
    roles: frozenset = field(default_factory=frozenset)
    email: str = None

    @property
    def is_admin(self):
        return "ADMIN" in self.roles or "SUPER_ADMIN" in self.roles

    @property
    def is_mentor(self):
        return "MENTOR" in self.roles


def next_state(current, event):
    target = TRANSITIONS.get((current, event))
    if target is None:
        raise StateConflictError(action=event, current_state=current)
    return target


def _naive_utc(value):
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def clean_text(value, field):
    """Stripped text or None; anything that is not a string is rejected."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be text", details={"field": field})
    return value.strip() or None


def parse_scheduled_at(value):
    if isinstance(value, datetime):
        return _naive_utc(value)
    if not value:
        raise ValidationError("Please select a valid session date/time.", details={"field": "scheduled_at"})
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError("Please select a valid session date/time.", details={"field": "scheduled_at"})
    return _naive_utc(parsed)


class BookingService:
    def __init__(self, repository, publisher, clock=datetime.utcnow,
                 default_hourly_rate=DEFAULT_HOURLY_RATE,
                 approval_window_hours=APPROVAL_WINDOW_HOURS,
                 platform_share_percent=DEFAULT_PLATFORM_SHARE_PERCENT,
                 enforce_approval_deadline=False):
        self.repository = repository
        self.publisher = publisher
        self.clock = clock
        self.default_hourly_rate = Decimal(str(default_hourly_rate))
        self.approval_window = timedelta(hours=approval_window_hours)
        self.platform_share_percent = platform_share_percent
        self.enforce_approval_deadline = enforce_approval_deadline

    # ---------- pricing ----------
    def mentor_rate(self, mentor):
        rate = getattr(mentor, "hourly_rate", None)
        return Decimal(str(rate)) if rate else self.default_hourly_rate

    def quote(self, mentor_id, duration_minutes, package_code=None):
        mentor = self.repository.get_mentor(mentor_id)
        if not mentor:
            raise NotFoundError("Selected mentor is unavailable.", details={"mentor_id": mentor_id})
        return compute_price(self.mentor_rate(mentor), duration_minutes, package_code,
                             self.platform_share_percent)

    # ---------- creation ----------
    def create_booking(self, actor, mentor_id, scheduled_at, duration_minutes=60,
                       booking_mode=BookingMode.INSTANT, title=None, description=None,
                       package_code=None, course_id=None, offering_id=None):
        if actor.is_admin:
            raise ForbiddenError("Admins cannot book mentorship sessions.")

        mode = (clean_text(booking_mode, "booking_mode") or BookingMode.INSTANT).upper()
        title = clean_text(title, "title") or DEFAULT_TITLE
        description = clean_text(description, "description")
        if mode not in BookingMode.ALL:
            raise ValidationError("Booking mode must be INSTANT or REQUEST", details={"field": "booking_mode", "booking_mode": booking_mode})

        mentor = self.repository.get_mentor(mentor_id)
        if not mentor:
            raise NotFoundError("Selected mentor is unavailable.", details={"mentor_id": mentor_id})
        if mentor.id == actor.user_id:
            raise ValidationError("You cannot book a session with yourself.")

        now = self.clock()
        when = parse_scheduled_at(scheduled_at)
        if when <= now:
            raise ValidationError("Cannot book a session in the past.", details={"scheduled_at": when.isoformat()})

        if len(title) > 200:
            raise ValidationError("Title is too long", details={"field": "title"})

        quote = compute_price(self.mentor_rate(mentor), duration_minutes, package_code,
                              self.platform_share_percent)

        is_request = mode == BookingMode.REQUEST
        session = MentorshipSession(
            id=str(uuid.uuid4()),
            title=title,
            description=description,
            duration=quote.duration_minutes,
            price=quote.total_amount,
            booking_mode=mode,
            status=SessionStatus.PENDING_MENTOR_REVIEW if is_request else SessionStatus.SCHEDULED,
            payment_status=PaymentStatus.PENDING,
            package_code=None if quote.package_code == "NONE" else quote.package_code,
            sessions_count=quote.sessions_count,
            scheduled_at=when,
            approval_deadline=now + self.approval_window if is_request else None,
            mentor_id=mentor.id,
            student_id=actor.user_id,
            course_id=course_id,
            is_offering=False,
            offering_id=offering_id,
            created_at=now,
            updated_at=now,
        )
        self.repository.add_session(session)
        self.repository.commit()

        logger.info("Mentorship session %s booked (%s) by student %s with mentor %s for %s",
                    session.id, mode, actor.user_id, mentor.id, session.price)
        if is_request:
            self.publisher.publish(mentor.id, notifications.booking_requested(session))
        return session

    # ---------- offerings ----------
    def create_offering(self, actor, title, duration_minutes=60, description=None,
                        course_id=None, scheduled_at=None):
        mentor = self.repository.get_mentor(actor.user_id)
        if not mentor:
            raise ForbiddenError("Only mentors can publish mentorship offerings.")

        title = clean_text(title, "title")
        description = clean_text(description, "description")
        if not title:
            raise ValidationError("Title is required", details={"field": "title"})
        if course_id:
            self._check_course_owner(actor, course_id)

        now = self.clock()
        quote = compute_price(self.mentor_rate(mentor), duration_minutes, None, self.platform_share_percent)
        offering = MentorshipSession(
            id=str(uuid.uuid4()),
            title=title,
            description=description,
            duration=quote.duration_minutes,
            price=quote.total_amount,
            booking_mode=BookingMode.INSTANT,
            status=SessionStatus.SCHEDULED,
            payment_status=PaymentStatus.PENDING,
            sessions_count=1,
            scheduled_at=parse_scheduled_at(scheduled_at) if scheduled_at else now,
            mentor_id=mentor.id,
            student_id=mentor.id,
            course_id=course_id or None,
            is_offering=True,
            created_at=now,
            updated_at=now,
        )
        self.repository.add_session(offering)
        self.repository.commit()
        logger.info("Offering %s published by mentor %s", offering.id, mentor.id)
        return offering

    def _get_offering(self, offering_id):
        offering = self.repository.get_session(offering_id)
        if not offering or not offering.is_offering:
            raise NotFoundError("Offering not found", details={"offering_id": offering_id})
        return offering

    def _check_course_owner(self, actor, course_id):
        if not self.repository.is_course_owner(course_id, actor.user_id):
            raise ForbiddenError("You can only link courses you teach.", details={"course_id": course_id})

    def book_offering(self, actor, offering_id, scheduled_at, booking_mode=BookingMode.INSTANT,
                      package_code=None):
        offering = self._get_offering(offering_id)
        if offering.status != SessionStatus.SCHEDULED:
            raise NotFoundError("Offering not found", details={"offering_id": offering_id})
        return self.create_booking(
            actor,
            mentor_id=offering.mentor_id,
            scheduled_at=scheduled_at,
            duration_minutes=offering.duration,
            booking_mode=booking_mode,
            title=offering.title,
            description=offering.description,
            package_code=package_code,
            course_id=offering.course_id,
            offering_id=offering.id,
        )

    def link_course(self, actor, offering_id, course_id):
        offering = self._get_offering(offering_id)
        if offering.mentor_id != actor.user_id:
            raise ForbiddenError(details={"offering_id": offering_id})
        if course_id:
            self._check_course_owner(actor, course_id)
        self.repository.update_session(offering.id, {"course_id": course_id or None, "updated_at": self.clock()})
        self.repository.commit()
        return self.repository.get_session(offering.id)

    def delete_offering(self, actor, offering_id):
        offering = self._get_offering(offering_id)
        if offering.mentor_id != actor.user_id and not actor.is_admin:
            raise ForbiddenError(details={"offering_id": offering_id})
        if self.repository.count_offering_bookings(offering.id) > 0:
            raise StateConflictError("This offering has already been booked.",
                                     session_id=offering.id, action="delete_offering")
        self.repository.delete_session(offering)
        self.repository.commit()
        logger.info("Offering %s deleted by user %s", offering_id, actor.user_id)

    def list_course_offerings(self, course_id, limit=5):
        if not course_id:
            raise ValidationError("course_id is required", details={"field": "course_id"})
        return self.repository.list_course_offerings(course_id, limit=limit)

    # ---------- reads ----------
    def get_session(self, session_id):
        session = self.repository.get_session(session_id)
        if not session:
            raise NotFoundError("Session not found", details={"session_id": session_id})
        return session

    def get_session_for(self, actor, session_id):
        session = self.get_session(session_id)
        if actor.user_id not in (session.student_id, session.mentor_id) and not actor.is_admin:
            raise ForbiddenError(details={"session_id": session_id})
        return session

    def list_for_student(self, actor, status=None):
        return self.repository.list_sessions(student_id=actor.user_id, status=status)

    def list_for_mentor(self, actor, status=None):
        return self.repository.list_sessions(mentor_id=actor.user_id, status=status)

    def list_all(self, status=None, limit=200):
        return self.repository.list_sessions(status=status, limit=limit)

    # ---------- transitions ----------
    def _authorize(self, actor, session, event):
        if event in MENTOR_ONLY_EVENTS:
            allowed = actor.user_id == session.mentor_id
        else:
            allowed = actor.user_id == session.mentor_id or actor.is_admin
        if not allowed:
            raise ForbiddenError(details={"session_id": session.id, "action": event})

    def transition(self, actor, session_id, event, reason=None, note=None):
        if event not in EVENTS:
            raise ValidationError("Unknown action", details={"action": event})

        session = self.get_session(session_id)
        if session.is_offering:
            raise StateConflictError(session_id=session.id, action=event, current_state=session.status)
        self._authorize(actor, session, event)

        if event in MENTOR_ONLY_EVENTS and self.enforce_approval_deadline:
            deadline = session.approval_deadline
            if deadline is not None and self.clock() > deadline:
                raise StateConflictError("The approval window for this request has expired.",
                                         session_id=session.id, action=event, current_state=session.status)

        if note and actor.is_admin and actor.user_id != session.mentor_id:
            note = f"ADMIN: {note}"
        return self.apply_transition(session, event, reason=reason, note=note,
                                     notify_mentor=actor.user_id != session.mentor_id)

    def apply_transition(self, session, event, reason=None, note=None, notify_mentor=False):
        """Move ``session`` along ``event`` without authorization checks (system sweeps)."""
        current = session.status
        target = next_state(current, event)
        now = self.clock()

        values = {"status": target, "updated_at": now}
        if event == APPROVE:
            values.update(approved_at=now, approval_deadline=None)
            if reason:
                values["approval_notes"] = reason
        elif event == REJECT:
            values.update(rejected_at=now, approval_deadline=None, approval_notes=reason or None)
        elif event == START:
            values["started_at"] = now
        elif event == COMPLETE:
            values["ended_at"] = now
        else:
            values.update(cancelled_at=now, approval_deadline=None)
        if note:
            values["notes"] = f"{session.notes or ''}\n{note}".strip()

        if not self.repository.update_session(session.id, values, expected_statuses=[current]):
            self.repository.rollback()
            latest = self.repository.get_session(session.id)
            raise StateConflictError(session_id=session.id, action=event,
                                     current_state=latest.status if latest else None)
        self.repository.commit()

        session = self.repository.get_session(session.id)
        logger.info("Mentorship session %s: %s -> %s (%s)", session.id, current, target, event)

        if event == APPROVE:
            self.publisher.publish(session.student_id, notifications.booking_approved(session))
        elif event == REJECT:
            self.publisher.publish(session.student_id, notifications.booking_rejected(session, reason))
        else:
            self.publisher.publish(session.student_id, notifications.status_changed(session))
            if notify_mentor:
                self.publisher.publish(session.mentor_id, notifications.status_changed(session))
        return session

    def set_status(self, actor, session_id, status, note=None):
        event = STATUS_EVENTS.get((clean_text(status, "status") or "").upper())
        if event is None or event in MENTOR_ONLY_EVENTS:
            raise ValidationError("Unsupported status", details={"field": "status", "status": status})
        return self.transition(actor, session_id, event, note=note)

    def mark_in_progress(self, actor, session_id):
        return self.transition(actor, session_id, START)

    def mark_completed(self, actor, session_id):
        return self.transition(actor, session_id, COMPLETE)

    def cancel(self, actor, session_id, note=None):
        return self.transition(actor, session_id, CANCEL, note=note)

    def mark_no_show(self, actor, session_id, note=None):
        return self.transition(actor, session_id, MARK_NO_SHOW, note=note)
