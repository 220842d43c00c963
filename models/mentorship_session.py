from datetime import datetime
from models.db import db


class SessionStatus:
    PENDING_MENTOR_REVIEW = "PENDING_MENTOR_REVIEW"
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"
    REJECTED = "REJECTED"

    ALL = (
        PENDING_MENTOR_REVIEW, SCHEDULED, IN_PROGRESS,
        COMPLETED, CANCELLED, NO_SHOW, REJECTED,
    )
    TERMINAL = frozenset({COMPLETED, CANCELLED, NO_SHOW, REJECTED})
    ACTIVE = (PENDING_MENTOR_REVIEW, SCHEDULED, IN_PROGRESS)


class BookingMode:
    INSTANT = "INSTANT"
    REQUEST = "REQUEST"

    ALL = (INSTANT, REQUEST)


class PaymentStatus:
    PENDING = "PENDING"
    PAID = "PAID"


class MentorshipSession(db.Model):
    __tablename__ = "mentorship_sessions"

    id = db.Column(db.String(36), primary_key=True)

    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    duration = db.Column(db.Integer, nullable=False)         # minutes, 30..180
    price = db.Column(db.Numeric(12, 2), nullable=False)     # fixed at creation

    booking_mode = db.Column(db.String(20), nullable=False, default=BookingMode.INSTANT)
    status = db.Column(db.String(30), nullable=False, default=SessionStatus.SCHEDULED, index=True)
    payment_status = db.Column(db.String(20), nullable=False, default=PaymentStatus.PENDING)

    package_code = db.Column(db.String(20), nullable=True)
    sessions_count = db.Column(db.Integer, nullable=False, default=1)

    scheduled_at = db.Column(db.DateTime, nullable=False, index=True)
    approval_deadline = db.Column(db.DateTime, nullable=True)
    approval_notes = db.Column(db.String(500), nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)
    rejected_at = db.Column(db.DateTime, nullable=True)

    started_at = db.Column(db.DateTime, nullable=True)
    ended_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    mentor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    student_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    course_id = db.Column(db.String(36), db.ForeignKey("courses.id"), nullable=True, index=True)

    # Offerings are templates: mentor_id == student_id and never payable
    is_offering = db.Column(db.Boolean, default=False, nullable=False)
    offering_id = db.Column(db.String(36), db.ForeignKey("mentorship_sessions.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "duration": self.duration,
            "price": str(self.price),
            "booking_mode": self.booking_mode,
            "status": self.status,
            "payment_status": self.payment_status,
            "package_code": self.package_code,
            "sessions_count": self.sessions_count,
            "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "approval_deadline": self.approval_deadline.isoformat() if self.approval_deadline else None,
            "approval_notes": self.approval_notes,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "mentor_id": self.mentor_id,
            "student_id": self.student_id,
            "course_id": self.course_id,
            "is_offering": self.is_offering,
            "offering_id": self.offering_id,
        }
