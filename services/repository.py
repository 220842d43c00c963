"""
Data access for the booking engine.

Services receive a ``BookingRepository`` instead of reaching for ``db.session``
directly, so the state machine and pricing logic can run against an in-memory
store in tests. Status changes go through conditional updates: the store, not an
in-process lock, decides which of two concurrent callers wins.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from models import db
from models.course import Course
from models.mentorship_session import MentorshipSession, SessionStatus
from models.transaction import Transaction, TransactionStatus
from models.user import User, Role
from services.errors import StateConflictError

logger = logging.getLogger(__name__)


@dataclass
class LedgerTotals:
    count: int = 0
    amount: Decimal = Decimal("0.00")
    platform_share: Decimal = Decimal("0.00")
    provider_share: Decimal = Decimal("0.00")


class BookingRepository(ABC):
    # ---------- users / courses ----------
    @abstractmethod
    def get_user(self, user_id):
        """Return the user or None."""

    @abstractmethod
    def get_mentor(self, mentor_id):
        """Return the user if it is an active mentor, else None."""

    @abstractmethod
    def is_course_owner(self, course_id, user_id) -> bool:
        """True when ``user_id`` teaches ``course_id``."""

    # ---------- sessions ----------
    @abstractmethod
    def get_session(self, session_id):
        """Return the mentorship session or None."""

    @abstractmethod
    def add_session(self, session):
        """Stage a new session (persisted on commit)."""

    @abstractmethod
    def delete_session(self, session):
        """Remove a session row. Only offerings are ever deleted."""

    @abstractmethod
    def update_session(self, session_id, values, expected_statuses=None, expected_payment_status=None) -> bool:
        """
        Apply ``values`` only if the row still matches the expected status
        (and payment status). Returns False when nothing was updated.
        """

    @abstractmethod
    def list_sessions(self, student_id=None, mentor_id=None, status=None, limit=100):
        """Real bookings (offerings excluded), ordered by scheduled time."""

    @abstractmethod
    def list_course_offerings(self, course_id, limit=5):
        """Bookable offerings linked to a course, newest first."""

    @abstractmethod
    def count_offering_bookings(self, offering_id) -> int:
        """Number of sessions booked from an offering."""

    @abstractmethod
    def list_overdue_reviews(self, now):
        """Sessions still waiting for mentor review past their deadline."""

    # ---------- transactions ----------
    @abstractmethod
    def get_transaction(self, reference):
        """Return the transaction or None."""

    @abstractmethod
    def get_pending_transaction(self, session_id):
        """Return the in-flight transaction of a session, if any."""

    @abstractmethod
    def add_transaction(self, transaction):
        """
        Persist a new PENDING transaction immediately. Raises
        ``StateConflictError`` if the session already has one in flight.
        """

    @abstractmethod
    def update_transaction(self, reference, values, expected_status=TransactionStatus.PENDING) -> bool:
        """Conditional update keyed on the current status."""

    @abstractmethod
    def list_stale_transactions(self, created_before):
        """PENDING transactions created before the cutoff."""

    @abstractmethod
    def summarize_transactions(self, status, start=None, end=None, product_type=None, provider_id=None) -> LedgerTotals:
        """Read-only sums over the ledger, windowed on ``paid_at`` (``created_at`` when unpaid)."""

    # ---------- unit of work ----------
    @abstractmethod
    def commit(self):
        pass

    @abstractmethod
    def rollback(self):
        pass


class SqlAlchemyBookingRepository(BookingRepository):
    def __init__(self, session=None):
        self.session = session or db.session

    def get_user(self, user_id):
        if user_id is None:
            return None
        return self.session.get(User, user_id)

    def get_mentor(self, mentor_id):
        if mentor_id is None:
            return None
        return (
            User.query
            .join(User.roles)
            .filter(User.id == mentor_id, User.is_active.is_(True), Role.name == "MENTOR")
            .first()
        )

    def is_course_owner(self, course_id, user_id) -> bool:
        course = self.session.get(Course, course_id)
        return course is not None and course.owner_user_id == user_id

    def get_session(self, session_id):
        if not session_id:
            return None
        return self.session.get(MentorshipSession, session_id)

    def add_session(self, session):
        self.session.add(session)

    def delete_session(self, session):
        self.session.delete(session)

    def update_session(self, session_id, values, expected_statuses=None, expected_payment_status=None) -> bool:
        q = MentorshipSession.query.filter(MentorshipSession.id == session_id)
        if expected_statuses is not None:
            q = q.filter(MentorshipSession.status.in_(list(expected_statuses)))
        if expected_payment_status is not None:
            q = q.filter(MentorshipSession.payment_status == expected_payment_status)
        updated = q.update(values, synchronize_session="fetch")
        return updated == 1

    def list_sessions(self, student_id=None, mentor_id=None, status=None, limit=100):
        q = MentorshipSession.query.filter(MentorshipSession.is_offering.is_(False))
        if student_id is not None:
            q = q.filter(MentorshipSession.student_id == student_id)
        if mentor_id is not None:
            q = q.filter(MentorshipSession.mentor_id == mentor_id)
        if status:
            q = q.filter(MentorshipSession.status == status)
        return q.order_by(MentorshipSession.scheduled_at.asc()).limit(limit).all()

    def list_course_offerings(self, course_id, limit=5):
        return (
            MentorshipSession.query
            .filter(
                MentorshipSession.course_id == course_id,
                MentorshipSession.is_offering.is_(True),
                MentorshipSession.status == SessionStatus.SCHEDULED,
            )
            .order_by(MentorshipSession.created_at.desc())
            .limit(limit)
            .all()
        )

    def count_offering_bookings(self, offering_id) -> int:
        return MentorshipSession.query.filter(MentorshipSession.offering_id == offering_id).count()

    def list_overdue_reviews(self, now):
        return (
            MentorshipSession.query
            .filter(
                MentorshipSession.status == SessionStatus.PENDING_MENTOR_REVIEW,
                MentorshipSession.approval_deadline.isnot(None),
                MentorshipSession.approval_deadline < now,
            )
            .all()
        )

    def get_transaction(self, reference):
        if not reference:
            return None
        return Transaction.query.filter_by(reference=reference).first()

    def get_pending_transaction(self, session_id):
        return Transaction.query.filter_by(session_id=session_id, status=TransactionStatus.PENDING).first()

    def add_transaction(self, transaction):
        self.session.add(transaction)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            # uq_transactions_session_pending fired: another attempt is in flight
            logger.info("Duplicate payment attempt for session %s", transaction.session_id)
            raise StateConflictError(
                "A payment for this session is already in progress",
                session_id=transaction.session_id,
                action="initiate_payment",
            )
        return transaction

    def update_transaction(self, reference, values, expected_status=TransactionStatus.PENDING) -> bool:
        q = Transaction.query.filter(Transaction.reference == reference)
        if expected_status is not None:
            q = q.filter(Transaction.status == expected_status)
        updated = q.update(values, synchronize_session="fetch")
        return updated == 1

    def list_stale_transactions(self, created_before):
        return (
            Transaction.query
            .filter(Transaction.status == TransactionStatus.PENDING, Transaction.created_at < created_before)
            .all()
        )

    def summarize_transactions(self, status, start=None, end=None, product_type=None, provider_id=None) -> LedgerTotals:
        q = self.session.query(
            func.count(Transaction.id),
            func.sum(Transaction.amount),
            func.sum(Transaction.platform_share_amount),
            func.sum(Transaction.provider_share_amount),
        ).filter(Transaction.status == status)
        # money counts when it was paid; rows that never got paid fall back to when they were opened
        booked_at = func.coalesce(Transaction.paid_at, Transaction.created_at)
        if start is not None:
            q = q.filter(booked_at >= start)
        if end is not None:
            q = q.filter(booked_at < end)
        if product_type:
            q = q.filter(Transaction.product_type == product_type)
        if provider_id is not None:
            q = q.filter(Transaction.provider_id == provider_id)

        count, amount, platform, provider = q.one()
        return LedgerTotals(
            count=int(count or 0),
            amount=_money(amount),
            platform_share=_money(platform),
            provider_share=_money(provider),
        )

    def commit(self):
        self.session.commit()

    def rollback(self):
        self.session.rollback()


def _money(value):
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(Decimal("0.01"))
