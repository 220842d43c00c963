"""REQUEST-mode approval gate in front of payment."""
import logging

from services.booking import APPROVE, REJECT, clean_text
from services.errors import StateConflictError

logger = logging.getLogger(__name__)

EXPIRED_NOTE = "Approval window expired"


class ApprovalWorkflow:
    def __init__(self, bookings):
        self.bookings = bookings

    def approve(self, session_id, actor, note=None):
        """Mentor accepts the request; the student can now pay for it."""
        return self.bookings.transition(actor, session_id, APPROVE, reason=clean_text(note, "note"))

    def reject(self, session_id, actor, reason=None):
        return self.bookings.transition(actor, session_id, REJECT, reason=clean_text(reason, "reason"))

    def expire_overdue(self, now=None):
        """
        Reject every request still pending past its approval deadline.
        Returns the ids of the sessions that were expired.
        """
        now = now or self.bookings.clock()
        expired = []
        for session in self.bookings.repository.list_overdue_reviews(now):
            try:
                self.bookings.apply_transition(session, REJECT, reason=EXPIRED_NOTE)
            except StateConflictError:
                # the mentor decided in the meantime
                continue
            expired.append(session.id)
        if expired:
            logger.info("Expired %d overdue mentorship requests", len(expired))
        return expired
