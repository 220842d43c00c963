"""
Post-commit notification publishing.

Services commit their state change first and only then call
``NotificationPublisher.publish``. Every dispatcher failure is logged and
dropped: a notification problem must never look like a failed booking action.
"""
import logging
from dataclasses import dataclass, asdict
from typing import Optional

from models import db
from models.notification import Notification
from utils.emailer import send_email

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationPayload:
    type: str
    title: str
    message: str
    action_url: Optional[str] = None
    action_label: Optional[str] = None

    def to_dict(self):
        return asdict(self)


class NotificationPublisher:
    def __init__(self, dispatchers=None):
        self.dispatchers = list(dispatchers or [])

    def publish(self, user_id, payload: NotificationPayload):
        for dispatcher in self.dispatchers:
            try:
                dispatcher.notify_user(user_id, payload)
            except Exception:
                logger.warning(
                    "Notification %r to user %s failed in %s",
                    payload.title, user_id, type(dispatcher).__name__, exc_info=True,
                )


class InAppNotificationDispatcher:
    """Stores the notification for the in-app inbox."""

    def __init__(self, session=None):
        self.session = session or db.session

    def notify_user(self, user_id, payload: NotificationPayload):
        row = Notification(
            user_id=user_id,
            type=payload.type,
            title=payload.title,
            message=payload.message,
            action_url=payload.action_url,
            action_label=payload.action_label,
        )
        self.session.add(row)
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise


class EmailNotificationDispatcher:
    def __init__(self, repository):
        self.repository = repository

    def notify_user(self, user_id, payload: NotificationPayload):
        user = self.repository.get_user(user_id)
        if not user or not user.email:
            return
        body = payload.message
        if payload.action_url:
            body += f"\n\n{payload.action_label or 'Open'}: {payload.action_url}"
        ok, error = send_email(user.email, payload.title, body)
        if not ok:
            logger.info("Email to user %s not sent: %s", user_id, error)


# ---------- message catalogue ----------

def booking_requested(session):
    return NotificationPayload(
        type="info",
        title="New mentorship request",
        message=f"A student requested \"{session.title}\". Please approve or reject it.",
        action_url=f"/tutor/mentorship/{session.id}",
        action_label="Review request",
    )


def booking_approved(session):
    return NotificationPayload(
        type="success",
        title="Mentorship request approved",
        message=f"Your mentor approved \"{session.title}\". Complete payment to confirm it.",
        action_url=f"/mentorship/session/{session.id}",
        action_label="Proceed to payment",
    )


def booking_rejected(session, reason=None):
    message = f"Your mentor could not take \"{session.title}\"."
    if reason:
        message += f" Reason: {reason}"
    return NotificationPayload(
        type="warning",
        title="Mentorship request declined",
        message=message,
        action_url="/mentorship",
        action_label="Find another mentor",
    )


def payment_received(session, for_mentor=False):
    if for_mentor:
        return NotificationPayload(
            type="payment",
            title="Mentorship session paid",
            message=f"\"{session.title}\" has been paid for.",
            action_url=f"/tutor/mentorship/{session.id}",
            action_label="View session",
        )
    return NotificationPayload(
        type="success",
        title="Payment Successful",
        message=f"Your payment for \"{session.title}\" is confirmed.",
        action_url=f"/mentorship/session/{session.id}",
        action_label="View session",
    )


def status_changed(session):
    return NotificationPayload(
        type="info",
        title="Mentorship session updated",
        message=f"\"{session.title}\" is now {session.status.replace('_', ' ').lower()}.",
        action_url=f"/mentorship/session/{session.id}",
        action_label="View session",
    )
