from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app import create_app
from config import TestConfig
from models import db
from models.course import Course
from models.user import User, Role
from security.session import create_session
from services.approval import ApprovalWorkflow
from services.booking import Actor, BookingService
from services.notifications import NotificationPublisher
from services.payments import PaymentOrchestrator
from services.settlement import SettlementReporter

from fakes import InMemoryBookingRepository, FakeGateway, RecordingDispatcher

MENTOR_ID = 1
STUDENT_ID = 2
ADMIN_ID = 3
OTHER_MENTOR_ID = 4


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


# ---------- engine wired to in-memory fakes ----------

@pytest.fixture
def clock():
    return Clock(datetime(2026, 3, 2, 9, 0, 0))


@pytest.fixture
def repo():
    repo = InMemoryBookingRepository()
    repo.add_user(MENTOR_ID, roles=("MENTOR",), hourly_rate=Decimal("15000"))
    repo.add_user(STUDENT_ID, roles=("STUDENT",))
    repo.add_user(ADMIN_ID, roles=("ADMIN",))
    repo.add_user(OTHER_MENTOR_ID, roles=("MENTOR",), hourly_rate=Decimal("9000"))
    return repo


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def publisher(dispatcher):
    return NotificationPublisher([dispatcher])


@pytest.fixture
def bookings(repo, publisher, clock):
    return BookingService(repo, publisher, clock=clock)


@pytest.fixture
def approvals(bookings):
    return ApprovalWorkflow(bookings)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def payments(repo, gateway, publisher, clock):
    return PaymentOrchestrator(
        repo, gateway, publisher,
        callback_url="https://app.test/mentorship/verify-payment",
        payment_window_minutes=60,
        clock=clock,
    )


@pytest.fixture
def settlement(repo):
    return SettlementReporter(repo)


@pytest.fixture
def mentor():
    return Actor(MENTOR_ID, frozenset({"MENTOR"}), "user1@example.com")


@pytest.fixture
def student():
    return Actor(STUDENT_ID, frozenset({"STUDENT"}), "user2@example.com")


@pytest.fixture
def admin():
    return Actor(ADMIN_ID, frozenset({"ADMIN"}), "user3@example.com")


@pytest.fixture
def other_mentor():
    return Actor(OTHER_MENTOR_ID, frozenset({"MENTOR"}), "user4@example.com")


@pytest.fixture
def book(bookings, student, clock):
    """Book a 60 minute session with the default mentor."""
    def _book(mode="INSTANT", **kwargs):
        kwargs.setdefault("duration_minutes", 60)
        return bookings.create_booking(
            student,
            mentor_id=MENTOR_ID,
            scheduled_at=clock.now + timedelta(days=2),
            booking_mode=mode,
            **kwargs,
        )
    return _book


# ---------- Flask app backed by SQLite ----------

@pytest.fixture
def app():
    app = create_app(TestConfig)
    app.extensions["payment_gateway"] = FakeGateway()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def app_gateway(app):
    return app.extensions["payment_gateway"]


@pytest.fixture
def users(app):
    with app.app_context():
        roles = {r.name: r for r in Role.query.all()}
        mentor = User(email="mentor@example.com", full_name="Ada Mentor",
                      hourly_rate=Decimal("15000"), roles=[roles["MENTOR"]])
        student = User(email="student@example.com", full_name="Sam Student", roles=[roles["STUDENT"]])
        admin = User(email="admin@example.com", roles=[roles["ADMIN"]])
        outsider = User(email="outsider@example.com", roles=[roles["MENTOR"]])
        db.session.add_all([mentor, student, admin, outsider])
        db.session.commit()
        db.session.add(Course(id="course-1", title="Intro to Data", owner_user_id=mentor.id))
        db.session.commit()
        return {
            "mentor": mentor.id,
            "student": student.id,
            "admin": admin.id,
            "outsider": outsider.id,
        }


@pytest.fixture
def login(app):
    """Returns a test client authenticated as the given user id."""
    def _login(user_id):
        with app.app_context():
            token = create_session(user_id)
        client = app.test_client()
        client.set_cookie(app.config["AUTH_COOKIE_NAME"], token)
        client.set_cookie("csrf_token", "csrf-test")
        client.environ_base["HTTP_X_CSRF_TOKEN"] = "csrf-test"
        return client
    return _login


@pytest.fixture
def future_iso():
    return (datetime.utcnow() + timedelta(days=3)).replace(microsecond=0).isoformat()
