from .db import db
from .user import User, Role, user_roles
from .audit_log import AuditLog
from .auth_session import AuthSession
from .course import Course
from .mentorship_session import MentorshipSession, SessionStatus, BookingMode, PaymentStatus
from .transaction import Transaction, TransactionStatus
from .notification import Notification
