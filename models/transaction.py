from datetime import datetime
from models.db import db


class TransactionStatus:
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    TERMINAL = frozenset({COMPLETED, FAILED})


class Transaction(db.Model):
    __tablename__ = "transactions"

    id = db.Column(db.Integer, primary_key=True)
    reference = db.Column(db.String(80), nullable=False, unique=True, index=True)

    session_id = db.Column(db.String(36), db.ForeignKey("mentorship_sessions.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    provider_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    amount = db.Column(db.Numeric(12, 2), nullable=False)
    platform_share_amount = db.Column(db.Numeric(12, 2), nullable=False)
    provider_share_amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(10), nullable=False, default="NGN")

    status = db.Column(db.String(20), nullable=False, default=TransactionStatus.PENDING, index=True)
    payment_method = db.Column(db.String(20), nullable=False, default="paystack")
    product_type = db.Column(db.String(30), nullable=False, default="MENTORSHIP", index=True)
    description = db.Column(db.String(255), nullable=True)

    # Stripe checkout session id; Paystack reuses `reference`
    gateway_reference = db.Column(db.String(255), nullable=True, unique=True)
    failure_reason = db.Column(db.String(120), nullable=True)
    metadata_json = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    paid_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        # At most one in-flight payment attempt per session
        db.Index(
            "uq_transactions_session_pending",
            "session_id",
            unique=True,
            sqlite_where=db.text("status = 'PENDING'"),
            postgresql_where=db.text("status = 'PENDING'"),
        ),
    )

    def to_dict(self):
        return {
            "reference": self.reference,
            "session_id": self.session_id,
            "amount": str(self.amount),
            "platform_share_amount": str(self.platform_share_amount),
            "provider_share_amount": str(self.provider_share_amount),
            "currency": self.currency,
            "status": self.status,
            "payment_method": self.payment_method,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
        }
