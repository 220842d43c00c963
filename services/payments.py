"""
Payment initiation and reconciliation for mentorship sessions.

Nothing the payer's browser or a webhook says is taken at face value: a
transaction only becomes COMPLETED after ``verify_payment`` has asked the
gateway directly.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlencode, urlparse, parse_qsl, urlunparse

from models.mentorship_session import SessionStatus, PaymentStatus
from models.transaction import Transaction, TransactionStatus
from services import notifications
from services.errors import ValidationError, ForbiddenError, NotFoundError, StateConflictError, GatewayError
from services.gateways import SUCCESS, PENDING
from services.pricing import split_revenue, to_minor_units, DEFAULT_PLATFORM_SHARE_PERCENT

logger = logging.getLogger(__name__)

PRODUCT_TYPE = "MENTORSHIP"
REFERENCE_PREFIX = "mentorship_"


@dataclass
class PaymentInitiation:
    authorization_url: str
    reference: str
    session_id: str
    amount: object

    def to_dict(self):
        return {
            "authorization_url": self.authorization_url,
            "reference": self.reference,
            "session_id": self.session_id,
            "amount": str(self.amount),
        }


@dataclass
class PaymentVerification:
    reference: str
    status: str
    session_id: str
    payment_status: Optional[str] = None
    already_processed: bool = False
    reason: Optional[str] = None

    @property
    def ok(self):
        return self.status == TransactionStatus.COMPLETED

    def to_dict(self):
        return {
            "ok": self.ok,
            "reference": self.reference,
            "status": self.status,
            "session_id": self.session_id,
            "payment_status": self.payment_status,
            "already_processed": self.already_processed,
            "reason": self.reason,
        }


def append_query(url: str, params: dict) -> str:
    if not url:
        return url
    parts = urlparse(url)
    query = dict(parse_qsl(parts.query))
    query.update({k: v for k, v in params.items() if v is not None})
    return urlunparse(parts._replace(query=urlencode(query)))


class PaymentOrchestrator:
    def __init__(self, repository, gateway, publisher, callback_url, currency="NGN",
                 platform_share_percent=DEFAULT_PLATFORM_SHARE_PERCENT,
                 payment_window_minutes=None, clock=datetime.utcnow):
        self.repository = repository
        self.gateway = gateway
        self.publisher = publisher
        self.callback_url = callback_url
        self.currency = currency
        self.platform_share_percent = platform_share_percent
        self.payment_window_minutes = payment_window_minutes
        self.clock = clock

    # ---------- initiation ----------
    def initiate_payment(self, session_id, payer_email, payer_id=None) -> PaymentInitiation:
        session = self.repository.get_session(session_id)
        if not session:
            raise NotFoundError("Session not found", details={"session_id": session_id})
        if payer_id is not None and payer_id != session.student_id:
            raise ForbiddenError(details={"session_id": session_id})
        if not (payer_email or "").strip():
            raise ValidationError("A payer email is required", details={"field": "email"})

        if (
            session.is_offering
            or session.status != SessionStatus.SCHEDULED
            or session.payment_status != PaymentStatus.PENDING
        ):
            raise StateConflictError(session_id=session.id, action="initiate_payment",
                                     current_state=session.status,
                                     details={"payment_status": session.payment_status})

        if self.repository.get_pending_transaction(session.id):
            raise StateConflictError("A payment for this session is already in progress",
                                     session_id=session.id, action="initiate_payment")

        platform_share, provider_share = split_revenue(session.price, self.platform_share_percent)
        reference = f"{REFERENCE_PREFIX}{uuid.uuid4()}"
        metadata = {
            "productType": PRODUCT_TYPE,
            "mentorshipKind": "PACKAGE" if session.package_code else "ONE_OFF",
            "mentorshipSessionId": session.id,
            "packageCode": session.package_code,
            "packageSessions": session.sessions_count,
            "tutorUserId": session.mentor_id,
            "payerEmail": payer_email,
        }
        tx = Transaction(
            reference=reference,
            session_id=session.id,
            user_id=session.student_id,
            provider_id=session.mentor_id,
            amount=session.price,
            platform_share_amount=platform_share,
            provider_share_amount=provider_share,
            currency=self.currency,
            status=TransactionStatus.PENDING,
            payment_method=self.gateway.name,
            product_type=PRODUCT_TYPE,
            description=f"{'Package' if session.package_code else 'One-off'} mentorship: {session.title}"[:255],
            metadata_json=metadata,
            created_at=self.clock(),
        )
        self.repository.add_transaction(tx)

        try:
            checkout = self.gateway.initialize(
                email=payer_email,
                amount_minor=to_minor_units(session.price),
                reference=reference,
                callback_url=append_query(self.callback_url, {"reference": reference}),
                metadata=metadata,
            )
        except GatewayError as exc:
            logger.error("Payment initialization failed for session %s (%s): %s",
                         session.id, exc.upstream_code, exc.upstream_message)
            self._abandon(reference, exc.upstream_code)
            exc.details["session_id"] = session.id
            exc.details["reference"] = reference
            raise
        except Exception as exc:
            logger.exception("Payment initialization crashed for session %s", session.id)
            self._abandon(reference, type(exc).__name__)
            raise GatewayError(
                upstream_code=type(exc).__name__,
                upstream_message=str(exc),
                details={"session_id": session.id, "reference": reference},
            ) from exc

        if checkout.gateway_reference:
            self.repository.update_transaction(reference, {"gateway_reference": checkout.gateway_reference})
            self.repository.commit()

        logger.info("Payment %s initiated for session %s (%s %s)",
                    reference, session.id, session.price, self.currency)
        return PaymentInitiation(
            authorization_url=checkout.authorization_url,
            reference=reference,
            session_id=session.id,
            amount=session.price,
        )

    def _abandon(self, reference, cause):
        # free the session for a fresh attempt
        self.repository.update_transaction(reference, {
            "status": TransactionStatus.FAILED,
            "failure_reason": f"initialize_failed:{cause}"[:120],
        })
        self.repository.commit()

    # ---------- reconciliation ----------
    def _result(self, tx, already_processed=False, reason=None):
        session = self.repository.get_session(tx.session_id)
        return PaymentVerification(
            reference=tx.reference,
            status=tx.status,
            session_id=tx.session_id,
            payment_status=session.payment_status if session else None,
            already_processed=already_processed,
            reason=reason or tx.failure_reason,
        )

    def verify_payment(self, reference) -> PaymentVerification:
        tx = self.repository.get_transaction(reference)
        if not tx:
            raise NotFoundError("Transaction not found", details={"reference": reference})
        if tx.status in TransactionStatus.TERMINAL:
            return self._result(tx, already_processed=True)

        # GatewayError propagates and leaves the transaction PENDING
        result = self.gateway.verify(reference, tx.gateway_reference)

        if result.status == PENDING:
            return self._result(tx, reason=result.raw_status)

        if result.status == SUCCESS:
            expected = to_minor_units(tx.amount)
            if result.amount_minor is not None and result.amount_minor != expected:
                logger.warning("Amount mismatch on %s: gateway %s, expected %s",
                               reference, result.amount_minor, expected)
                return self._fail(tx, "amount_mismatch", result)
            return self._complete(tx, result)

        return self._fail(tx, result.raw_status or "failed", result)

    def _verification_metadata(self, tx, result):
        meta = dict(tx.metadata_json or {})
        meta["verify"] = {
            "status": result.raw_status,
            "amount": result.amount_minor,
            **{k: v for k, v in result.raw.items() if v is not None},
        }
        return meta

    def _complete(self, tx, result):
        now = self.clock()
        won = self.repository.update_transaction(tx.reference, {
            "status": TransactionStatus.COMPLETED,
            "paid_at": result.paid_at or now,
            "metadata_json": self._verification_metadata(tx, result),
        })
        if not won:
            # a concurrent verification got there first
            self.repository.rollback()
            return self._result(self.repository.get_transaction(tx.reference), already_processed=True)

        self.repository.update_session(
            tx.session_id,
            {"payment_status": PaymentStatus.PAID, "updated_at": now},
            expected_payment_status=PaymentStatus.PENDING,
        )
        self.repository.commit()

        session = self.repository.get_session(tx.session_id)
        logger.info("Payment %s completed; session %s paid", tx.reference, tx.session_id)
        if session.status != SessionStatus.SCHEDULED:
            logger.warning("Session %s was paid while %s", session.id, session.status)

        self.publisher.publish(session.student_id, notifications.payment_received(session))
        self.publisher.publish(session.mentor_id, notifications.payment_received(session, for_mentor=True))
        return self._result(self.repository.get_transaction(tx.reference))

    def _fail(self, tx, reason, result=None):
        values = {"status": TransactionStatus.FAILED, "failure_reason": (reason or "failed")[:120]}
        if result is not None:
            values["metadata_json"] = self._verification_metadata(tx, result)
        if not self.repository.update_transaction(tx.reference, values):
            self.repository.rollback()
            return self._result(self.repository.get_transaction(tx.reference), already_processed=True)
        self.repository.commit()
        logger.info("Payment %s failed (%s); session %s stays payable", tx.reference, reason, tx.session_id)
        return self._result(self.repository.get_transaction(tx.reference))

    # ---------- sweeps ----------
    def expire_stale_transactions(self, now=None):
        """
        Close PENDING transactions older than the payment window. Each one is
        verified first so a payment the webhook missed is still honoured;
        a checkout that was never opened has nothing to verify and is failed
        straight away. Returns the references that were failed.
        """
        if not self.payment_window_minutes:
            return []
        now = now or self.clock()
        cutoff = now - timedelta(minutes=self.payment_window_minutes)

        expired = []
        for tx in self.repository.list_stale_transactions(cutoff):
            never_opened = self.gateway.requires_gateway_reference and not tx.gateway_reference
            if not never_opened:
                try:
                    outcome = self.verify_payment(tx.reference)
                except GatewayError:
                    logger.warning("Could not verify stale payment %s; leaving it pending", tx.reference)
                    continue
                if outcome.status != TransactionStatus.PENDING:
                    continue
            if self.repository.update_transaction(tx.reference, {
                "status": TransactionStatus.FAILED,
                "failure_reason": "payment_window_expired",
            }):
                self.repository.commit()
                expired.append(tx.reference)
            else:
                self.repository.rollback()
        if expired:
            logger.info("Expired %d stale payments", len(expired))
        return expired
