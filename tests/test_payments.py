from decimal import Decimal

import pytest
import stripe

from models.mentorship_session import SessionStatus, PaymentStatus
from models.transaction import TransactionStatus
from services.errors import ValidationError, ForbiddenError, NotFoundError, StateConflictError, GatewayError
from services.gateways import FAILED, StripeGateway
from services.payments import PaymentOrchestrator

from conftest import MENTOR_ID, STUDENT_ID
from fakes import network_down


@pytest.fixture
def pay(payments, student):
    def _pay(session):
        return payments.initiate_payment(session.id, student.email, payer_id=student.user_id)
    return _pay


def test_instant_booking_paid_end_to_end(book, pay, payments, gateway, repo, dispatcher):
    session = book()
    started = pay(session)

    assert started.reference.startswith("mentorship_")
    assert started.authorization_url == f"https://checkout.test/{started.reference}"
    tx = repo.transactions[started.reference]
    assert tx.status == TransactionStatus.PENDING
    assert tx.amount == Decimal("15000.00")
    assert tx.platform_share_amount == Decimal("4500.00")
    assert tx.provider_share_amount == Decimal("10500.00")
    assert tx.user_id == STUDENT_ID and tx.provider_id == MENTOR_ID
    assert gateway.initialized[started.reference]["amount_minor"] == 1500000

    gateway.confirm(started.reference)
    result = payments.verify_payment(started.reference)

    assert result.ok
    assert result.payment_status == PaymentStatus.PAID
    assert not result.already_processed
    assert tx.status == TransactionStatus.COMPLETED
    assert tx.paid_at is not None
    assert session.payment_status == PaymentStatus.PAID
    assert session.status == SessionStatus.SCHEDULED
    assert "Payment Successful" in dispatcher.titles_for(STUDENT_ID)
    assert "Mentorship session paid" in dispatcher.titles_for(MENTOR_ID)


def test_checkout_carries_reference_and_metadata(book, pay, gateway):
    started = pay(book(package_code="GROWTH_5"))
    sent = gateway.initialized[started.reference]
    assert sent["callback_url"] == f"https://app.test/mentorship/verify-payment?reference={started.reference}"
    assert sent["email"] == "user2@example.com"
    meta = sent["metadata"]
    assert meta["productType"] == "MENTORSHIP"
    assert meta["mentorshipKind"] == "PACKAGE"
    assert meta["mentorshipSessionId"] == started.session_id
    assert meta["packageCode"] == "GROWTH_5"
    assert meta["packageSessions"] == 5
    assert meta["tutorUserId"] == MENTOR_ID


def test_verify_is_idempotent(book, pay, payments, gateway, dispatcher):
    started = pay(book())
    gateway.confirm(started.reference)
    payments.verify_payment(started.reference)
    sent_before = len(dispatcher.sent)

    again = payments.verify_payment(started.reference)
    assert again.ok
    assert again.already_processed
    assert gateway.verify_calls == [started.reference]
    assert len(dispatcher.sent) == sent_before


def test_request_must_be_approved_before_payment(book, pay, approvals, mentor, gateway, payments):
    session = book("REQUEST")
    with pytest.raises(StateConflictError):
        pay(session)
    assert gateway.initialized == {}

    approvals.approve(session.id, mentor)
    started = pay(session)
    gateway.confirm(started.reference)
    assert payments.verify_payment(started.reference).ok
    assert session.payment_status == PaymentStatus.PAID


def test_rejected_request_is_not_payable(book, pay, approvals, mentor):
    session = book("REQUEST")
    approvals.reject(session.id, mentor, reason="schedule conflict")
    with pytest.raises(StateConflictError):
        pay(session)


def test_only_one_pending_payment_per_session(book, pay, repo):
    session = book()
    pay(session)
    with pytest.raises(StateConflictError):
        pay(session)
    assert len(repo.transactions) == 1


def test_paid_session_cannot_be_paid_again(book, pay, payments, gateway):
    session = book()
    started = pay(session)
    gateway.confirm(started.reference)
    payments.verify_payment(started.reference)
    with pytest.raises(StateConflictError):
        pay(session)


def test_only_the_student_pays(book, payments, mentor):
    session = book()
    with pytest.raises(ForbiddenError):
        payments.initiate_payment(session.id, mentor.email, payer_id=mentor.user_id)


def test_payer_email_is_required(book, payments, student):
    with pytest.raises(ValidationError):
        payments.initiate_payment(book().id, "  ", payer_id=student.user_id)


def test_unknown_session_or_reference(payments):
    with pytest.raises(NotFoundError):
        payments.initiate_payment("missing", "a@b.c")
    with pytest.raises(NotFoundError):
        payments.verify_payment("mentorship_missing")


def test_offerings_are_not_payable(bookings, payments, mentor):
    offering = bookings.create_offering(mentor, "Office hours")
    with pytest.raises(StateConflictError):
        payments.initiate_payment(offering.id, mentor.email)


def test_gateway_outage_on_initialize_frees_the_session(book, pay, gateway, repo):
    session = book()
    gateway.fail_initialize = network_down()

    with pytest.raises(GatewayError) as exc:
        pay(session)
    assert exc.value.details["upstream_code"] == "network_error"
    failed = repo.transactions[exc.value.details["reference"]]
    assert failed.status == TransactionStatus.FAILED
    assert failed.failure_reason == "initialize_failed:network_error"

    gateway.fail_initialize = None
    retry = pay(session)
    assert retry.reference != failed.reference
    assert repo.transactions[retry.reference].status == TransactionStatus.PENDING


def test_gateway_outage_on_verify_leaves_payment_pending(book, pay, payments, gateway, repo):
    session = book()
    started = pay(session)
    gateway.fail_verify = network_down()

    with pytest.raises(GatewayError):
        payments.verify_payment(started.reference)
    assert repo.transactions[started.reference].status == TransactionStatus.PENDING
    assert session.payment_status == PaymentStatus.PENDING

    gateway.fail_verify = None
    gateway.confirm(started.reference)
    assert payments.verify_payment(started.reference).ok


def test_unsettled_payment_stays_pending(book, pay, payments, repo):
    started = pay(book())
    result = payments.verify_payment(started.reference)
    assert not result.ok
    assert result.status == TransactionStatus.PENDING
    assert result.reason == "ongoing"
    assert repo.transactions[started.reference].status == TransactionStatus.PENDING


def test_declined_payment_fails_transaction_but_not_session(book, pay, payments, gateway, repo, dispatcher):
    session = book()
    started = pay(session)
    gateway.confirm(started.reference, status=FAILED)

    result = payments.verify_payment(started.reference)
    assert result.status == TransactionStatus.FAILED
    assert repo.transactions[started.reference].failure_reason == "failed"
    assert session.payment_status == PaymentStatus.PENDING
    assert session.status == SessionStatus.SCHEDULED
    assert "Payment Successful" not in dispatcher.titles_for(STUDENT_ID)

    # a fresh attempt is allowed
    assert pay(session).reference != started.reference


def test_amount_mismatch_is_never_marked_paid(book, pay, payments, gateway, repo):
    session = book()
    started = pay(session)
    gateway.confirm(started.reference, amount_minor=100)

    result = payments.verify_payment(started.reference)
    assert result.status == TransactionStatus.FAILED
    assert result.reason == "amount_mismatch"
    assert session.payment_status == PaymentStatus.PENDING


def test_payment_is_honoured_after_session_was_cancelled(book, pay, payments, gateway, bookings, mentor):
    session = book()
    started = pay(session)
    bookings.cancel(mentor, session.id)
    gateway.confirm(started.reference)

    result = payments.verify_payment(started.reference)
    assert result.ok
    assert session.payment_status == PaymentStatus.PAID
    assert session.status == SessionStatus.CANCELLED


def test_concurrent_verification_completes_once(book, pay, payments, gateway, repo, dispatcher):
    started = pay(book())
    gateway.confirm(started.reference)
    original = repo.update_transaction

    def lose_the_race(reference, values, expected_status=TransactionStatus.PENDING):
        # another worker completes the transaction first
        original(reference, {"status": TransactionStatus.COMPLETED})
        return original(reference, values, expected_status)

    repo.update_transaction = lose_the_race
    result = payments.verify_payment(started.reference)

    assert result.already_processed
    assert result.status == TransactionStatus.COMPLETED
    assert dispatcher.titles_for(STUDENT_ID) == []


def test_stale_payments_are_expired_after_a_final_check(book, pay, payments, gateway, repo, clock):
    abandoned = pay(book())
    paid_late = pay(book())
    gateway.confirm(paid_late.reference)
    clock.advance(minutes=30)
    recent = pay(book())

    clock.advance(minutes=31)
    expired = payments.expire_stale_transactions()

    assert expired == [abandoned.reference]
    assert repo.transactions[abandoned.reference].status == TransactionStatus.FAILED
    assert repo.transactions[abandoned.reference].failure_reason == "payment_window_expired"
    assert repo.transactions[paid_late.reference].status == TransactionStatus.COMPLETED
    assert repo.transactions[recent.reference].status == TransactionStatus.PENDING


def test_stale_sweep_keeps_payments_it_cannot_verify(book, pay, payments, gateway, repo, clock):
    started = pay(book())
    clock.advance(hours=2)
    gateway.fail_verify = network_down()
    assert payments.expire_stale_transactions() == []
    assert repo.transactions[started.reference].status == TransactionStatus.PENDING


def test_unexpected_initialize_crash_frees_the_session(book, pay, gateway, repo):
    session = book()
    gateway.fail_initialize = KeyError("url")

    with pytest.raises(GatewayError) as exc:
        pay(session)
    assert exc.value.upstream_code == "KeyError"
    assert exc.value.details["session_id"] == session.id
    failed = repo.transactions[exc.value.details["reference"]]
    assert failed.status == TransactionStatus.FAILED
    assert failed.failure_reason == "initialize_failed:KeyError"

    gateway.fail_initialize = None
    retry = pay(session)
    assert repo.transactions[retry.reference].status == TransactionStatus.PENDING


@pytest.fixture
def stripe_payments(repo, publisher, clock):
    return PaymentOrchestrator(
        repo, StripeGateway("sk_test_stripe"), publisher,
        callback_url="https://app.test/mentorship/verify-payment",
        payment_window_minutes=60,
        clock=clock,
    )


def test_malformed_stripe_checkout_does_not_block_retries(book, stripe_payments, student, repo, monkeypatch):
    session = book()
    monkeypatch.setattr(stripe.checkout.Session, "create", lambda **kwargs: {})

    with pytest.raises(GatewayError):
        stripe_payments.initiate_payment(session.id, student.email, payer_id=student.user_id)
    assert [tx.status for tx in repo.transactions.values()] == [TransactionStatus.FAILED]

    monkeypatch.setattr(stripe.checkout.Session, "create",
                        lambda **kwargs: {"id": "cs_test_2", "url": "https://checkout.stripe.com/c/cs_test_2"})
    retry = stripe_payments.initiate_payment(session.id, student.email, payer_id=student.user_id)
    assert repo.transactions[retry.reference].gateway_reference == "cs_test_2"


def test_stale_sweep_fails_checkouts_that_were_never_opened(book, stripe_payments, student, repo, clock, monkeypatch):
    monkeypatch.setattr(stripe.checkout.Session, "create",
                        lambda **kwargs: {"id": "cs_test_3", "url": "https://checkout.stripe.com/c/cs_test_3"})
    retrieved = []

    def fake_retrieve(sid):
        retrieved.append(sid)
        return {"status": "open", "payment_status": "unpaid", "client_reference_id": opened.reference}

    monkeypatch.setattr(stripe.checkout.Session, "retrieve", fake_retrieve)

    orphan = stripe_payments.initiate_payment(book().id, student.email, payer_id=student.user_id)
    # the worker died before the checkout id was stored
    repo.transactions[orphan.reference].gateway_reference = None
    opened = stripe_payments.initiate_payment(book().id, student.email, payer_id=student.user_id)

    clock.advance(hours=5)
    expired = stripe_payments.expire_stale_transactions()

    assert sorted(expired) == sorted([orphan.reference, opened.reference])
    assert repo.transactions[orphan.reference].status == TransactionStatus.FAILED
    assert repo.transactions[orphan.reference].failure_reason == "payment_window_expired"
    # only the opened checkout needed a final check
    assert retrieved == ["cs_test_3"]
