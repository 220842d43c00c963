"""HTTP surface: blueprints, auth, error mapping and webhooks."""
import hashlib
import hmac
import json
from datetime import datetime

import pytest

from models.audit_log import AuditLog
from models.notification import Notification
from models.transaction import Transaction, TransactionStatus
from routes.admin import _parse_day
from services.gateways import PaystackGateway

from fakes import FakeHttp, FakeResponse


@pytest.fixture
def student_client(login, users):
    return login(users["student"])


@pytest.fixture
def mentor_client(login, users):
    return login(users["mentor"])


def _book(client, users, future_iso, **extra):
    body = {"mentor_id": users["mentor"], "scheduled_at": future_iso, "duration_minutes": 60}
    body.update(extra)
    return client.post("/mentorship/bookings", json=body)


def test_health(app):
    resp = app.test_client().get("/health")
    assert resp.status_code == 200
    assert resp.headers["X-Frame-Options"] == "DENY"


def test_booking_requires_login(app, users, future_iso):
    resp = _book(app.test_client(), users, future_iso)
    assert resp.status_code == 401


def test_csrf_is_enforced_for_logged_in_writes(app, login, users, future_iso):
    client = login(users["student"])
    client.environ_base.pop("HTTP_X_CSRF_TOKEN")
    assert _book(client, users, future_iso).status_code == 403


def test_quote(student_client, users):
    resp = student_client.get(f"/mentorship/quote?mentor_id={users['mentor']}&duration=60&package=STARTER_3")
    assert resp.status_code == 200
    assert resp.get_json()["total_amount"] == "40500.00"


def test_instant_booking_and_payment(app, student_client, mentor_client, users, future_iso, app_gateway):
    resp = _book(student_client, users, future_iso)
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["session"]["status"] == "SCHEDULED"
    assert body["session"]["price"] == "15000.00"
    reference = body["reference"]
    assert body["authorization_url"].endswith(reference)

    app_gateway.confirm(reference)
    verified = app.test_client().get(f"/payments/verify?reference={reference}")
    assert verified.status_code == 200
    assert verified.get_json()["ok"] is True
    assert verified.get_json()["payment_status"] == "PAID"

    again = app.test_client().get(f"/payments/verify?reference={reference}").get_json()
    assert again["already_processed"] is True
    assert app_gateway.verify_calls == [reference]

    session_id = body["session"]["id"]
    mine = student_client.get(f"/mentorship/sessions/{session_id}").get_json()
    assert mine["session"]["payment_status"] == "PAID"

    with app.app_context():
        assert Transaction.query.filter_by(reference=reference).one().status == TransactionStatus.COMPLETED
        assert Notification.query.filter_by(user_id=users["student"], title="Payment Successful").count() == 1
        actions = {row.action for row in AuditLog.query.all()}
        assert {"MENTORSHIP_BOOKING_CREATE", "PAYMENT_INITIATED", "PAYMENT_VERIFIED"} <= actions


def test_booking_without_checkout(student_client, users, future_iso):
    body = _book(student_client, users, future_iso, checkout=False).get_json()
    assert "reference" not in body


def test_request_rejected_then_approve_conflicts(student_client, mentor_client, users, future_iso):
    session = _book(student_client, users, future_iso, booking_mode="REQUEST").get_json()["session"]
    assert session["status"] == "PENDING_MENTOR_REVIEW"
    assert session["approval_deadline"] is not None

    rejected = mentor_client.post(f"/mentorship/sessions/{session['id']}/reject",
                                  json={"reason": "schedule conflict"})
    assert rejected.status_code == 200
    assert rejected.get_json()["session"]["status"] == "REJECTED"
    assert rejected.get_json()["session"]["approval_notes"] == "schedule conflict"

    late = mentor_client.post(f"/mentorship/sessions/{session['id']}/approve")
    assert late.status_code == 409
    assert late.get_json()["code"] == "StateConflictError"
    assert late.get_json()["details"]["current_state"] == "REJECTED"


def test_request_approved_then_paid(app, student_client, mentor_client, users, future_iso, app_gateway):
    session = _book(student_client, users, future_iso, booking_mode="REQUEST").get_json()["session"]

    early = student_client.post("/payments/start", json={"session_id": session["id"]})
    assert early.status_code == 409

    approved = mentor_client.post(f"/mentorship/sessions/{session['id']}/approve", json={"note": "Great topic"})
    assert approved.get_json()["session"]["status"] == "SCHEDULED"

    started = student_client.post("/payments/start", json={"session_id": session["id"]})
    assert started.status_code == 200
    reference = started.get_json()["reference"]

    app_gateway.confirm(reference)
    assert app.test_client().post("/payments/verify", json={"reference": reference}).get_json()["ok"] is True


def test_strangers_cannot_decide_or_read(login, student_client, users, future_iso):
    session = _book(student_client, users, future_iso, booking_mode="REQUEST").get_json()["session"]
    outsider = login(users["outsider"])

    assert outsider.post(f"/mentorship/sessions/{session['id']}/approve").status_code == 403
    assert outsider.get(f"/mentorship/sessions/{session['id']}").status_code == 403
    # students lack the MENTOR role entirely
    assert student_client.post(f"/mentorship/sessions/{session['id']}/approve").status_code == 403


def test_session_lifecycle_by_mentor(student_client, mentor_client, users, future_iso):
    session = _book(student_client, users, future_iso, checkout=False).get_json()["session"]
    url = f"/mentorship/sessions/{session['id']}/status"

    assert mentor_client.post(url, json={"status": "COMPLETED"}).status_code == 409
    assert mentor_client.post(url, json={"status": "IN_PROGRESS"}).get_json()["session"]["status"] == "IN_PROGRESS"
    done = mentor_client.post(url, json={"status": "COMPLETED"}).get_json()["session"]
    assert done["status"] == "COMPLETED"
    assert done["ended_at"] is not None
    assert mentor_client.post(url, json={"status": "SCHEDULED"}).status_code == 400


def test_validation_errors_are_json(student_client, users):
    resp = _book(student_client, users, "2000-01-01T00:00:00")
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "ValidationError"

    resp = _book(student_client, users, "2099-01-01T00:00:00", duration_minutes=0)
    assert resp.status_code == 400


@pytest.mark.parametrize("extra,field", [
    ({"package_code": 3}, "package_code"),
    ({"booking_mode": 1}, "booking_mode"),
    ({"title": 5}, "title"),
    ({"topic": ["a", "b"]}, "title"),
])
def test_non_text_booking_fields_are_bad_requests(app, student_client, users, future_iso, extra, field):
    resp = _book(student_client, users, future_iso, **extra)
    assert resp.status_code == 400
    body = resp.get_json()
    assert body["code"] == "ValidationError"
    assert body["details"]["field"] == field
    with app.app_context():
        assert Transaction.query.count() == 0


def test_mentor_id_must_be_numeric(student_client, users, future_iso):
    resp = _book(student_client, users, future_iso, mentor_id="ada")
    assert resp.status_code == 400


def test_payment_verification_needs_no_csrf_header(app, login, users, future_iso, app_gateway):
    body = _book(login(users["student"]), users, future_iso).get_json()
    app_gateway.confirm(body["reference"])

    client = login(users["student"])
    client.environ_base.pop("HTTP_X_CSRF_TOKEN")
    resp = client.post("/payments/verify", json={"reference": body["reference"]})
    assert resp.status_code == 200
    assert resp.get_json()["status"] == TransactionStatus.COMPLETED


def test_finance_range_accepts_utc_offsets(app, login, student_client, users, future_iso, app_gateway):
    body = _book(student_client, users, future_iso).get_json()
    app_gateway.confirm(body["reference"])
    app.test_client().get(f"/payments/verify?reference={body['reference']}")

    admin = login(users["admin"])
    resp = admin.get("/admin/mentorship/finance",
                     query_string={"start": "2026-01-01T00:00:00+01:00", "end": "2999-01-01T00:00:00+00:00"})
    assert resp.status_code == 200
    assert resp.get_json()["mentorship"]["completedCount"] == 1


def test_finance_dates_are_normalized_to_naive_utc():
    assert _parse_day("2026-01-01T00:00:00+01:00") == datetime(2025, 12, 31, 23, 0)
    assert _parse_day("2026-01-01") == datetime(2026, 1, 1)
    assert _parse_day(None) is None


def test_unknown_reference(app):
    resp = app.test_client().get("/payments/verify?reference=mentorship_nope")
    assert resp.status_code == 404
    assert app.test_client().get("/payments/verify").status_code == 400


def test_offerings_and_course_suggestions(app, mentor_client, student_client, login, users, future_iso):
    created = mentor_client.post("/mentorship/offerings",
                                 json={"title": "Data career chat", "duration": 45, "course_id": "course-1"})
    assert created.status_code == 201
    offering = created.get_json()
    assert offering["price"] == "11250.00"

    suggestions = app.test_client().get("/mentorship/suggestions?courseId=course-1").get_json()
    assert [s["id"] for s in suggestions["suggestions"]] == [offering["id"]]

    outsider = login(users["outsider"])
    assert outsider.post("/mentorship/offerings",
                         json={"title": "Not mine", "course_id": "course-1"}).status_code == 403

    booked = student_client.post(f"/mentorship/offerings/{offering['id']}/book",
                                 json={"scheduled_at": future_iso})
    assert booked.status_code == 201
    assert booked.get_json()["session"]["offering_id"] == offering["id"]

    assert mentor_client.delete(f"/mentorship/offerings/{offering['id']}").status_code == 409


def test_admin_sessions_override_and_finance(app, login, student_client, users, future_iso, app_gateway):
    body = _book(student_client, users, future_iso).get_json()
    app_gateway.confirm(body["reference"])
    app.test_client().get(f"/payments/verify?reference={body['reference']}")
    _book(student_client, users, future_iso, duration_minutes=30)

    admin = login(users["admin"])
    listing = admin.get("/admin/mentorship/sessions").get_json()
    assert listing["stats"]["totalSessions"] == 2

    finance = admin.get("/admin/mentorship/finance").get_json()["mentorship"]
    assert finance["completedCount"] == 1
    assert finance["grossRevenue"] == "15000.00"
    assert finance["platformRevenue"] == "4500.00"
    assert finance["tutorPayouts"] == "10500.00"
    assert finance["pendingCount"] == 1
    assert finance["pendingRevenue"] == "7500.00"

    assert admin.get("/admin/mentorship/finance?start=2026-02-01&end=2026-01-01").status_code == 400
    assert admin.get("/admin/mentorship/finance?start=yesterday").status_code == 400
    assert student_client.get("/admin/mentorship/finance").status_code == 403

    override = admin.post(f"/admin/mentorship/sessions/{body['session']['id']}/status",
                          json={"status": "CANCELLED", "note": "duplicate"})
    assert override.status_code == 200
    assert override.get_json()["session"]["status"] == "CANCELLED"


def test_mentor_earnings(app, mentor_client, student_client, users, future_iso, app_gateway):
    body = _book(student_client, users, future_iso).get_json()
    app_gateway.confirm(body["reference"])
    app.test_client().get(f"/payments/verify?reference={body['reference']}")

    earnings = mentor_client.get("/mentorship/earnings").get_json()
    assert earnings["tutorPayouts"] == "10500.00"


# ---------- webhooks ----------

@pytest.fixture
def paystack_http(app):
    http = FakeHttp()
    app.extensions["payment_gateway"] = PaystackGateway(app.config["PAYSTACK_SECRET_KEY"], http=http)
    return http


def _signed(app, event):
    raw = json.dumps(event).encode("utf-8")
    signature = hmac.new(app.config["PAYSTACK_SECRET_KEY"].encode("utf-8"), raw, hashlib.sha512).hexdigest()
    return raw, signature


def test_paystack_webhook_reconciles_via_verify(app, paystack_http, student_client, users, future_iso):
    paystack_http.queue(FakeResponse(body={"status": True, "data": {"authorization_url": "https://paystack/x"}}))
    reference = _book(student_client, users, future_iso).get_json()["reference"]

    paystack_http.queue(FakeResponse(body={"status": True, "data": {
        "status": "success", "amount": 1500000, "reference": reference,
    }}))
    raw, signature = _signed(app, {"event": "charge.success", "data": {"reference": reference}})
    resp = app.test_client().post("/webhooks/paystack", data=raw, content_type="application/json",
                                  headers={"x-paystack-signature": signature})
    assert resp.status_code == 200
    assert paystack_http.calls[-1][1].endswith(f"/transaction/verify/{reference}")

    with app.app_context():
        assert Transaction.query.filter_by(reference=reference).one().status == TransactionStatus.COMPLETED

    # replayed delivery does not call the gateway again
    calls = len(paystack_http.calls)
    assert app.test_client().post("/webhooks/paystack", data=raw, content_type="application/json",
                                  headers={"x-paystack-signature": signature}).status_code == 200
    assert len(paystack_http.calls) == calls


def test_paystack_webhook_rejects_bad_signature(app, paystack_http):
    raw, _ = _signed(app, {"event": "charge.success", "data": {"reference": "mentorship_x"}})
    resp = app.test_client().post("/webhooks/paystack", data=raw, content_type="application/json",
                                  headers={"x-paystack-signature": "0" * 128})
    assert resp.status_code == 401
    assert paystack_http.calls == []


def test_paystack_webhook_ignores_other_events_and_unknown_references(app, paystack_http):
    raw, signature = _signed(app, {"event": "transfer.success", "data": {}})
    assert app.test_client().post("/webhooks/paystack", data=raw, content_type="application/json",
                                  headers={"x-paystack-signature": signature}).status_code == 200

    raw, signature = _signed(app, {"event": "charge.success", "data": {"reference": "mentorship_unknown"}})
    assert app.test_client().post("/webhooks/paystack", data=raw, content_type="application/json",
                                  headers={"x-paystack-signature": signature}).status_code == 200
    assert paystack_http.calls == []


def test_webhook_for_inactive_gateway(app):
    assert app.test_client().post("/webhooks/paystack", data=b"{}").status_code == 404
    assert app.test_client().post("/webhooks/stripe", data=b"{}").status_code == 404
