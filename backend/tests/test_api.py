from datetime import date
from decimal import Decimal

from marketplace import models
from marketplace.models import PaymentStatus
from marketplace.services import escrow
from marketplace.utils.auth import get_password_hash
from marketplace.utils.errors import UpstreamError

from payment_fakes import auth_headers, book, make_professional, make_user, mark_paid


def seed(session_factory, gateway, paid=False):
    db = session_factory()
    client = make_user(db, "client@test.com")
    professional = make_professional(db)
    admin = make_user(db, "admin@test.com", models.UserRole.ADMIN)
    appointment, payment = book(db, gateway, client, professional)
    if paid:
        mark_paid(db, payment)
    return db, client, professional, admin, appointment, payment


def booking_body(professional_id):
    return {
        "professionalId": professional_id,
        "duration": 2,
        "appointmentDate": "2025-01-01",
        "appointmentTime": "10:00",
        "issue": "Broken heater",
        "location": "1 Elm St",
    }


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_cost_quote(client, session_factory):
    db = session_factory()
    user = make_user(db, "client@test.com")
    professional = make_professional(db)

    res = client.post(
        "/api/v1/appointments/cost",
        json={"professionalId": professional.id, "duration": 2},
        headers=auth_headers(user),
    )

    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["data"]["totalPrice"] == 47.2
    assert body["data"]["professionalEarnings"] == 36.0


def test_create_appointment(client, session_factory, gateway):
    db = session_factory()
    user = make_user(db, "client@test.com")
    professional = make_professional(db)

    res = client.post(
        "/api/v1/appointments",
        json=booking_body(professional.id),
        headers=auth_headers(user),
    )

    assert res.status_code == 201
    body = res.json()
    assert body["success"] is True
    assert body["clientSecret"].endswith("_secret")
    assert body["appointment"]["status"] == "Pending"
    assert body["appointment"]["totalPrice"] == 47.2
    assert body["appointment"]["paymentStatus"] == "pending_payment"
    assert body["payment_id"] == body["appointment"]["paymentId"]


def test_create_appointment_requires_client_role(client, session_factory):
    db = session_factory()
    professional = make_professional(db)

    res = client.post(
        "/api/v1/appointments",
        json=booking_body(professional.id),
        headers=auth_headers(professional),
    )

    assert res.status_code == 403
    assert res.json()["success"] is False


def test_create_appointment_requires_token(client):
    res = client.post("/api/v1/appointments", json=booking_body(1))

    assert res.status_code == 401


def test_create_appointment_validation(client, session_factory):
    db = session_factory()
    user = make_user(db, "client@test.com")

    body = {
        "professionalId": 1,
        "appointmentDate": "2025-01-01",
        "appointmentTime": "10:00",
        "issue": "Kitchen sink is leaking",
    }
    res = client.post("/api/v1/appointments", json=body, headers=auth_headers(user))

    assert res.status_code == 400
    assert res.json() == {"success": False, "message": "duration: Field required"}


def test_cost_rejects_non_positive_duration(client, session_factory):
    user = make_user(session_factory(), "client@test.com")

    res = client.post(
        "/api/v1/appointments/cost",
        json={"professionalId": 1, "duration": 0},
        headers=auth_headers(user),
    )

    assert res.status_code == 400
    payload = res.json()
    assert payload["success"] is False
    assert payload["message"].startswith("duration:")


def test_unknown_professional_is_404(client, session_factory):
    db = session_factory()
    user = make_user(db, "client@test.com")

    res = client.post(
        "/api/v1/appointments",
        json=booking_body(9999),
        headers=auth_headers(user),
    )

    assert res.status_code == 404
    assert res.json() == {"success": False, "message": "Professional not found"}


def test_confirm_and_list(client, session_factory, gateway):
    db, user, professional, _, appointment, _ = seed(session_factory, gateway)

    res = client.put(
        f"/api/v1/appointments/{appointment.id}/confirm",
        headers=auth_headers(professional),
    )
    assert res.status_code == 200
    assert res.json()["data"]["status"] == "Confirmed"

    res = client.get("/api/v1/appointments?status=active", headers=auth_headers(user))
    body = res.json()
    assert body["pagination"]["total"] == 1
    assert body["data"][0]["id"] == appointment.id


def test_confirm_by_wrong_professional(client, session_factory, gateway):
    db, _, _, _, appointment, _ = seed(session_factory, gateway)
    other = make_professional(db, "other@test.com")

    res = client.put(
        f"/api/v1/appointments/{appointment.id}/confirm",
        headers=auth_headers(other),
    )

    assert res.status_code == 403
    assert res.json()["success"] is False


def test_release_requires_admin(client, session_factory, gateway):
    db, user, professional, _, _, payment = seed(session_factory, gateway, paid=True)

    for actor in (user, professional):
        res = client.post(f"/api/v1/payment/{payment.id}/release", headers=auth_headers(actor))
        assert res.status_code == 403
    assert gateway.calls_to("create_transfer") == []


def test_release_pending_payment_conflicts(client, session_factory, gateway):
    db, _, _, admin, _, payment = seed(session_factory, gateway)

    res = client.post(f"/api/v1/payment/{payment.id}/release", headers=auth_headers(admin))

    assert res.status_code == 409
    assert res.json()["success"] is False


def test_escrow_happy_path_over_http(client, session_factory, gateway):
    db, user, _, admin, appointment, payment = seed(session_factory, gateway, paid=True)

    res = client.post(f"/api/v1/payment/{payment.id}/approve", headers=auth_headers(user))
    assert res.status_code == 200
    assert res.json()["data"]["clientApproval"] is True

    res = client.post(f"/api/v1/payment/{payment.id}/release", headers=auth_headers(admin))
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["status"] == "released"
    assert data["transferId"]

    res = client.get(f"/api/v1/appointments/{appointment.id}", headers=auth_headers(user))
    assert res.json()["data"]["status"] == "Completed"


def test_dispute_and_resolve_over_http(client, session_factory, gateway):
    db, user, _, admin, _, payment = seed(session_factory, gateway, paid=True)

    res = client.post(
        f"/api/v1/payment/{payment.id}/dispute",
        json={"message": "Never showed up", "evidence": ["a.png"]},
        headers=auth_headers(user),
    )
    assert res.status_code == 201
    assert res.json()["data"]["status"] == "pending"

    res = client.post(
        f"/api/v1/payment/{payment.id}/resolve",
        json={"resolution": "Refunded", "refundClient": True},
        headers=auth_headers(admin),
    )
    assert res.status_code == 200
    assert res.json()["data"]["status"] == "refunded"
    assert res.json()["data"]["transferId"] is None

    res = client.post(
        f"/api/v1/payment/{payment.id}/resolve",
        json={"resolution": "Again", "refundClient": False},
        headers=auth_headers(admin),
    )
    assert res.status_code == 409


def test_refund_timeout_is_504(client, session_factory, gateway):
    db, _, _, admin, _, payment = seed(session_factory, gateway, paid=True)
    gateway.fail("create_refund", UpstreamError("timed out", correlation_id="abc123", retryable=True))

    res = client.post(f"/api/v1/payment/{payment.id}/refund", headers=auth_headers(admin))

    assert res.status_code == 504
    body = res.json()
    assert body["success"] is False
    assert body["retryable"] is True
    assert body["correlationId"] == "abc123"
    db.refresh(payment)
    assert payment.status == PaymentStatus.PAID


def test_payment_details_visibility(client, session_factory, gateway):
    db, user, _, _, _, payment = seed(session_factory, gateway)
    stranger = make_user(db, "stranger@test.com")

    assert client.get(f"/api/v1/payment/{payment.id}", headers=auth_headers(user)).status_code == 200
    res = client.get(f"/api/v1/payment/{payment.id}", headers=auth_headers(stranger))
    assert res.status_code == 403


def test_payment_intent_returns_existing_secret(client, session_factory, gateway):
    db, user, _, _, appointment, payment = seed(session_factory, gateway)

    res = client.post(
        "/api/v1/payment/intent",
        json={"appointmentId": appointment.id},
        headers=auth_headers(user),
    )

    assert res.status_code == 200
    assert res.json()["clientSecret"] == payment.client_secret
    assert len(gateway.calls_to("create_payment_intent")) == 1


def test_cancel_payment_over_http(client, session_factory, gateway):
    db, user, _, _, _, payment = seed(session_factory, gateway)

    res = client.post(f"/api/v1/payment/{payment.id}/cancel", headers=auth_headers(user))

    assert res.status_code == 200
    assert res.json()["data"]["status"] == "cancelled"


def test_admin_tax_configuration(client, session_factory):
    db = session_factory()
    admin = make_user(db, "admin@test.com", models.UserRole.ADMIN)
    user = make_user(db, "client@test.com")
    professional = make_professional(db)

    res = client.get("/api/v1/admin/tax", headers=auth_headers(admin))
    assert res.json()["data"]["taxPercentage"] == 8.0

    res = client.post(
        "/api/v1/admin/tax",
        json={"taxPercentage": 10, "platformFeePercentage": 20},
        headers=auth_headers(admin),
    )
    assert res.status_code == 201
    assert res.json()["data"]["platformFeePercentage"] == 20.0

    res = client.post(
        "/api/v1/appointments/cost",
        json={"professionalId": professional.id, "duration": 2},
        headers=auth_headers(user),
    )
    data = res.json()["data"]
    assert data["platformFee"] == 8.0
    assert data["taxAmount"] == 4.0
    assert data["totalPrice"] == 52.0

    assert client.post(
        "/api/v1/admin/tax",
        json={"taxPercentage": 10, "platformFeePercentage": 20},
        headers=auth_headers(user),
    ).status_code == 403


def test_admin_dashboard(client, session_factory, gateway):
    db, user, professional, admin, _, payment = seed(session_factory, gateway, paid=True)
    book(db, gateway, user, professional, day=date(2025, 2, 1))

    res = client.get("/api/v1/admin/dashboard", headers=auth_headers(admin))

    assert res.status_code == 200
    data = res.json()["data"]
    assert data["totalPayments"] == 2
    assert data["pendingPayments"] == 1
    assert data["statusCounts"]["paid"] == 1
    assert data["totalRevenue"] == float(Decimal("47.20"))
    assert len(data["recentPayments"]) == 2
    assert sum(day["count"] for day in data["paymentsPerDay"]) == 2


def test_admin_lists_disputes(client, session_factory, gateway):
    db, user, _, admin, _, payment = seed(session_factory, gateway, paid=True)
    escrow.create_dispute(db, payment.id, user, "Never showed up")

    res = client.get("/api/v1/admin/disputes", headers=auth_headers(admin))
    assert res.status_code == 200
    body = res.json()
    assert body["pagination"] == {"page": 1, "limit": 10, "total": 1, "pages": 1}
    assert body["data"][0]["paymentId"] == payment.id
    assert body["data"][0]["raisedBy"] == user.id
    assert body["data"][0]["status"] == "pending"

    res = client.get("/api/v1/admin/disputes?status=resolved", headers=auth_headers(admin))
    assert res.json()["data"] == []
    assert res.json()["pagination"]["total"] == 0

    res = client.get("/api/v1/admin/disputes?status=bogus", headers=auth_headers(admin))
    assert res.status_code == 400

    assert client.get("/api/v1/admin/disputes", headers=auth_headers(user)).status_code == 403

def test_login_issues_token(client, session_factory):
    db = session_factory()
    make_user(db, "client@test.com", password=get_password_hash("s3cret!"))

    res = client.post("/auth/login", data={"username": "Client@Test.com", "password": "s3cret!"})
    assert res.status_code == 200
    token = res.json()["access_token"]

    res = client.get("/api/v1/appointments", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 200

    res = client.post("/auth/login", data={"username": "client@test.com", "password": "wrong"})
    assert res.status_code == 401
