import json
from dataclasses import replace
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs, urlparse

import pytest
from redis.exceptions import RedisError

from salonpay.config import get_settings
from salonpay.models import Appointment, Employee, Payment, SalonEmployee
from salonpay.models_mercadopago import WebhookEvent
from salonpay.rate_limiter import get_rate_limit_redis
from salonpay.routes.mercadopago_webhooks import get_task_queue
from salonpay.security_utils import create_jwt_token
from salonpay.services.payment_link_service import PaymentLinkService
from salonpay.utils.datetime_utils import utcnow
from salonpay.webhook_security import create_mercadopago_signature


def signed_webhook(client, settings, body: dict):
    raw = json.dumps(body).encode()
    return client.post(
        "/webhooks/mercadopago",
        content=raw,
        headers={
            "Content-Type": "application/json",
            "X-Signature": create_mercadopago_signature(raw, settings.mp_webhook_secret),
        },
    )


@pytest.fixture
def link_token(db, settings, connected_org, salon):
    return PaymentLinkService(db, settings).issue(connected_org.id, salon.id).token


# ============================================================================
# END TO END
# ============================================================================


def test_connect_book_and_pay(client, db, settings, fake_mp, org, salon, owner_headers):
    # Owner connects Mercado Pago
    response = client.get(f"/mercadopago/oauth/connect?org_id={org.id}", headers=owner_headers)
    assert response.status_code == 200
    oauth_url = urlparse(response.json()["oauth_url"])
    params = parse_qs(oauth_url.query)
    assert params["client_id"] == ["client-id"]
    assert params["response_type"] == ["code"]
    assert params["redirect_uri"] == ["https://api.example.com/mercadopago/oauth/callback"]

    response = client.get(
        "/mercadopago/oauth/callback",
        params={"code": "TG-auth-code", "state": params["state"][0]},
        follow_redirects=False,
    )
    assert response.status_code == 302
    assert response.headers["location"] == "https://app.example.com/dashboard?view=settings&mp=connected"
    assert fake_mp.token_requests[0]["grant_type"] == "authorization_code"
    assert fake_mp.token_requests[0]["code"] == "TG-auth-code"

    status = client.get(f"/mercadopago/status?org_id={org.id}", headers=owner_headers).json()
    assert status["connected"] is True
    assert status["collector_id"] == "123456"

    # Owner issues a booking link
    response = client.post(
        "/payment-links",
        json={"org_id": org.id, "salon_id": salon.id, "title": "Reservá tu turno"},
        headers=owner_headers,
    )
    assert response.status_code == 200
    token = response.json()["token"]
    assert response.json()["url"] == f"https://app.example.com/book/{token}"

    # Customer opens the link
    config = client.get("/payment-links/config", params={"token": token}).json()
    assert config["title"] == "Reservá tu turno"
    assert config["salon"]["name"] == "Sede Centro"
    assert config["organization"]["name"] == "Estudio Belgrano"
    assert "token" not in config and "token_hash" not in config

    slots = client.get(
        "/public/availability",
        params={"token": token, "salon_id": salon.id, "date": "2026-03-02"},
    ).json()["slots"]
    assert {"time": "10:00", "available": True} in slots

    # Customer books and is sent to checkout
    response = client.post(
        "/public/appointments",
        json={
            "token": token,
            "salon_id": salon.id,
            "client_name": "Lucía Gómez",
            "starts_at": "2026-03-02T10:00:00",
            "amount": 5000,
            "service_name": "Corte",
        },
    )
    assert response.status_code == 200
    booking = response.json()
    assert booking["init_point"].endswith("pref_id=pref-1")
    appointment_id = booking["appointment_id"]

    # Mercado Pago approves the payment and notifies us
    fake_mp.add_payment("1001", appointment_id, status="approved", amount=5000.0)
    response = signed_webhook(
        client,
        settings,
        {"type": "payment", "action": "payment.created", "user_id": 123456, "data": {"id": "1001"}},
    )
    assert response.status_code == 200

    db.expire_all()
    appointment = db.query(Appointment).filter(Appointment.id == appointment_id).one()
    assert appointment.status == "confirmed"
    assert appointment.payment_method == "mercadopago"
    assert db.query(Payment).filter(Payment.mp_payment_id == "1001").count() == 1

    # The slot is no longer offered
    slots = client.get(
        "/public/availability",
        params={"token": token, "salon_id": salon.id, "date": "2026-03-02"},
    ).json()["slots"]
    assert {"time": "10:00", "available": False} in slots


# ============================================================================
# OWNER ENDPOINTS
# ============================================================================


def test_owner_endpoints_require_bearer(client, org):
    response = client.get(f"/mercadopago/status?org_id={org.id}")
    assert response.status_code in (401, 403)


def test_owner_cannot_act_for_other_org(client, settings, org, salon):
    token = create_jwt_token({"sub": "intruder", "org_id": "another-org"}, settings.secret_key)
    headers = {"Authorization": f"Bearer {token}"}

    response = client.post("/payment-links", json={"org_id": org.id, "salon_id": salon.id}, headers=headers)
    assert response.status_code == 403


def test_org_ids_claim_grants_access(client, settings, org):
    token = create_jwt_token({"sub": "owner", "org_ids": ["x", org.id]}, settings.secret_key)

    response = client.get(f"/mercadopago/status?org_id={org.id}", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    assert response.json()["connected"] is False


def test_disconnect(client, connected_org, owner_headers):
    response = client.post("/mercadopago/disconnect", json={"org_id": connected_org.id}, headers=owner_headers)

    assert response.status_code == 200
    assert response.json() == {"success": True}
    status = client.get(f"/mercadopago/status?org_id={connected_org.id}", headers=owner_headers).json()
    assert status["connected"] is False


def test_create_preference_for_appointment(client, db, connected_org, salon, owner_headers):
    appointment = Appointment(
        org_id=connected_org.id,
        salon_id=salon.id,
        client_name="Cliente",
        starts_at=utcnow() + timedelta(days=1),
    )
    db.add(appointment)
    db.commit()

    response = client.post(
        "/mercadopago/preferences",
        json={"org_id": connected_org.id, "appointment_id": appointment.id, "title": "Seña", "amount": 2500},
        headers=owner_headers,
    )

    assert response.status_code == 200
    assert response.json()["preference_id"] == "pref-1"
    assert response.json()["url"].endswith("pref_id=pref-1")


def test_create_preference_without_connection(client, db, org, salon, owner_headers):
    appointment = Appointment(org_id=org.id, salon_id=salon.id, client_name="Cliente", starts_at=utcnow())
    db.add(appointment)
    db.commit()

    response = client.post(
        "/mercadopago/preferences",
        json={"org_id": org.id, "appointment_id": appointment.id, "title": "Seña", "amount": 2500},
        headers=owner_headers,
    )

    assert response.status_code == 400
    assert "Connect Mercado Pago" in response.json()["detail"]


def test_deactivate_link(client, db, settings, org, salon, owner_headers):
    issued = PaymentLinkService(db, settings).issue(org.id, salon.id)

    response = client.post(f"/payment-links/{issued.id}/deactivate?org_id={org.id}", headers=owner_headers)
    assert response.status_code == 200

    response = client.get("/payment-links/config", params={"token": issued.token})
    assert response.status_code == 404


# ============================================================================
# OAUTH CALLBACK
# ============================================================================


@pytest.mark.parametrize(
    "params, reason",
    [
        ({"error": "access_denied"}, "access_denied"),
        ({"code": "abc"}, "missing_params"),
        ({"code": "abc", "state": "forged"}, "invalid_state"),
    ],
)
def test_callback_failures_redirect_with_reason(client, params, reason):
    response = client.get("/mercadopago/oauth/callback", params=params, follow_redirects=False)

    assert response.status_code == 302
    assert response.headers["location"].endswith(f"mp_error={reason}")


def test_callback_token_exchange_failure(client, settings, fake_mp, org, owner_headers):
    state = client.get(f"/mercadopago/oauth/connect?org_id={org.id}", headers=owner_headers).json()["state"]
    fake_mp.token_status = 400

    response = client.get(
        "/mercadopago/oauth/callback", params={"code": "bad", "state": state}, follow_redirects=False
    )

    assert response.headers["location"].endswith("mp_error=token_exchange_failed")


def test_callback_without_configuration(client, settings, org, owner_headers):
    state = client.get(f"/mercadopago/oauth/connect?org_id={org.id}", headers=owner_headers).json()["state"]
    client.app.dependency_overrides[get_settings] = lambda: replace(settings, mp_token_key=None)

    response = client.get(
        "/mercadopago/oauth/callback", params={"code": "abc", "state": state}, follow_redirects=False
    )

    assert response.headers["location"].endswith("mp_error=config_error")


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================


def test_link_config_not_found_and_expired(client, db, settings, org, salon):
    expired = PaymentLinkService(db, settings).issue(org.id, salon.id, expires_at=utcnow() - timedelta(hours=1))

    assert client.get("/payment-links/config", params={"token": "0" * 64}).status_code == 404
    assert client.get("/payment-links/config", params={"token": expired.token}).status_code == 410


def test_public_booking_rejections_share_one_body(client, db, settings, connected_org, salon, other_salon, link_token):
    expired = PaymentLinkService(db, settings).issue(
        connected_org.id, salon.id, expires_at=utcnow() - timedelta(hours=1)
    )
    base = {"client_name": "Cliente", "starts_at": "2026-03-02T10:00:00", "amount": 1000}

    scope = client.post("/public/appointments", json={**base, "token": link_token, "salon_id": other_salon.id})
    stale = client.post("/public/appointments", json={**base, "token": expired.token, "salon_id": salon.id})

    assert scope.status_code == stale.status_code == 403
    assert scope.json() == stale.json()
    assert db.query(Appointment).count() == 0


def test_public_booking_taken_slot(client, salon, link_token):
    body = {"token": link_token, "salon_id": salon.id, "client_name": "A", "starts_at": "2026-03-02T10:00:00", "amount": 1000}

    assert client.post("/public/appointments", json=body).status_code == 200
    assert client.post("/public/appointments", json={**body, "client_name": "B"}).status_code == 409


def test_public_booking_provider_failure(client, db, fake_mp, salon, link_token):
    fake_mp.preference_status = 503
    body = {"token": link_token, "salon_id": salon.id, "client_name": "A", "starts_at": "2026-03-02T10:00:00", "amount": 1000}

    response = client.post("/public/appointments", json=body)

    assert response.status_code == 502
    assert db.query(Appointment).count() == 0


def test_public_booking_validates_amount(client, salon, link_token):
    body = {"token": link_token, "salon_id": salon.id, "client_name": "A", "starts_at": "2026-03-02T10:00:00", "amount": 0}

    assert client.post("/public/appointments", json=body).status_code == 422


def test_availability_requires_valid_link(client, salon, other_salon, link_token):
    response = client.get(
        "/public/availability", params={"token": link_token, "salon_id": other_salon.id, "date": "2026-03-02"}
    )
    assert response.status_code == 403


def test_public_stylists(client, db, connected_org, salon, other_salon, link_token):
    valeria = Employee(org_id=connected_org.id, full_name="Valeria Ruiz", email="valeria@example.com")
    ana = Employee(org_id=connected_org.id, full_name="Ana Díaz")
    inactive = Employee(org_id=connected_org.id, full_name="Bruno Paz", active=False)
    deleted = Employee(org_id=connected_org.id, full_name="Carla Sosa", deleted_at=utcnow())
    elsewhere = Employee(org_id=connected_org.id, full_name="Diego Luna")
    unassigned = Employee(org_id=connected_org.id, full_name="Elena Mora")
    db.add_all([valeria, ana, inactive, deleted, elsewhere, unassigned])
    db.commit()
    db.add_all(
        [
            SalonEmployee(salon_id=salon.id, employee_id=valeria.id),
            SalonEmployee(salon_id=salon.id, employee_id=ana.id),
            SalonEmployee(salon_id=salon.id, employee_id=inactive.id),
            SalonEmployee(salon_id=salon.id, employee_id=deleted.id),
            SalonEmployee(salon_id=other_salon.id, employee_id=elsewhere.id),
            SalonEmployee(salon_id=salon.id, employee_id=unassigned.id, active=False),
        ]
    )
    db.commit()

    response = client.get("/public/stylists", params={"token": link_token, "salon_id": salon.id})

    assert response.status_code == 200
    assert response.json() == {
        "stylists": [
            {"id": ana.id, "full_name": "Ana Díaz"},
            {"id": valeria.id, "full_name": "Valeria Ruiz"},
        ]
    }


def test_public_stylists_requires_valid_link(client, db, settings, connected_org, salon, other_salon, link_token):
    expired = PaymentLinkService(db, settings).issue(
        connected_org.id, salon.id, expires_at=utcnow() - timedelta(hours=1)
    )

    scope = client.get("/public/stylists", params={"token": link_token, "salon_id": other_salon.id})
    stale = client.get("/public/stylists", params={"token": expired.token, "salon_id": salon.id})

    assert scope.status_code == stale.status_code == 403
    assert scope.json() == stale.json() == {"detail": "Invalid or expired booking link"}


# ============================================================================
# WEBHOOK
# ============================================================================


def test_webhook_rejects_bad_signature(client):
    raw = json.dumps({"type": "payment", "data": {"id": "1"}}).encode()

    response = client.post("/webhooks/mercadopago", content=raw, headers={"X-Signature": "ts=1,v1=deadbeef"})
    assert response.status_code == 401

    response = client.post("/webhooks/mercadopago", content=raw)
    assert response.status_code == 401


def test_webhook_wrong_method(client):
    assert client.get("/webhooks/mercadopago").status_code == 405


def test_webhook_acknowledges_unresolvable_and_garbage(client, settings):
    response = signed_webhook(client, settings, {"type": "payment", "data": {"id": "999"}})
    assert response.status_code == 200

    client.app.dependency_overrides[get_settings] = lambda: replace(settings, mp_webhook_secret=None)
    response = client.post("/webhooks/mercadopago", content=b"{not json")
    assert response.status_code == 200


def test_duplicate_webhook_applies_once(client, db, settings, fake_mp, salon, link_token):
    body = {"token": link_token, "salon_id": salon.id, "client_name": "A", "starts_at": "2026-03-02T10:00:00", "amount": 1000}
    appointment_id = client.post("/public/appointments", json=body).json()["appointment_id"]
    fake_mp.add_payment("1001", appointment_id, amount=1000.0)

    notification = {"type": "payment", "data": {"id": "1001", "external_reference": appointment_id}}
    assert signed_webhook(client, settings, notification).status_code == 200
    assert signed_webhook(client, settings, notification).status_code == 200

    db.expire_all()
    assert db.query(Payment).filter(Payment.mp_payment_id == "1001").count() == 1
    appointment = db.query(Appointment).filter(Appointment.id == appointment_id).one()
    assert appointment.status == "confirmed"
    assert appointment.total_collected == 1000.0


def webhook_for_booking(client, settings, fake_mp, salon, link_token):
    body = {"token": link_token, "salon_id": salon.id, "client_name": "A", "starts_at": "2026-03-02T10:00:00", "amount": 1000}
    appointment_id = client.post("/public/appointments", json=body).json()["appointment_id"]
    fake_mp.add_payment("1001", appointment_id, amount=1000.0)
    response = signed_webhook(client, settings, {"type": "payment", "user_id": 123456, "data": {"id": "1001"}})
    return appointment_id, response


def test_webhook_is_queued_for_worker_when_pool_available(client, db, settings, fake_mp, salon, link_token):
    queue = MagicMock()
    queue.enqueue_job = AsyncMock()
    client.app.dependency_overrides[get_task_queue] = lambda: queue

    _, response = webhook_for_booking(client, settings, fake_mp, salon, link_token)

    assert response.status_code == 200
    event = db.query(WebhookEvent).one()
    queue.enqueue_job.assert_awaited_once_with("process_webhook_event_task", event.id)
    assert event.status == "received"
    assert fake_mp.payment_fetches == []


def test_webhook_processed_in_process_when_queue_fails(client, db, settings, fake_mp, salon, link_token):
    queue = MagicMock()
    queue.enqueue_job = AsyncMock(side_effect=RedisError("connection refused"))
    client.app.dependency_overrides[get_task_queue] = lambda: queue

    appointment_id, response = webhook_for_booking(client, settings, fake_mp, salon, link_token)

    assert response.status_code == 200
    db.expire_all()
    assert db.query(Appointment).filter(Appointment.id == appointment_id).one().status == "confirmed"


# ============================================================================
# RATE LIMITING
# ============================================================================


def limiter_redis(count=None, error=None):
    redis_client = MagicMock()
    pipeline = redis_client.pipeline.return_value
    if error:
        pipeline.execute.side_effect = error
    else:
        pipeline.execute.return_value = [count, True]
    return redis_client


def test_public_endpoint_rate_limited(client, settings, link_token):
    client.app.dependency_overrides[get_settings] = lambda: replace(settings, rate_limit_enabled=True, public_rate_limit=5)
    client.app.dependency_overrides[get_rate_limit_redis] = lambda: limiter_redis(count=6)

    response = client.get("/payment-links/config", params={"token": link_token})

    assert response.status_code == 429
    assert int(response.headers["Retry-After"]) > 0


def test_rate_limiter_allows_under_limit_and_fails_open(client, settings, link_token):
    client.app.dependency_overrides[get_settings] = lambda: replace(settings, rate_limit_enabled=True, public_rate_limit=5)

    client.app.dependency_overrides[get_rate_limit_redis] = lambda: limiter_redis(count=5)
    assert client.get("/payment-links/config", params={"token": link_token}).status_code == 200

    client.app.dependency_overrides[get_rate_limit_redis] = lambda: limiter_redis(error=RedisError("down"))
    assert client.get("/payment-links/config", params={"token": link_token}).status_code == 200

    client.app.dependency_overrides[get_rate_limit_redis] = lambda: None
    assert client.get("/payment-links/config", params={"token": link_token}).status_code == 200
