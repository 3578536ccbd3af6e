"""
Shared fixtures: in-memory SQLite, a fake Mercado Pago API behind httpx.MockTransport,
and a FastAPI TestClient with dependencies pointed at both.
"""

import json
import os
from datetime import timedelta
from urllib.parse import parse_qsl

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from salonpay import models, models_mercadopago  # noqa: F401
from salonpay.config import Settings, get_settings
from salonpay.database import Base, get_db, get_session_factory
from salonpay.models import Organization, Salon
from salonpay.security_utils import create_jwt_token
from salonpay.services.mercadopago_client import MercadoPagoClient, get_mercadopago_client
from salonpay.services.token_service import TokenService


class FakeMercadoPago:
    """Minimal stand-in for api.mercadopago.com"""

    def __init__(self):
        self.token_requests: list[dict] = []
        self.token_status = 200
        self.token_response = {
            "access_token": "APP_USR-refreshed-access",
            "refresh_token": "TG-refreshed-refresh",
            "expires_in": 21600,
            "user_id": 123456,
            "scope": "offline_access read write",
        }
        self.preference_requests: list[tuple[httpx.Request, dict]] = []
        self.preference_status = 201
        self.payments: dict[str, dict] = {}
        self.payment_fetches: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        request.read()
        path = request.url.path

        if path == "/oauth/token":
            self.token_requests.append(dict(parse_qsl(request.content.decode())))
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json=self.token_response)

        if path == "/checkout/preferences":
            if self.preference_status >= 300:
                return httpx.Response(self.preference_status, json={"message": "internal error"})
            body = json.loads(request.content)
            self.preference_requests.append((request, body))
            preference_id = f"pref-{len(self.preference_requests)}"
            return httpx.Response(
                201,
                json={
                    "id": preference_id,
                    "init_point": f"https://www.mercadopago.com.ar/checkout/v1/redirect?pref_id={preference_id}",
                    "sandbox_init_point": f"https://sandbox.mercadopago.com.ar/checkout/v1/redirect?pref_id={preference_id}",
                },
            )

        if path.startswith("/v1/payments/"):
            payment_id = path.rsplit("/", 1)[-1]
            self.payment_fetches.append(payment_id)
            if payment_id not in self.payments:
                return httpx.Response(404, json={"message": "Payment not found"})
            return httpx.Response(200, json=self.payments[payment_id])

        return httpx.Response(404, json={"message": "not found"})

    def add_payment(self, payment_id: str, appointment_id: str, status: str = "approved", amount: float = 5000.0):
        self.payments[payment_id] = {
            "id": int(payment_id),
            "status": status,
            "external_reference": appointment_id,
            "transaction_amount": amount,
            "currency_id": "ARS",
            "date_approved": "2026-03-01T10:05:00.000-03:00" if status == "approved" else None,
        }


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        secret_key="test-secret-key",
        frontend_url="https://app.example.com",
        public_api_base_url="https://api.example.com",
        mp_client_id="client-id",
        mp_client_secret="client-secret",
        mp_token_key="0123456789abcdef0123456789abcdef",
        mp_webhook_secret="webhook-secret",
        rate_limit_enabled=False,
    )


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def fake_mp():
    return FakeMercadoPago()


@pytest.fixture
def mp_client(settings, fake_mp):
    return MercadoPagoClient(settings, transport=httpx.MockTransport(fake_mp.handler))


@pytest.fixture
def org(db):
    organization = Organization(name="Estudio Belgrano")
    db.add(organization)
    db.commit()
    db.refresh(organization)
    return organization


@pytest.fixture
def salon(db, org):
    salon = Salon(org_id=org.id, name="Sede Centro", address="Av. Corrientes 1234")
    db.add(salon)
    db.commit()
    db.refresh(salon)
    return salon


@pytest.fixture
def other_salon(db, org):
    salon = Salon(org_id=org.id, name="Sede Norte")
    db.add(salon)
    db.commit()
    db.refresh(salon)
    return salon


@pytest.fixture
def token_service(db, settings, mp_client):
    return TokenService(db, settings, mp_client)


@pytest.fixture
def connected_org(org, token_service):
    """Org with a credential valid for six hours"""
    token_service.store_tokens(
        org.id,
        {
            "access_token": "APP_USR-initial-access",
            "refresh_token": "TG-initial-refresh",
            "expires_in": int(timedelta(hours=6).total_seconds()),
            "user_id": 123456,
            "scope": "offline_access read write",
        },
    )
    return org


@pytest.fixture
def owner_headers(org, settings):
    token = create_jwt_token({"sub": "owner-1", "org_id": org.id}, settings.secret_key)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(session_factory, settings, mp_client):
    from salonpay.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_mercadopago_client] = lambda: mp_client
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    # Not used as a context manager so the lifespan does not touch the real engine
    yield TestClient(app)

    app.dependency_overrides.clear()
