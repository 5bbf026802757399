"""
Pytest configuration and shared fixtures: in-memory SQLite, Supabase-style tokens, seeded catalog.
"""
import os
import time
from unittest.mock import patch

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_dummy")
os.environ.setdefault("SUPABASE_URL", "https://project.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "service-role-test-key")
os.environ.setdefault("SUPABASE_JWT_SECRET", "super-secret-jwt-key-for-tests-only")
os.environ.setdefault("APP_BASE_URL", "https://app.example.com")

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from database.models import Client, Notary, Option, Service, Submission
from database.session import Base, SessionLocal, engine, get_db
from main import app

SERVICE_ROLE_KEY = os.environ["SUPABASE_SERVICE_ROLE_KEY"]


def make_token(sub: str, email: str = "client@example.com", **claims) -> str:
    payload = {
        "sub": sub,
        "email": email,
        "aud": "authenticated",
        "role": "authenticated",
        "iat": int(time.time()),
        "exp": int(time.time()) + 3600,
    }
    payload.update(claims)
    return jwt.encode(payload, os.environ["SUPABASE_JWT_SECRET"], algorithm="HS256")


def _bearer_headers(sub: str, email: str = "client@example.com", **claims) -> dict:
    return {"Authorization": f"Bearer {make_token(sub, email, **claims)}"}


@pytest.fixture()
def access_token():
    return make_token


@pytest.fixture()
def auth_headers():
    return _bearer_headers


@pytest.fixture()
def service_headers():
    return {"apikey": SERVICE_ROLE_KEY}


@pytest.fixture(autouse=True)
def outbox():
    """Capture transactional emails instead of calling the edge function."""
    with patch("svc.notifications.send_transactional_email", return_value=True) as sender:
        yield sender


@pytest.fixture()
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def client(db):
    def get_db_override():
        yield db

    app.dependency_overrides[get_db] = get_db_override
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture()
def catalog(db):
    apostille = Service(service_id="apostille", name="Apostille", base_price=100.0, price_usd=120.0)
    translation = Service(service_id="translation", name="Certified Translation", base_price=50.0)
    express = Option(option_id="express", name="Express processing", additional_price=20.0)
    courier = Option(option_id="courier_copy", name="Courier copy", additional_price=0.0)
    db.add_all([apostille, translation, express, courier])
    db.commit()
    return {"services": [apostille, translation], "options": [express, courier]}


@pytest.fixture()
def client_row(db):
    row = Client(
        user_id="user-1",
        email="client@example.com",
        first_name="Ada",
        last_name="Lovelace",
        stripe_customer_id="cus_123",
    )
    db.add(row)
    db.commit()
    return row


@pytest.fixture()
def notary(db):
    row = Notary(user_id="notary-user", email="notary@example.com", full_name="Nora Notary", is_active=True)
    db.add(row)
    db.commit()
    return row


@pytest.fixture()
def paid_submission(db, client_row):
    submission = Submission(
        client_id=client_row.id,
        email="client@example.com",
        first_name="Ada",
        last_name="Lovelace",
        status="pending",
        funnel_status="payment_completed",
        total_price=100.0,
        data={
            "currency": "EUR",
            "payment": {
                "stripe_session_id": "cs_paid",
                "payment_intent_id": "pi_original",
                "amount_paid": 10000,
                "currency": "eur",
                "payment_status": "paid",
            },
        },
    )
    db.add(submission)
    db.commit()
    return submission
