"""Shared test fixtures for the CAKTO billing test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, fixed webhook secret)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- plan: a monthly plan mapped to offer "off_pro"
- post_webhook: signs and POSTs a payload to /cakto/webhook
- mock_send_email: patches the SMTP-backed send_email used for access emails
"""

import json
from unittest.mock import patch

import pytest

from app import create_app
from app.extensions import db as _db
from app.models.plan import Plan
from app.services.cakto_service import compute_signature

WEBHOOK_URL = "/cakto/webhook"


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def plan(db_session):
    plan = Plan(
        name="Pro",
        price=49.90,
        billing_period="monthly",
        period_days=30,
        cakto_plan_id="off_pro",
        active=True,
    )
    _db.session.add(plan)
    _db.session.commit()
    return plan


@pytest.fixture
def post_webhook(app, client):
    """Return a function that POSTs a correctly signed webhook.

    `body` overrides the serialised payload (to send raw or tampered bytes
    under the payload's signature).
    """

    def _post(payload, body=None, headers=None, sign=True):
        signed = json.dumps(payload)
        request_headers = {}
        if sign:
            secret = app.config["CAKTO_WEBHOOK_SECRET"]
            request_headers["X-Cakto-Signature"] = compute_signature(secret, signed)
        request_headers.update(headers or {})
        return client.post(
            WEBHOOK_URL,
            data=signed if body is None else body,
            content_type="application/json",
            headers=request_headers,
        )

    return _post


@pytest.fixture
def mock_send_email():
    with patch(
        "app.services.notification_service.send_email", return_value=True
    ) as mocked:
        yield mocked


def _purchase_payload(
    email="a@x.com",
    subscription_id="sub_1",
    offer_id="off_1",
    event="purchase.approved",
    **data,
):
    payload = {
        "type": event,
        "data": {
            "id": subscription_id,
            "customer": {"email": email, "name": "Ana Souza", "phone": "11999990000"},
            "offer": {"id": offer_id, "name": "Pro", "price": 4900, "intervalType": "month"},
        },
    }
    payload["data"].update(data)
    return payload


@pytest.fixture
def purchase_payload():
    """Builder for a purchase event in the gateway's usual shape."""
    return _purchase_payload
