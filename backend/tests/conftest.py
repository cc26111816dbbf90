"""
Shared fixtures: an in-memory Supabase double, a mocked Stripe client and
a TestClient wired to both through create_app().
"""
import hashlib
import hmac
import json
import time
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from billing_sync.config import Settings
from billing_sync.main import create_app

WEBHOOK_SECRET = "whsec_test_secret"


class _Result:
    def __init__(self, data):
        self.data = data


class _Query:
    def __init__(self, db, name):
        self.db = db
        self.name = name
        self._filters = []
        self._limit = None
        self._patch = None

    def select(self, _cols="*"):
        return self

    def eq(self, field, value):
        self._filters.append((field, value))
        return self

    def limit(self, count):
        self._limit = count
        return self

    def update(self, patch):
        self._patch = dict(patch)
        return self

    def execute(self):
        if self.db.fail_with is not None:
            raise self.db.fail_with

        rows = [
            r for r in self.db.store[self.name]
            if all(r.get(field) == value for field, value in self._filters)
        ]
        if self._patch is not None:
            for r in rows:
                r.update(self._patch)
            self.db.writes.append((self.name, dict(self._patch), len(rows)))
        if self._limit is not None:
            rows = rows[:self._limit]
        return _Result([dict(r) for r in rows])


class FakeSupabase:
    def __init__(self):
        self.store = {"users": []}
        self.writes = []
        self.fail_with = None

    def table(self, name):
        self.store.setdefault(name, [])
        return _Query(self, name)

    def add_user(self, user_id, email, **fields):
        row = {
            "id": user_id,
            "email": email,
            "created_at": "2025-01-15T10:00:00+00:00",
            "stripe_customer_id": None,
            "has_active_subscription": False,
            "payment_tier": None,
            "subscription_status": None,
            "next_billing_date": None,
            "updated_at": None,
        }
        row.update(fields)
        self.store["users"].append(row)
        return row

    def user(self, user_id):
        for row in self.store["users"]:
            if row["id"] == user_id:
                return row
        return None


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Stripe-Signature header for a payload (t=...,v1=HMAC-SHA256)"""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def make_event(event_type: str, obj: dict, event_id: str = "evt_test_1") -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


@pytest.fixture
def settings():
    return Settings(
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        frontend_url="https://example.test",
    )


@pytest.fixture
def fake_supabase():
    return FakeSupabase()


@pytest.fixture
def stripe_client():
    return MagicMock(name="StripeClient")


@pytest.fixture
def app(settings, stripe_client, fake_supabase):
    return create_app(settings, stripe_client=stripe_client, supabase_client=fake_supabase)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def post_event(client):
    """POST a correctly signed webhook event"""
    def _post(event: dict, secret: str = WEBHOOK_SECRET):
        payload = json.dumps(event)
        return client.post(
            "/webhook",
            content=payload,
            headers={
                "stripe-signature": sign_payload(payload, secret),
                "content-type": "application/json",
            },
        )
    return _post
