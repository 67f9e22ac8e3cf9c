from __future__ import annotations

import json
import os
import time
from datetime import timedelta
from typing import Any

import pytest

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("STRICT_ENV_VALIDATION", "false")
os.environ.setdefault("DATABASE_URL", "postgresql://test@localhost/test")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "whsec_test")

from fastapi.testclient import TestClient  # noqa: E402

import entitlements  # noqa: E402
import main  # noqa: E402
from db import normalize_email  # noqa: E402
from signature import sign_body  # noqa: E402

WEBHOOK_SECRET = "whsec_test"
STANDARD_AMOUNT = 19900
EMERGENCY_AMOUNT = 4900


class FakeStore:
    """In-memory stand-in for the Postgres entitlement tables."""

    def __init__(self) -> None:
        self.timed: dict[str, dict[str, Any]] = {}
        self.one_shot: list[dict[str, Any]] = []
        self.writes = 0
        self.fail_writes = False

    def upsert_timed_entitlement(self, *, email, tier, paid_at, duration_days, amount):
        if self.fail_writes:
            raise main.psycopg.OperationalError("database is down")
        key = normalize_email(email)
        current = self.timed.get(key)
        if current and current["paid_at"] > paid_at:
            return None
        self.writes += 1
        row = {
            "email": key,
            "tier": tier,
            "amount": amount,
            "paid_at": paid_at,
            "expires_at": paid_at + timedelta(days=duration_days),
        }
        self.timed[key] = row
        return row

    def append_one_shot_entitlement(
        self, *, email, tier, amount, payment_id, payment_link_id, paid_at
    ):
        if self.fail_writes:
            raise main.psycopg.OperationalError("database is down")
        if payment_id and any(r["payment_id"] == payment_id for r in self.one_shot):
            return False
        self.writes += 1
        self.one_shot.append(
            {
                "email": normalize_email(email),
                "tier": tier,
                "amount": amount,
                "payment_id": payment_id,
                "payment_link_id": payment_link_id,
                "paid_at": paid_at,
            }
        )
        return True

    def find_timed_entitlement(self, email):
        return self.timed.get(normalize_email(email))

    def find_one_shot_entitlement(self, email):
        key = normalize_email(email)
        rows = [r for r in self.one_shot if r["email"] == key]
        return rows[0] if rows else None

    def delete_one_shot_entitlement(self, email, amount):
        key = normalize_email(email)
        for index, row in enumerate(self.one_shot):
            if row["email"] == key and row["amount"] == amount:
                del self.one_shot[index]
                self.writes += 1
                return True
        return False


@pytest.fixture
def store(monkeypatch) -> FakeStore:
    fake = FakeStore()
    for name in (
        "upsert_timed_entitlement",
        "append_one_shot_entitlement",
        "find_timed_entitlement",
        "find_one_shot_entitlement",
        "delete_one_shot_entitlement",
    ):
        monkeypatch.setattr(entitlements, name, getattr(fake, name))
    return fake


@pytest.fixture
def env(monkeypatch):
    monkeypatch.setenv("RAZORPAY_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("TIMED_TIER_AMOUNT", str(STANDARD_AMOUNT))
    monkeypatch.setenv("EMERGENCY_TIER_AMOUNT", str(EMERGENCY_AMOUNT))
    monkeypatch.setenv("TIER_EXPIRY_DAYS", "30")
    monkeypatch.setenv("RAZORPAY_KEY_ID", "rzp_test_key")
    monkeypatch.setenv("RAZORPAY_KEY_SECRET", "rzp_test_secret")
    monkeypatch.delenv("PLACEHOLDER_EMAIL_DOMAIN", raising=False)
    return monkeypatch


@pytest.fixture
def client(store, env) -> TestClient:
    return TestClient(main.app)


def make_payload(
    *,
    email: str | None = "buyer@example.com",
    amount: int | None = STANDARD_AMOUNT,
    event: str = "payment_link.paid",
    link_id: str | None = "plink_123",
    payment_id: str | None = "pay_123",
    link_customer_email: str | None = None,
    link_email: str | None = None,
    created_at: int | None = None,
) -> dict[str, Any]:
    payment: dict[str, Any] = {
        "id": payment_id,
        "email": email,
        "created_at": created_at if created_at is not None else int(time.time()),
    }
    if amount is not None:
        payment["amount"] = amount
    link: dict[str, Any] = {"id": link_id, "customer": {"email": link_customer_email}}
    if link_email is not None:
        link["email"] = link_email
    return {
        "event": event,
        "payload": {
            "payment": {"entity": payment},
            "payment_link": {"entity": link},
        },
    }


def post_webhook(
    client: TestClient,
    payload: dict[str, Any] | bytes,
    *,
    secret: str = WEBHOOK_SECRET,
    signature: str | None = None,
):
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    headers = {
        "content-type": "application/json",
        "x-razorpay-signature": signature if signature is not None else sign_body(body, secret),
        "x-razorpay-event-id": "evt_test",
    }
    return client.post("/webhook", content=body, headers=headers)
