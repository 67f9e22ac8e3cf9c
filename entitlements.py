from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel

from db import (
    append_one_shot_entitlement,
    delete_one_shot_entitlement,
    find_one_shot_entitlement,
    find_timed_entitlement,
    normalize_email,
    upsert_timed_entitlement,
)
from events import PaymentIdentity, is_trustworthy

TIER_STANDARD = "STANDARD"
TIER_EMERGENCY = "EMERGENCY"
TIERS = (TIER_STANDARD, TIER_EMERGENCY)

STATUS_MISSING_EMAIL = "missing_email"
STATUS_PENDING = "pending"
STATUS_PAID = "paid"
STATUS_EXPIRED = "expired"
STATUS_DELETED = "deleted"
STATUS_NOT_FOUND = "not_found"


class PricePoints(BaseModel):
    standard: int
    emergency: int

    def tier_for(self, amount: int) -> str | None:
        if amount == self.standard:
            return TIER_STANDARD
        if amount == self.emergency:
            return TIER_EMERGENCY
        return None

    def amount_for(self, tier: str) -> int:
        return self.standard if tier == TIER_STANDARD else self.emergency


class ClassificationSkipped(Exception):
    """The event is acknowledged but grants nothing."""


class UnresolvableIdentity(ClassificationSkipped):
    pass


class MissingAmount(ClassificationSkipped):
    pass


class UnknownTier(ClassificationSkipped):
    def __init__(self, amount: int) -> None:
        super().__init__(f"Amount {amount} matches no known price point.")
        self.amount = amount


def classify(identity: PaymentIdentity, prices: PricePoints, placeholder_domain: str) -> str:
    if not is_trustworthy(identity.email, placeholder_domain):
        raise UnresolvableIdentity("No trustworthy customer email on the payment.")
    if identity.amount is None:
        raise MissingAmount("Payment entity carries no amount.")
    tier = prices.tier_for(identity.amount)
    if tier is None:
        raise UnknownTier(identity.amount)
    return tier


def apply_entitlement(
    tier: str,
    identity: PaymentIdentity,
    *,
    duration_days: int,
    now: datetime | None = None,
) -> bool:
    """Write the record for a classified payment.

    Returns False when the store kept its existing state (an older timed
    payment or an already granted one-shot payment id).
    """
    if identity.email is None or identity.amount is None:
        raise ValueError("apply_entitlement needs a classified identity.")
    now = now or datetime.now(timezone.utc)
    paid_at = identity.paid_at or now
    # A window never starts in the future.
    if paid_at > now:
        paid_at = now
    if tier == TIER_STANDARD:
        row = upsert_timed_entitlement(
            email=identity.email,
            tier=tier,
            paid_at=paid_at,
            duration_days=duration_days,
            amount=identity.amount,
        )
        return row is not None
    if tier == TIER_EMERGENCY:
        return append_one_shot_entitlement(
            email=identity.email,
            tier=tier,
            amount=identity.amount,
            payment_id=identity.payment_id,
            payment_link_id=identity.link_reference,
            paid_at=paid_at,
        )
    raise ValueError(f"Unsupported tier: {tier}")


def check_payment_status(email: str | None, now: datetime | None = None) -> dict[str, Any]:
    email = normalize_email(email)
    if not email:
        return {"status": STATUS_MISSING_EMAIL}
    record = find_timed_entitlement(email)
    if not record:
        return {"status": STATUS_PENDING}
    now = now or datetime.now(timezone.utc)
    expires_at = record.get("expires_at")
    if isinstance(expires_at, datetime) and expires_at <= now:
        return {"status": STATUS_EXPIRED}
    return {
        "status": STATUS_PAID,
        "expires_at": expires_at.isoformat() if isinstance(expires_at, datetime) else None,
    }


def check_emergency_status(email: str | None) -> dict[str, Any]:
    email = normalize_email(email)
    if not email:
        return {"status": STATUS_MISSING_EMAIL}
    record = find_one_shot_entitlement(email)
    if not record:
        return {"status": STATUS_PENDING}
    return {"status": STATUS_PAID, "amount": record.get("amount")}


def consume_emergency(email: str, amount: int) -> str:
    if delete_one_shot_entitlement(normalize_email(email), amount):
        return STATUS_DELETED
    return STATUS_NOT_FOUND
