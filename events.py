from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Callable

from pydantic import BaseModel

PAYMENT_LINK_PAID = "payment_link.paid"
SUCCESS_EVENTS = frozenset({PAYMENT_LINK_PAID})


class ParseError(ValueError):
    """Raised when a verified webhook body is not a JSON object."""


class WebhookEvent(BaseModel):
    event_type: str
    payload: dict[str, Any]
    raw_body: bytes
    signature_header: str | None = None
    event_id: str | None = None


class PaymentIdentity(BaseModel):
    email: str | None = None
    amount: int | None = None
    link_reference: str | None = None
    payment_id: str | None = None
    paid_at: datetime | None = None


def parse_event(
    raw_body: bytes,
    signature_header: str | None = None,
    event_id: str | None = None,
) -> WebhookEvent:
    try:
        body = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ParseError("Webhook body is not valid JSON.") from exc
    if not isinstance(body, dict):
        raise ParseError("Webhook body must be a JSON object.")
    payload = body.get("payload")
    return WebhookEvent(
        event_type=str(body.get("event") or ""),
        payload=payload if isinstance(payload, dict) else {},
        raw_body=raw_body,
        signature_header=signature_header,
        event_id=event_id,
    )


def is_success_event(event: WebhookEvent) -> bool:
    return event.event_type in SUCCESS_EVENTS


def _entity(payload: dict[str, Any], name: str) -> dict[str, Any]:
    wrapper = payload.get(name)
    if not isinstance(wrapper, dict):
        return {}
    entity = wrapper.get("entity")
    return entity if isinstance(entity, dict) else {}


def _payment_email(payload: dict[str, Any]) -> str | None:
    return _entity(payload, "payment").get("email")


def _link_customer_email(payload: dict[str, Any]) -> str | None:
    customer = _entity(payload, "payment_link").get("customer")
    if not isinstance(customer, dict):
        return None
    return customer.get("email")


def _link_email(payload: dict[str, Any]) -> str | None:
    return _entity(payload, "payment_link").get("email")


# Tried in order; the first non-empty email wins.
EMAIL_STRATEGIES: tuple[tuple[str, Callable[[dict[str, Any]], Any]], ...] = (
    ("payment.entity.email", _payment_email),
    ("payment_link.entity.customer.email", _link_customer_email),
    ("payment_link.entity.email", _link_email),
)


def _first_email(payload: dict[str, Any]) -> str | None:
    for _, strategy in EMAIL_STRATEGIES:
        value = strategy(payload)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _parse_amount(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            return None
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


def extract_identity(event: WebhookEvent) -> PaymentIdentity:
    """Pull the candidate customer identity out of a payment success event.

    The amount is only ever read from the embedded payment entity; it is not
    searched across the fallback locations used for the email.
    """
    payment = _entity(event.payload, "payment")
    link = _entity(event.payload, "payment_link")
    link_id = link.get("id")
    payment_id = payment.get("id")
    return PaymentIdentity(
        email=_first_email(event.payload),
        amount=_parse_amount(payment.get("amount")),
        link_reference=str(link_id) if link_id else None,
        payment_id=str(payment_id) if payment_id else None,
        paid_at=_parse_timestamp(payment.get("created_at")),
    )


def is_trustworthy(email: str | None, placeholder_domain: str) -> bool:
    """An email is usable unless it is empty or points at the processor itself."""
    if not email or not email.strip():
        return False
    if placeholder_domain and placeholder_domain.lower() in email.lower():
        return False
    return True
