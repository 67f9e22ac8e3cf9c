from __future__ import annotations

import logging
import uuid
from typing import Any

import requests

from events import PaymentIdentity, is_trustworthy

logger = logging.getLogger("premium_unlock.razorpay")

DEFAULT_API_BASE = "https://api.razorpay.com/v1"


class RazorpayError(RuntimeError):
    """Raised when the Razorpay API cannot be reached or rejects a call."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _request(
    method: str,
    path: str,
    *,
    key_id: str,
    key_secret: str,
    base_url: str = DEFAULT_API_BASE,
    timeout: float = 10,
    json_body: dict[str, Any] | None = None,
) -> dict[str, Any]:
    url = f"{base_url.rstrip('/')}/{path.lstrip('/')}"
    try:
        resp = requests.request(
            method,
            url,
            auth=(key_id, key_secret),
            json=json_body,
            timeout=timeout,
        )
    except requests.Timeout as exc:
        raise RazorpayError(f"Razorpay API timed out after {timeout}s.") from exc
    except requests.RequestException as exc:
        raise RazorpayError("Failed to reach Razorpay API.") from exc

    if resp.status_code >= 400:
        raise RazorpayError(
            f"Razorpay API error {resp.status_code}: {resp.text[:200]}",
            status_code=resp.status_code,
        )
    try:
        payload = resp.json()
    except ValueError as exc:
        raise RazorpayError("Razorpay API returned a non-JSON body.") from exc
    if not isinstance(payload, dict):
        raise RazorpayError("Razorpay API returned an unexpected body.")
    return payload


def fetch_payment_link(
    link_id: str,
    *,
    key_id: str,
    key_secret: str,
    base_url: str = DEFAULT_API_BASE,
    timeout: float = 10,
) -> dict[str, Any]:
    return _request(
        "GET",
        f"/payment_links/{link_id}",
        key_id=key_id,
        key_secret=key_secret,
        base_url=base_url,
        timeout=timeout,
    )


def create_payment_link(
    *,
    email: str,
    amount: int,
    currency: str,
    description: str,
    key_id: str,
    key_secret: str,
    base_url: str = DEFAULT_API_BASE,
    timeout: float = 10,
    callback_url: str | None = None,
) -> dict[str, Any]:
    """Create a hosted payment link for ``amount`` minor units."""
    body: dict[str, Any] = {
        "amount": amount,
        "currency": currency,
        "description": description,
        "reference_id": str(uuid.uuid4()),
        "customer": {"email": email},
        "notify": {"email": True},
    }
    if callback_url:
        body["callback_url"] = callback_url
        body["callback_method"] = "get"
    return _request(
        "POST",
        "/payment_links",
        key_id=key_id,
        key_secret=key_secret,
        base_url=base_url,
        timeout=timeout,
        json_body=body,
    )


def resolve_identity(
    identity: PaymentIdentity,
    *,
    key_id: str | None,
    key_secret: str | None,
    placeholder_domain: str,
    base_url: str = DEFAULT_API_BASE,
    timeout: float = 10,
) -> tuple[PaymentIdentity, RazorpayError | None]:
    """Replace an untrustworthy email with the one stored on the payment link.

    Never raises: a failed fetch comes back as the second element and the
    identity is returned unchanged so the caller can carry on degraded.
    """
    if is_trustworthy(identity.email, placeholder_domain) or not identity.link_reference:
        return identity, None
    if not key_id or not key_secret:
        return identity, RazorpayError("Razorpay API credentials are not configured.")
    try:
        link = fetch_payment_link(
            identity.link_reference,
            key_id=key_id,
            key_secret=key_secret,
            base_url=base_url,
            timeout=timeout,
        )
    except RazorpayError as exc:
        return identity, exc

    customer = link.get("customer") if isinstance(link.get("customer"), dict) else {}
    email = customer.get("email")
    if isinstance(email, str) and email.strip():
        logger.info("Email resolved via Razorpay API for link %s.", identity.link_reference)
        return identity.model_copy(update={"email": email.strip()}), None
    logger.warning("Payment link %s has no customer email.", identity.link_reference)
    return identity, None
