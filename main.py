from __future__ import annotations

import logging
import os
from typing import Any

import psycopg
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from db import normalize_email
from entitlements import (
    TIER_EMERGENCY,
    TIER_STANDARD,
    ClassificationSkipped,
    PricePoints,
    UnknownTier,
    apply_entitlement,
    check_emergency_status,
    check_payment_status,
    classify,
    consume_emergency,
)
from events import (
    ParseError,
    extract_identity,
    is_success_event,
    is_trustworthy,
    parse_event,
)
from razorpay_client import (
    DEFAULT_API_BASE,
    RazorpayError,
    create_payment_link,
    resolve_identity,
)
from signature import verify_signature

load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("premium_unlock")


class PaymentStatusResponse(BaseModel):
    status: str
    expires_at: str | None = Field(default=None, serialization_alias="expiresAt")


class EmergencyStatusResponse(BaseModel):
    status: str
    amount: int | None = None


class DeleteEmergencyResponse(BaseModel):
    status: str


class WebhookAck(BaseModel):
    status: str = "ok"


class PaymentLinkRequest(BaseModel):
    email: str
    tier: str = "standard"


class PaymentLinkResponse(BaseModel):
    id: str
    short_url: str
    amount: int


app = FastAPI(title="Premium Unlock Backend")

TIER_ALIASES = {
    "standard": TIER_STANDARD,
    "timed": TIER_STANDARD,
    "emergency": TIER_EMERGENCY,
    "one_shot": TIER_EMERGENCY,
}


def _env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value


def _bool_env(name: str, default: str | None = None) -> bool:
    raw = _env(name, default)
    if raw is None:
        return False
    return raw.strip().lower() in {"1", "true", "yes"}


def _int_env(name: str, default: int) -> int:
    return int(_env(name, str(default)) or default)


def _environment() -> str:
    return (_env("ENVIRONMENT", "development") or "development").strip().lower()


def _strict_env() -> bool:
    if os.getenv("STRICT_ENV_VALIDATION") is not None:
        return _bool_env("STRICT_ENV_VALIDATION", "true")
    return _environment() in {"production", "prod"}


def _parse_origins(value: str | None) -> list[str]:
    if not value:
        return []
    origins: list[str] = []
    for origin in value.split(","):
        origin = origin.strip()
        if not origin or origin == "*":
            continue
        origins.append(origin.rstrip("/"))
    return origins


def _cors_origins() -> list[str]:
    return _parse_origins(_env("CORS_ORIGINS"))


def _webhook_secret() -> str | None:
    return _env("RAZORPAY_WEBHOOK_SECRET")


def _razorpay_credentials() -> tuple[str | None, str | None]:
    return _env("RAZORPAY_KEY_ID"), _env("RAZORPAY_KEY_SECRET")


def _razorpay_api_base() -> str:
    return (_env("RAZORPAY_API_BASE_URL", DEFAULT_API_BASE) or DEFAULT_API_BASE).rstrip("/")


def _razorpay_timeout() -> float:
    return float(_env("RAZORPAY_TIMEOUT_SECONDS", "10") or 10)


def _placeholder_domain() -> str:
    return (_env("PLACEHOLDER_EMAIL_DOMAIN", "razorpay.com") or "razorpay.com").strip().lower()


def _price_points() -> PricePoints:
    return PricePoints(
        standard=_int_env("TIMED_TIER_AMOUNT", 19900),
        emergency=_int_env("EMERGENCY_TIER_AMOUNT", 4900),
    )


def _tier_expiry_days() -> int:
    return _int_env("TIER_EXPIRY_DAYS", 30)


def _validate_env() -> None:
    errors: list[str] = []
    warnings: list[str] = []
    if not _env("DATABASE_URL"):
        errors.append("DATABASE_URL is required.")
    if not _webhook_secret():
        errors.append("RAZORPAY_WEBHOOK_SECRET is required.")
    key_id, key_secret = _razorpay_credentials()
    if not key_id or not key_secret:
        warnings.append(
            "RAZORPAY_KEY_ID/RAZORPAY_KEY_SECRET not set; "
            "email fallback and payment links disabled."
        )
    # Read on every webhook, so these are fatal in every environment.
    fatal: list[str] = []
    for name in ("TIMED_TIER_AMOUNT", "EMERGENCY_TIER_AMOUNT", "TIER_EXPIRY_DAYS"):
        try:
            int(_env(name, "0") or 0)
        except ValueError:
            fatal.append(f"{name} must be an integer.")
    try:
        _razorpay_timeout()
    except ValueError:
        fatal.append("RAZORPAY_TIMEOUT_SECONDS must be a number.")
    if not fatal:
        prices = _price_points()
        if prices.standard == prices.emergency:
            fatal.append("TIMED_TIER_AMOUNT and EMERGENCY_TIER_AMOUNT must differ.")

    if fatal or (errors and _strict_env()):
        raise RuntimeError("Config errors: " + "; ".join(fatal + errors))
    for problem in errors + warnings:
        logger.warning(problem)


_validate_env()

if _cors_origins():
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.get("/", response_class=PlainTextResponse)
def root() -> str:
    return "Backend is running"


@app.get("/health")
def health_check() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/webhook", response_model=WebhookAck)
@app.post("/api/razorpay/webhook", response_model=WebhookAck)
async def razorpay_webhook(request: Request) -> WebhookAck:
    # Signature is computed over the untouched body; nothing parses it before this.
    raw_body = await request.body()
    signature_header = request.headers.get("x-razorpay-signature")
    if not verify_signature(raw_body, signature_header, _webhook_secret()):
        logger.warning("Rejected webhook with invalid signature.")
        raise HTTPException(status_code=400, detail="Invalid signature.")

    try:
        event = parse_event(
            raw_body,
            signature_header=signature_header,
            event_id=request.headers.get("x-razorpay-event-id"),
        )
    except ParseError as exc:
        logger.warning("Rejected webhook with malformed body: %s", exc)
        raise HTTPException(status_code=400, detail="Invalid JSON payload.") from exc

    logger.info("Webhook event %s (%s).", event.event_type or "<none>", event.event_id or "-")
    if not is_success_event(event):
        return WebhookAck()

    placeholder = _placeholder_domain()
    identity = extract_identity(event)
    if not is_trustworthy(identity.email, placeholder) and identity.link_reference:
        logger.info(
            "Email missing or placeholder; fetching payment link %s.",
            identity.link_reference,
        )
        key_id, key_secret = _razorpay_credentials()
        identity, fetch_error = await run_in_threadpool(
            resolve_identity,
            identity,
            key_id=key_id,
            key_secret=key_secret,
            placeholder_domain=placeholder,
            base_url=_razorpay_api_base(),
            timeout=_razorpay_timeout(),
        )
        if fetch_error is not None:
            logger.error(
                "Payment link %s lookup failed: %s",
                identity.link_reference,
                fetch_error,
            )

    try:
        tier = classify(identity, _price_points(), placeholder)
    except UnknownTier as exc:
        logger.warning(
            "Unknown amount %s for payment %s; nothing granted.",
            exc.amount,
            identity.payment_id or "-",
        )
        return WebhookAck()
    except ClassificationSkipped as exc:
        logger.warning(
            "Webhook skipped for payment %s: %s",
            identity.payment_id or "-",
            exc,
        )
        return WebhookAck()

    try:
        written = await run_in_threadpool(
            apply_entitlement,
            tier,
            identity,
            duration_days=_tier_expiry_days(),
        )
    except psycopg.Error as exc:
        logger.exception("Failed to record %s entitlement.", tier)
        raise HTTPException(status_code=500, detail="DB Error") from exc

    email = normalize_email(identity.email)
    if written:
        logger.info("Recorded %s entitlement for %s.", tier, email)
    else:
        logger.info("Entitlement for %s already recorded; no change.", email)
    return WebhookAck()


@app.get(
    "/check-payment-status",
    response_model=PaymentStatusResponse,
    response_model_exclude_none=True,
)
@app.get(
    "/api/check-payment-status",
    response_model=PaymentStatusResponse,
    response_model_exclude_none=True,
)
def payment_status(email: str | None = None) -> dict[str, Any]:
    return check_payment_status(email)


@app.get(
    "/check-emergency-status",
    response_model=EmergencyStatusResponse,
    response_model_exclude_none=True,
)
def emergency_status(email: str | None = None) -> dict[str, Any]:
    return check_emergency_status(email)


@app.get("/delete-emergency-payment", response_model=DeleteEmergencyResponse)
def delete_emergency_payment(
    email: str | None = None,
    amount: int | None = None,
) -> DeleteEmergencyResponse:
    email = normalize_email(email)
    if not email:
        raise HTTPException(status_code=400, detail="Email is required.")
    if amount is None:
        amount = _price_points().emergency
    status = consume_emergency(email, amount)
    logger.info("Emergency unlock delete for %s: %s.", email, status)
    return DeleteEmergencyResponse(status=status)


@app.post("/create-payment-link", response_model=PaymentLinkResponse)
def create_link(payload: PaymentLinkRequest) -> PaymentLinkResponse:
    email = normalize_email(payload.email)
    if not email or "@" not in email:
        raise HTTPException(status_code=400, detail="Email address is invalid.")
    tier = TIER_ALIASES.get(payload.tier.strip().lower())
    if not tier:
        raise HTTPException(status_code=400, detail="Unsupported tier.")
    key_id, key_secret = _razorpay_credentials()
    if not key_id or not key_secret:
        raise HTTPException(status_code=503, detail="Payments are not configured.")
    amount = _price_points().amount_for(tier)
    try:
        link = create_payment_link(
            email=email,
            amount=amount,
            currency=_env("PAYMENT_CURRENCY", "INR") or "INR",
            description=f"Premium unlock ({tier.lower()})",
            key_id=key_id,
            key_secret=key_secret,
            base_url=_razorpay_api_base(),
            timeout=_razorpay_timeout(),
            callback_url=_env("PAYMENT_CALLBACK_URL"),
        )
    except RazorpayError as exc:
        logger.error("Payment link creation failed: %s", exc)
        raise HTTPException(status_code=502, detail="Payment provider unavailable.") from exc
    return PaymentLinkResponse(
        id=str(link.get("id") or ""),
        short_url=str(link.get("short_url") or ""),
        amount=int(link.get("amount") or amount),
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=_int_env("PORT", 5000))
