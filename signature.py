from __future__ import annotations

import hashlib
import hmac


def sign_body(raw_body: bytes, secret: str) -> str:
    """Return the lowercase hex HMAC-SHA256 of the raw webhook body."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature_header: str | None, secret: str | None) -> bool:
    """Check a webhook body against the signature header sent by the processor.

    ``raw_body`` must be the bytes exactly as received. A missing secret or
    header is a failed verification, never an exception.
    """
    if not secret or not signature_header:
        return False
    signature = signature_header.strip().lower()
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    try:
        signature.encode("ascii")
    except UnicodeEncodeError:
        return False
    expected = sign_body(raw_body, secret)
    return hmac.compare_digest(expected, signature)
