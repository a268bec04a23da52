"""HMAC signature validation for provider callbacks.

Relay-style providers sign the raw callback body with HMAC-SHA256 using the
per-provider webhook secret and send the hex digest in a header. Validation
uses constant-time comparison to prevent timing attacks.
"""

import base64
import hashlib
import hmac
import time

# Standard Webhooks replay window
WEBHOOK_TOLERANCE_SECONDS = 300


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Hex-encoded HMAC-SHA256 of raw_body keyed with secret."""
    return hmac.new(key=secret.encode("utf-8"), msg=raw_body, digestmod=hashlib.sha256).hexdigest()


def validate_hmac_signature(raw_body: bytes, signature: str | None, secret: str) -> bool:
    """Validate a hex HMAC-SHA256 callback signature.

    Args:
        raw_body: Raw request body bytes, exactly as received (not parsed JSON)
        signature: Hex digest from the provider's signature header; an optional
            "sha256=" prefix is accepted
        secret: Webhook secret configured for the provider

    Returns:
        True if signature is valid, False otherwise (including empty secret or
        missing signature)
    """
    if not secret or not signature:
        return False

    if signature.startswith("sha256="):
        signature = signature[len("sha256=") :]

    expected = compute_signature(raw_body, secret)

    # hexdigest() is lowercase; accept uppercase input
    return hmac.compare_digest(expected.lower(), signature.strip().lower())


def validate_webhook_standard_signature(
    raw_body: bytes,
    webhook_id: str | None,
    timestamp: str | None,
    signature_header: str | None,
    secret: str,
    now: float | None = None,
) -> bool:
    """Validate a Standard Webhooks signature (used by Replicate).

    Signed content is "{webhook_id}.{timestamp}.{body}", keyed with the
    base64-decoded part of a "whsec_..." secret. The header carries one or more
    space-separated "v1,<base64 signature>" values.

    Deliveries whose timestamp is more than WEBHOOK_TOLERANCE_SECONDS away
    from now are rejected so captured callbacks cannot be replayed.

    Returns:
        True if the timestamp is fresh and any of the header signatures matches
    """
    if not (secret and webhook_id and timestamp and signature_header):
        return False

    try:
        sent_at = int(timestamp)
    except ValueError:
        return False
    current = time.time() if now is None else now
    if abs(current - sent_at) > WEBHOOK_TOLERANCE_SECONDS:
        return False

    key_part = secret.split("_", 1)[1] if secret.startswith("whsec_") else secret
    try:
        key = base64.b64decode(key_part)
    except ValueError:
        return False

    signed_content = f"{webhook_id}.{timestamp}.".encode("utf-8") + raw_body
    expected = base64.b64encode(
        hmac.new(key=key, msg=signed_content, digestmod=hashlib.sha256).digest()
    ).decode("ascii")

    for candidate in signature_header.split():
        _, _, value = candidate.partition(",")
        if value and hmac.compare_digest(expected, value):
            return True
    return False
