"""HMAC-SHA256 signing of outbound webhook bodies."""

import hashlib
import hmac
import json
from typing import Any

SIGNATURE_PREFIX = "sha256="


def serialize_body(payload: dict[str, Any]) -> str:
    """Canonical JSON for a payload; these exact bytes are signed and sent."""
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str)


def sign_payload(payload_json: str | bytes, secret: str) -> str:
    """Compute HMAC-SHA256 hex digest for a JSON payload."""
    if isinstance(payload_json, str):
        payload_json = payload_json.encode("utf-8")
    return hmac.new(
        secret.encode("utf-8"),
        payload_json,
        hashlib.sha256,
    ).hexdigest()


def signature_header(payload_json: str | bytes, secret: str) -> str:
    """Value for the ``X-Webhook-Signature-256`` header."""
    return f"{SIGNATURE_PREFIX}{sign_payload(payload_json, secret)}"


def verify_signature(payload_body: str | bytes, secret: str, signature: str) -> bool:
    """Verify a received body against its ``X-Webhook-Signature-256`` header.

    Args:
        payload_body: The raw request body (string or bytes).
        secret: The webhook endpoint's shared secret.
        signature: Header value, with or without the ``sha256=`` prefix.

    Returns:
        True if the signature is valid, False otherwise.
    """
    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX):]
    expected = sign_payload(payload_body, secret)
    return hmac.compare_digest(expected, signature)
