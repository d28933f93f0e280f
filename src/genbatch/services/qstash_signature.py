"""Signature verification for QStash deliveries.

QStash signs every delivery with a short-lived HS256 JWT in the
``Upstash-Signature`` header. The token carries the destination URL as subject
and a SHA-256 hash of the raw body, so both the target and the payload are
authenticated. Two signing keys are active at any time (current and next) to
allow rotation; a token signed with either is accepted.

Security Note:
    verify_qstash_signature MUST be called on the raw body before the payload is
    parsed or trusted. Return 401 Unauthorized immediately if it fails.
"""

import base64
import hashlib
import hmac

import jwt

from genbatch.services.exceptions import SignatureVerificationError

ISSUER = "Upstash"


def body_hash(raw_body: bytes) -> str:
    """Unpadded base64url SHA-256 of the body, as carried in the ``body`` claim."""
    digest = hashlib.sha256(raw_body).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def _verify_with_key(
    signature: str, raw_body: bytes, url: str, signing_key: str, leeway: float
) -> dict:
    claims = jwt.decode(
        signature,
        signing_key,
        algorithms=["HS256"],
        issuer=ISSUER,
        leeway=leeway,
        options={"require": ["iss", "sub", "exp", "nbf", "body"]},
    )

    if claims["sub"].rstrip("/") != url.rstrip("/"):
        raise SignatureVerificationError(f"Signature subject does not match {url}")

    # Constant-time comparison; the claim may or may not carry padding
    if not hmac.compare_digest(str(claims["body"]).rstrip("="), body_hash(raw_body)):
        raise SignatureVerificationError("Body hash does not match signature")

    return claims


def verify_qstash_signature(
    signature: str,
    raw_body: bytes,
    url: str,
    current_signing_key: str,
    next_signing_key: str,
    leeway: float = 1.0,
) -> dict:
    """Verify a QStash delivery signature against the current, then the next key.

    Args:
        signature: Value of the Upstash-Signature header (a JWT)
        raw_body: Raw request body bytes, exactly as received
        url: Public URL the message was delivered to
        current_signing_key: QSTASH_CURRENT_SIGNING_KEY
        next_signing_key: QSTASH_NEXT_SIGNING_KEY
        leeway: Clock skew tolerance in seconds for exp/nbf

    Returns:
        Verified JWT claims

    Raises:
        SignatureVerificationError: If no configured key verifies the signature
    """
    if not signature:
        raise SignatureVerificationError("Missing signature")

    keys = [key for key in (current_signing_key, next_signing_key) if key]
    if not keys:
        raise SignatureVerificationError("No signing keys configured")

    # A token that verifies under one key but carries the wrong subject or body
    # hash raises from _verify_with_key directly
    last_error: Exception | None = None
    for key in keys:
        try:
            return _verify_with_key(signature, raw_body, url, key, leeway)
        except jwt.PyJWTError as e:
            last_error = e

    raise SignatureVerificationError(f"Invalid signature: {last_error}") from last_error
