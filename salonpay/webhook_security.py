"""
Webhook Security Module

Signature verification for Mercado Pago notifications.

Mercado Pago signs the notification with HMAC-SHA256 over "id=<data.id>&topic=<topic>"
and sends it in the X-Signature header as "ts=<unix>,v1=<hex>". The message is rebuilt
from fields parsed out of the raw body, so only those two fields are authenticated.
Signing the whole raw body would be stronger; this construction is kept because it is
what the provider contract produces.
"""

import hashlib
import hmac
import json
import logging
import time
from typing import Any, Optional

logger = logging.getLogger(__name__)

SIGNATURE_VERSION = "v1"


def constant_time_compare(a: str, b: str) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks.
    Uses hmac.compare_digest which is designed for this purpose.
    """
    if not a or not b:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_timestamp(timestamp: Optional[str], max_age: Optional[int]) -> bool:
    """
    Verify webhook timestamp is within acceptable range.
    A max_age of None disables the check.
    """
    if max_age is None:
        return True
    if not timestamp:
        return False

    try:
        webhook_time = int(timestamp)
    except (ValueError, TypeError):
        logger.warning(f"🚫 Invalid webhook timestamp format: {timestamp}")
        return False

    # Mercado Pago sends milliseconds on some accounts
    if webhook_time > 10**11:
        webhook_time //= 1000

    age = abs(int(time.time()) - webhook_time)
    if age > max_age:
        logger.warning(f"🚫 Webhook timestamp too old: {age}s (max: {max_age}s)")
        return False
    return True


def parse_signature_header(signature_header: Optional[str]) -> Optional[dict[str, str]]:
    """Split "ts=...,v1=..." into a dict; None when the header is malformed"""
    if not signature_header:
        return None

    parts: dict[str, str] = {}
    for item in signature_header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep or not key or not value:
            return None
        parts[key.strip()] = value.strip()

    if SIGNATURE_VERSION not in parts:
        return None
    return parts


def extract_signed_fields(raw_body: bytes) -> tuple[Optional[str], Optional[str]]:
    """Return (data.id, topic) parsed from the raw notification body"""
    try:
        payload: Any = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        return None, None

    if not isinstance(payload, dict):
        return None, None

    data = payload.get("data")
    data_id = data.get("id") if isinstance(data, dict) else None
    topic = payload.get("type") or payload.get("topic")

    if data_id in (None, "") or not topic:
        return None, None
    return str(data_id), str(topic)


def build_signed_message(data_id: str, topic: str) -> bytes:
    return f"id={data_id}&topic={topic}".encode("utf-8")


def verify_mercadopago_signature(
    signature_header: Optional[str],
    raw_body: bytes,
    secret: Optional[str],
    max_age: Optional[int] = None,
) -> bool:
    """
    Verify a Mercado Pago X-Signature header against the raw request body.

    Never raises: every failure mode returns False.
    """
    try:
        if not signature_header:
            logger.warning("🚫 Mercado Pago webhook missing X-Signature header")
            return False

        if not secret:
            logger.warning("🚫 Mercado Pago webhook secret not available for verification")
            return False

        parts = parse_signature_header(signature_header)
        if parts is None:
            logger.warning("🚫 Malformed X-Signature header")
            return False

        if not verify_timestamp(parts.get("ts"), max_age):
            return False

        data_id, topic = extract_signed_fields(raw_body)
        if data_id is None or topic is None:
            logger.warning("🚫 Webhook body lacks data.id or topic, cannot verify signature")
            return False

        expected = compute_hmac_sha256(secret, build_signed_message(data_id, topic))
        received = parts[SIGNATURE_VERSION].lower()

        if not constant_time_compare(expected, received):
            logger.warning(f"🚫 Mercado Pago webhook signature mismatch for data.id={data_id}")
            return False

        logger.debug(f"✅ Mercado Pago webhook signature verified: data.id={data_id}")
        return True
    except Exception as e:
        logger.error(f"❌ Signature verification failed: {e}")
        return False


def create_mercadopago_signature(
    raw_body: bytes, secret: str, timestamp: Optional[int] = None
) -> str:
    """
    Create an X-Signature header for a notification body.
    Used by tests and by tooling that replays notifications.
    """
    data_id, topic = extract_signed_fields(raw_body)
    if data_id is None or topic is None:
        raise ValueError("Notification body must contain data.id and type/topic")

    ts = timestamp if timestamp is not None else int(time.time())
    signature = compute_hmac_sha256(secret, build_signed_message(data_id, topic))
    return f"ts={ts},{SIGNATURE_VERSION}={signature}"
