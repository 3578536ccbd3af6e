"""
Security Utilities
Token generation, hashing, signed state and bearer tokens
"""

import hashlib
import logging
import secrets
from datetime import timedelta
from typing import Any, Optional

# Token generation and validation
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from jose import JWTError
from jose import jwt as jose_jwt

from .utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
OAUTH_STATE_SALT = "mercadopago-oauth-state"


# ============================================================================
# TOKEN GENERATION & HASHING
# ============================================================================


def generate_secure_token(num_bytes: int = 32) -> str:
    """Generate a cryptographically secure random token, hex encoded"""
    return secrets.token_hex(num_bytes)


def hash_token(token: str) -> str:
    """SHA-256 hex digest of a token; the only form in which tokens are stored"""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# ============================================================================
# SIGNED STATE
# ============================================================================


def generate_timed_token(data: dict[str, Any], secret_key: str, salt: str = OAUTH_STATE_SALT) -> str:
    """
    Generate a time-limited token using itsdangerous.
    Expiry is enforced on load with max_age.
    """
    serializer = URLSafeTimedSerializer(secret_key)
    return serializer.dumps(data, salt=salt)


def verify_timed_token(
    token: str, secret_key: str, max_age: int = 600, salt: str = OAUTH_STATE_SALT
) -> Optional[dict[str, Any]]:
    """
    Verify and decode a timed token

    Returns:
        Decoded data if valid, None if invalid or expired
    """
    serializer = URLSafeTimedSerializer(secret_key)
    try:
        return serializer.loads(token, salt=salt, max_age=max_age)
    except SignatureExpired:
        logger.warning("Signed state expired")
        return None
    except BadSignature:
        logger.warning("Invalid signed state")
        return None


# ============================================================================
# BEARER TOKENS
# ============================================================================


def create_jwt_token(
    data: dict[str, Any], secret_key: str, expires_delta: Optional[timedelta] = None
) -> str:
    """
    Create a JWT token

    Args:
        data: Claims to encode in the token
        secret_key: HMAC signing key
        expires_delta: Token expiration time (default 15 minutes)
    """
    to_encode = data.copy()
    expire = utcnow() + (expires_delta or timedelta(minutes=15))
    to_encode.update({"exp": expire})
    return jose_jwt.encode(to_encode, secret_key, algorithm=ALGORITHM)


def verify_jwt_token(token: str, secret_key: str) -> Optional[dict[str, Any]]:
    """
    Verify and decode a JWT token

    Returns:
        Decoded payload if valid, None if invalid or expired
    """
    try:
        return jose_jwt.decode(token, secret_key, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.warning(f"JWT verification failed: {e}")
        return None


# ============================================================================
# AUDIT LOGGING
# ============================================================================


def log_security_event(
    event_type: str,
    org_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
):
    """
    Log security-related events for audit trail

    Args:
        event_type: Type of security event (link_rejected, webhook_rejected, ...)
        org_id: Organization identifier
        ip_address: Client IP address
        details: Additional event details, never secrets
    """
    log_entry = {
        "timestamp": utcnow().isoformat(),
        "event_type": event_type,
        "org_id": org_id,
        "ip_address": ip_address,
        "details": details or {},
    }
    logger.info(f"SECURITY_EVENT: {log_entry}")


def mask_sensitive_data(data: Optional[str], visible_chars: int = 4) -> str:
    """
    Mask sensitive data for logging/display

    Args:
        data: Sensitive data to mask
        visible_chars: Number of characters to show at the end
    """
    if not data:
        return ""
    if len(data) <= visible_chars:
        return "*" * len(data)
    return "*" * (len(data) - visible_chars) + data[-visible_chars:]
