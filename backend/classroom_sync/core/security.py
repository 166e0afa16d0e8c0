"""
Security utilities: device secrets (generation + Fernet at rest),
HMAC message signatures, JWT handling for the HTTP surface.
"""

import hashlib
import hmac
import secrets

from cryptography.fernet import Fernet
from jose import jwt, JWTError

from classroom_sync.config import get_settings


# ── Device secrets ──────────────────────────────────────
def generate_device_secret() -> str:
    """48 hex chars, shown once at provisioning time."""
    return secrets.token_hex(24)


def _get_fernet() -> Fernet | None:
    """Get Fernet instance from config secret key, None if not configured."""
    settings = get_settings()
    if not settings.ENCRYPTION_SECRET_KEY:
        return None
    return Fernet(settings.ENCRYPTION_SECRET_KEY.encode())


def encrypt_secret(plaintext: str) -> str:
    """Encrypt a device secret before storing it in the registry.

    Without ENCRYPTION_SECRET_KEY the value is stored as-is.
    """
    f = _get_fernet()
    if f is None:
        return plaintext
    return f.encrypt(plaintext.encode()).decode()


def decrypt_secret(stored: str) -> str:
    """Reverse of encrypt_secret.

    Raises:
        InvalidToken: If the secret key is wrong or data is corrupted.
    """
    f = _get_fernet()
    if f is None:
        return stored
    return f.decrypt(stored.encode()).decode()


def secrets_match(expected: str | None, provided: str | None) -> bool:
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode(), provided.encode())


# ── Message signatures ──────────────────────────────────
def _flag(value: bool | None) -> str:
    if value is None:
        return ""
    return "1" if value else "0"


def canonical_state_payload(mac: str, seq: int, ts: int) -> str:
    return f"{mac}|{seq}|{ts}"


def canonical_result_payload(
    mac: str,
    seq: int,
    ts: int,
    gpio: int,
    success: bool,
    requested_state: bool | None,
    actual_state: bool | None,
) -> str:
    return "|".join([
        canonical_state_payload(mac, seq, ts),
        str(gpio),
        _flag(success),
        _flag(requested_state),
        _flag(actual_state),
    ])


def sign_payload(secret: str, payload: str) -> str:
    """HMAC-SHA256 hex digest, shared by the gateway and the firmware model."""
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


def verify_signature(secret: str | None, payload: str, signature: str | None) -> bool:
    if not secret or not signature:
        return False
    return hmac.compare_digest(sign_payload(secret, payload), signature)


# ── JWT Token ────────────────────────────────────────────
def decode_access_token(token: str) -> dict | None:
    """Decode and validate a JWT token. Returns payload or None if invalid.

    Tokens are issued by the external auth service with the shared key.
    """
    settings = get_settings()
    try:
        payload = jwt.decode(
            token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM]
        )
        return payload
    except JWTError:
        return None
