"""Storage helpers shared by the memory and postgres backends."""

from __future__ import annotations

import base64
import hashlib
import json
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from arenaauth.logging import get_logger

logger = get_logger(__name__)

# Fields a user may change about themselves; everything else on User is
# security state and only moves through dedicated store primitives.
PROFILE_FIELDS = frozenset(
    {"email", "first_name", "last_name", "profile_image_url", "phone_number", "meta"}
)


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_secret_cipher(key_material: str) -> Fernet:
    if not key_material:
        raise RuntimeError("secret encryption key is required")
    try:
        return Fernet(derive_cipher_key(key_material))
    except (TypeError, ValueError) as exc:
        raise RuntimeError("Unable to initialize secret cipher") from exc


def encrypt_secret(cipher: Fernet, secret: Optional[str]) -> Optional[str]:
    if not secret:
        return secret
    return cipher.encrypt(secret.encode()).decode()


def decrypt_secret(cipher: Fernet, secret: Optional[str]) -> Optional[str]:
    if not secret:
        return secret
    try:
        return cipher.decrypt(secret.encode()).decode()
    except InvalidToken:
        # Key rotated or value tampered with; treat as unusable rather than leaking ciphertext
        logger.warning("two_factor_secret_decrypt_failed")
        return None


def normalize_json(value: Any) -> Dict[str, Any]:
    """Coerce a JSON column value (str, dict or None) into a dict."""
    if value is None:
        return {}
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    if isinstance(value, dict):
        return dict(value)
    return {}


__all__ = [
    "PROFILE_FIELDS",
    "build_secret_cipher",
    "decrypt_secret",
    "derive_cipher_key",
    "encrypt_secret",
    "normalize_json",
]
