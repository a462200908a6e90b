import base64
import hashlib
import hmac
import secrets
from datetime import datetime, timezone

import bcrypt
from cryptography.fernet import Fernet

ENCRYPTED_PREFIX = "enc:v1:"


class SecretCipher:
    """Fernet wrapper for setting values persisted at rest."""

    def __init__(self, encryption_key: str):
        key_material = hashlib.sha256(encryption_key.encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(key_material))

    def encrypt_text(self, value: str) -> str:
        return ENCRYPTED_PREFIX + self._fernet.encrypt(value.encode("utf-8")).decode("utf-8")

    def decrypt_text(self, value: str) -> str:
        if not value.startswith(ENCRYPTED_PREFIX):
            return value
        token = value[len(ENCRYPTED_PREFIX) :]
        return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=10)).decode("utf-8")


def verify_password(password: str, stored_hash: str, legacy_salt: str | None = None) -> bool:
    if stored_hash.startswith(("$2a$", "$2b$", "$2y$")):
        try:
            return bcrypt.checkpw(password.encode("utf-8"), stored_hash.encode("utf-8"))
        except ValueError:
            return False
    if legacy_salt:
        legacy = hashlib.sha256((legacy_salt + password).encode("utf-8")).hexdigest()
        return hmac.compare_digest(legacy, stored_hash)
    return False


def generate_api_key() -> str:
    return secrets.token_hex(32)


def generate_session_token() -> str:
    return secrets.token_urlsafe(32)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def isoformat(value: datetime | None) -> str | None:
    value = ensure_utc(value)
    return value.isoformat() if value else None
