import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from coderider_proxy.errors import AuthenticationError, ConflictError, NotFoundError, ValidationError
from coderider_proxy.models import User, UserSession
from coderider_proxy.repositories import (
    ApiKeyIdentity,
    ApiKeyRepository,
    RegistrationRequestRepository,
    SessionRepository,
    UserRepository,
)
from coderider_proxy.security import hash_password, utcnow, verify_password

logger = logging.getLogger("coderider_proxy")

INVALID_LOGIN = "Invalid username or password"
WEAK_PASSWORD = "password too weak: use at least 8 characters and mix letters and digits"
_DIGITS_ONLY = re.compile(r"^\d+$")
_LETTERS_ONLY = re.compile(r"^[A-Za-z]+$")


def _token_count(field_name: str, value: Any) -> int:
    try:
        count = int(value)
    except (TypeError, ValueError, OverflowError):
        logger.warning("usage_value_not_numeric", extra={"field": field_name, "value": repr(value)})
        return 0
    if isinstance(value, float) and value != count:
        logger.warning("usage_value_truncated", extra={"field": field_name, "value": value})
    return max(0, count)


def validate_password_strength(password: str) -> None:
    if len(password) < 8 or _DIGITS_ONLY.match(password) or _LETTERS_ONLY.match(password):
        raise ValidationError(WEAK_PASSWORD)


@dataclass
class RegistrationOutcome:
    pending_approval: bool
    user: User | None = None
    api_key: str | None = None
    admin_username: str | None = None


@dataclass
class LoginOutcome:
    user: User
    session: UserSession
    api_keys: list[dict[str, Any]] = field(default_factory=list)


class ApiKeyService:
    def __init__(self, api_key_repo: ApiKeyRepository):
        self.api_key_repo = api_key_repo

    def create(self, user_id: int, name: str | None = None) -> tuple[int, str]:
        api_key_id, key = self.api_key_repo.create(user_id, name)
        logger.info("api_key_created", extra={"user_id": user_id, "api_key_id": api_key_id})
        return api_key_id, key

    def validate(self, key: str) -> ApiKeyIdentity:
        # Unknown and inactive keys are reported identically.
        identity = self.api_key_repo.find_active_by_key(key)
        if identity is None:
            raise AuthenticationError("Invalid or inactive API key")
        return identity

    def list_user_keys(self, user_id: int) -> list[dict[str, Any]]:
        return self.api_key_repo.list_by_user(user_id)

    def list_all(self) -> list[dict[str, Any]]:
        return self.api_key_repo.list_all()

    def record_usage(self, api_key_id: int, input_tokens: Any, output_tokens: Any) -> None:
        # Upstream usage values are untrusted.
        self.api_key_repo.add_usage(
            api_key_id,
            _token_count("prompt_tokens", input_tokens),
            _token_count("completion_tokens", output_tokens),
        )


def record_chat_usage(
    api_key_service: ApiKeyService,
    identity: ApiKeyIdentity | None,
    result: Any,
    stream: bool,
) -> bool:
    """Bill one completed chat call to the caller's key.

    Streaming calls, anonymous calls and responses without a ``usage`` block
    are skipped. Returns whether a usage row was updated.
    """
    if stream or identity is None or not isinstance(result, dict):
        return False
    usage = result.get("usage")
    if not isinstance(usage, dict):
        return False
    api_key_service.record_usage(
        identity.id,
        usage.get("prompt_tokens") or 0,
        usage.get("completion_tokens") or 0,
    )
    return True


class AccountService:
    def __init__(
        self,
        user_repo: UserRepository,
        session_repo: SessionRepository,
        registration_repo: RegistrationRequestRepository,
        api_key_service: ApiKeyService,
        requires_approval: bool = True,
        legacy_salt: str | None = None,
        session_ttl: timedelta = timedelta(days=30),
    ):
        self.user_repo = user_repo
        self.session_repo = session_repo
        self.registration_repo = registration_repo
        self.api_key_service = api_key_service
        self.requires_approval = requires_approval
        self.legacy_salt = legacy_salt
        self.session_ttl = session_ttl

    def register(self, username: str, password: str) -> RegistrationOutcome:
        username = username.strip()
        if not username or not password:
            raise ValidationError("username and password are required")
        validate_password_strength(password)
        if self.user_repo.find_by_username(username) or self.registration_repo.find_by_username(username):
            raise ValidationError("username already exists")

        password_hash = hash_password(password)
        if not self.user_repo.exists():
            return self._create_with_key(username, password_hash, is_admin=True)
        if not self.requires_approval:
            return self._create_with_key(username, password_hash, is_admin=False)

        self.registration_repo.create(username, password_hash)
        admin = self.user_repo.find_first_admin()
        logger.info("registration_requested", extra={"username": username})
        return RegistrationOutcome(pending_approval=True, admin_username=admin.username if admin else None)

    def _create_with_key(self, username: str, password_hash: str, is_admin: bool) -> RegistrationOutcome:
        user = self.user_repo.create(username, password_hash, is_admin)
        _, key = self.api_key_service.create(user.id, "default")
        logger.info("user_created", extra={"username": username, "is_admin": is_admin})
        return RegistrationOutcome(pending_approval=False, user=user, api_key=key)

    def login(self, username: str, password: str) -> LoginOutcome:
        if not username or not password:
            raise ValidationError("username and password are required")
        user = self.user_repo.find_by_username(username)
        if user is None or not verify_password(password, user.password_hash, self.legacy_salt):
            raise AuthenticationError(INVALID_LOGIN)

        session = self.session_repo.create(user.id)
        return LoginOutcome(user=user, session=session, api_keys=self.api_key_service.list_user_keys(user.id))

    def validate_session(self, token: str) -> UserSession:
        session = self.session_repo.find_by_token(token)
        if session is None:
            raise AuthenticationError("Invalid or expired session")
        self.session_repo.touch(token)
        return session

    def logout(self, token: str) -> None:
        self.session_repo.delete(token)

    def sweep_expired_sessions(self) -> int:
        removed = self.session_repo.delete_idle_since(utcnow() - self.session_ttl)
        if removed:
            logger.info("sessions_expired", extra={"count": removed})
        return removed

    def list_pending_registrations(self) -> list[dict[str, Any]]:
        return self.registration_repo.list_pending()

    def approve_registration(self, request_id: int) -> User:
        request = self._pending_request(request_id)
        if self.user_repo.find_by_username(request.username):
            raise ConflictError("username already exists")
        # Two independent writes; a crash in between leaves the request pending.
        user = self.user_repo.create(request.username, request.password_hash, is_admin=False)
        self.api_key_service.create(user.id, "default")
        self.registration_repo.set_status(request_id, "approved")
        logger.info("registration_approved", extra={"request_id": request_id, "username": request.username})
        return user

    def reject_registration(self, request_id: int) -> None:
        self._pending_request(request_id)
        self.registration_repo.set_status(request_id, "rejected")
        logger.info("registration_rejected", extra={"request_id": request_id})

    def _pending_request(self, request_id: int):
        request = self.registration_repo.find_by_id(request_id)
        if request is None:
            raise NotFoundError("registration request not found")
        if request.status != "pending":
            raise ConflictError(f"registration request already {request.status}")
        return request
