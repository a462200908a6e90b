from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from coderider_proxy.models import RegistrationRequest, User, UserSession


@dataclass
class ApiKeyIdentity:
    """An active API key joined with its owning user."""

    id: int
    user_id: int
    key: str
    name: str | None
    is_active: bool
    username: str
    is_admin: bool


@dataclass
class UsageTotals:
    api_key_id: int
    total_input_tokens: int
    total_output_tokens: int
    total_requests: int
    updated_at: datetime | None


class UserRepository(Protocol):
    def create(self, username: str, password_hash: str, is_admin: bool) -> User:
        ...

    def find_by_username(self, username: str) -> User | None:
        ...

    def exists(self) -> bool:
        ...

    def find_first_admin(self) -> User | None:
        ...


class ApiKeyRepository(Protocol):
    def create(self, user_id: int, name: str | None = None, key: str | None = None) -> tuple[int, str]:
        ...

    def find_active_by_key(self, key: str) -> ApiKeyIdentity | None:
        ...

    def set_active(self, api_key_id: int, is_active: bool) -> None:
        ...

    def list_by_user(self, user_id: int) -> list[dict[str, Any]]:
        ...

    def list_all(self) -> list[dict[str, Any]]:
        ...

    def add_usage(self, api_key_id: int, input_tokens: int, output_tokens: int) -> None:
        ...

    def get_usage(self, api_key_id: int) -> UsageTotals | None:
        ...


class SessionRepository(Protocol):
    def create(self, user_id: int) -> UserSession:
        ...

    def find_by_token(self, token: str) -> UserSession | None:
        ...

    def touch(self, token: str) -> None:
        ...

    def delete(self, token: str) -> None:
        ...

    def delete_idle_since(self, cutoff: datetime) -> int:
        ...


class RegistrationRequestRepository(Protocol):
    def create(self, username: str, password_hash: str) -> RegistrationRequest:
        ...

    def find_by_id(self, request_id: int) -> RegistrationRequest | None:
        ...

    def find_by_username(self, username: str) -> RegistrationRequest | None:
        ...

    def list_pending(self) -> list[dict[str, Any]]:
        ...

    def set_status(self, request_id: int, status: str) -> None:
        ...


class SettingRepository(Protocol):
    def get(self, key: str) -> str | None:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def keys(self) -> list[str]:
        ...
