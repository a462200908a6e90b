import logging
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.orm import sessionmaker

from coderider_proxy.models import ApiKey, ApiUsage, RegistrationRequest, Setting, User, UserSession
from coderider_proxy.repositories import ApiKeyIdentity, UsageTotals
from coderider_proxy.security import (
    SecretCipher,
    generate_api_key,
    generate_session_token,
    isoformat,
    utcnow,
)

logger = logging.getLogger("coderider_proxy")

SECRET_SETTING_KEYS = {"access_token", "refresh_token", "client_secret"}


class SqlUserRepository:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def create(self, username: str, password_hash: str, is_admin: bool) -> User:
        with self._session_factory() as db:
            row = User(username=username, password_hash=password_hash, is_admin=is_admin, created_at=utcnow())
            db.add(row)
            db.commit()
            return row

    def find_by_username(self, username: str) -> User | None:
        with self._session_factory() as db:
            return db.scalar(select(User).where(User.username == username))

    def exists(self) -> bool:
        with self._session_factory() as db:
            return db.scalar(select(User.id).limit(1)) is not None

    def find_first_admin(self) -> User | None:
        with self._session_factory() as db:
            return db.scalar(select(User).where(User.is_admin.is_(True)).order_by(User.id).limit(1))


def _key_view(key: ApiKey, usage: ApiUsage | None) -> dict[str, Any]:
    return {
        "id": key.id,
        "key": key.key,
        "name": key.name,
        "is_active": bool(key.is_active),
        "created_at": isoformat(key.created_at),
        "total_input_tokens": usage.total_input_tokens if usage else 0,
        "total_output_tokens": usage.total_output_tokens if usage else 0,
        "total_requests": usage.total_requests if usage else 0,
    }


class SqlApiKeyRepository:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def create(self, user_id: int, name: str | None = None, key: str | None = None) -> tuple[int, str]:
        now = utcnow()
        with self._session_factory() as db:
            row = ApiKey(user_id=user_id, key=key or generate_api_key(), name=name, is_active=True, created_at=now)
            db.add(row)
            db.flush()
            db.add(
                ApiUsage(
                    api_key_id=row.id,
                    total_input_tokens=0,
                    total_output_tokens=0,
                    total_requests=0,
                    updated_at=now,
                )
            )
            db.commit()
            return row.id, row.key

    def find_active_by_key(self, key: str) -> ApiKeyIdentity | None:
        with self._session_factory() as db:
            row = db.execute(
                select(ApiKey, User)
                .join(User, ApiKey.user_id == User.id)
                .where(ApiKey.key == key, ApiKey.is_active.is_(True))
            ).first()
        if row is None:
            return None
        api_key, user = row
        return ApiKeyIdentity(
            id=api_key.id,
            user_id=api_key.user_id,
            key=api_key.key,
            name=api_key.name,
            is_active=bool(api_key.is_active),
            username=user.username,
            is_admin=bool(user.is_admin),
        )

    def set_active(self, api_key_id: int, is_active: bool) -> None:
        with self._session_factory() as db:
            db.execute(update(ApiKey).where(ApiKey.id == api_key_id).values(is_active=is_active))
            db.commit()

    def list_by_user(self, user_id: int) -> list[dict[str, Any]]:
        with self._session_factory() as db:
            rows = db.execute(
                select(ApiKey, ApiUsage)
                .outerjoin(ApiUsage, ApiUsage.api_key_id == ApiKey.id)
                .where(ApiKey.user_id == user_id)
                .order_by(ApiKey.created_at.desc(), ApiKey.id.desc())
            ).all()
        return [_key_view(key, usage) for key, usage in rows]

    def list_all(self) -> list[dict[str, Any]]:
        with self._session_factory() as db:
            rows = db.execute(
                select(ApiKey, User, ApiUsage)
                .join(User, ApiKey.user_id == User.id)
                .outerjoin(ApiUsage, ApiUsage.api_key_id == ApiKey.id)
                .order_by(ApiKey.created_at.desc(), ApiKey.id.desc())
            ).all()
        return [
            {**_key_view(key, usage), "username": user.username, "is_admin": bool(user.is_admin)}
            for key, user, usage in rows
        ]

    def add_usage(self, api_key_id: int, input_tokens: int, output_tokens: int) -> None:
        now = utcnow()
        with self._session_factory() as db:
            # Single UPDATE so all three counters advance together.
            result = db.execute(
                update(ApiUsage)
                .where(ApiUsage.api_key_id == api_key_id)
                .values(
                    total_input_tokens=ApiUsage.total_input_tokens + input_tokens,
                    total_output_tokens=ApiUsage.total_output_tokens + output_tokens,
                    total_requests=ApiUsage.total_requests + 1,
                    updated_at=now,
                )
            )
            if result.rowcount == 0:
                db.add(
                    ApiUsage(
                        api_key_id=api_key_id,
                        total_input_tokens=input_tokens,
                        total_output_tokens=output_tokens,
                        total_requests=1,
                        updated_at=now,
                    )
                )
            db.commit()

    def get_usage(self, api_key_id: int) -> UsageTotals | None:
        with self._session_factory() as db:
            row = db.get(ApiUsage, api_key_id)
        if row is None:
            return None
        return UsageTotals(
            api_key_id=row.api_key_id,
            total_input_tokens=row.total_input_tokens,
            total_output_tokens=row.total_output_tokens,
            total_requests=row.total_requests,
            updated_at=row.updated_at,
        )


class SqlSessionRepository:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def create(self, user_id: int) -> UserSession:
        now = utcnow()
        with self._session_factory() as db:
            row = UserSession(token=generate_session_token(), user_id=user_id, created_at=now, last_seen_at=now)
            db.add(row)
            db.commit()
            return row

    def find_by_token(self, token: str) -> UserSession | None:
        with self._session_factory() as db:
            return db.get(UserSession, token)

    def touch(self, token: str) -> None:
        with self._session_factory() as db:
            db.execute(update(UserSession).where(UserSession.token == token).values(last_seen_at=utcnow()))
            db.commit()

    def delete(self, token: str) -> None:
        with self._session_factory() as db:
            db.execute(delete(UserSession).where(UserSession.token == token))
            db.commit()

    def delete_idle_since(self, cutoff: datetime) -> int:
        with self._session_factory() as db:
            result = db.execute(delete(UserSession).where(UserSession.last_seen_at < cutoff))
            db.commit()
            return result.rowcount or 0


class SqlRegistrationRequestRepository:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def create(self, username: str, password_hash: str) -> RegistrationRequest:
        with self._session_factory() as db:
            row = RegistrationRequest(
                username=username,
                password_hash=password_hash,
                status="pending",
                created_at=utcnow(),
            )
            db.add(row)
            db.commit()
            return row

    def find_by_id(self, request_id: int) -> RegistrationRequest | None:
        with self._session_factory() as db:
            return db.get(RegistrationRequest, request_id)

    def find_by_username(self, username: str) -> RegistrationRequest | None:
        with self._session_factory() as db:
            return db.scalar(select(RegistrationRequest).where(RegistrationRequest.username == username))

    def list_pending(self) -> list[dict[str, Any]]:
        with self._session_factory() as db:
            rows = db.scalars(
                select(RegistrationRequest)
                .where(RegistrationRequest.status == "pending")
                .order_by(RegistrationRequest.created_at.desc())
            ).all()
        return [
            {
                "id": row.id,
                "username": row.username,
                "status": row.status,
                "created_at": isoformat(row.created_at),
            }
            for row in rows
        ]

    def set_status(self, request_id: int, status: str) -> None:
        with self._session_factory() as db:
            db.execute(update(RegistrationRequest).where(RegistrationRequest.id == request_id).values(status=status))
            db.commit()


class SqlSettingRepository:
    def __init__(self, session_factory: sessionmaker, cipher: SecretCipher | None = None):
        self._session_factory = session_factory
        self._cipher = cipher

    def get(self, key: str) -> str | None:
        with self._session_factory() as db:
            row = db.get(Setting, key)
        if row is None or not row.value:
            return None
        if self._cipher is not None:
            return self._cipher.decrypt_text(row.value)
        return row.value

    def set(self, key: str, value: str) -> None:
        stored = value
        if self._cipher is not None and key in SECRET_SETTING_KEYS:
            stored = self._cipher.encrypt_text(value)
        with self._session_factory() as db:
            row = db.get(Setting, key)
            if row is None:
                db.add(Setting(key=key, value=stored))
            else:
                row.value = stored
            db.commit()
        logger.info("setting_saved", extra={"setting_key": key})

    def keys(self) -> list[str]:
        with self._session_factory() as db:
            return list(db.scalars(select(Setting.key).order_by(Setting.key)).all())
