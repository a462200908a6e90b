import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from cryptography.fernet import InvalidToken
from sqlalchemy.exc import SQLAlchemyError

from coderider_proxy.repositories import SettingRepository

logger = logging.getLogger("coderider_proxy")

ACCESS_TOKEN_ENV = "GITLAB_OAUTH_ACCESS_TOKEN"
REFRESH_TOKEN_ENV = "GITLAB_OAUTH_REFRESH_TOKEN"
CLIENT_ID_ENV = "GITLAB_OAUTH_CLIENT_ID"
CLIENT_SECRET_ENV = "GITLAB_OAUTH_CLIENT_SECRET"
REDIRECT_URI_ENV = "GITLAB_OAUTH_REDIRECT_URI"

OUT_OF_BAND_REDIRECT_URI = "urn:ietf:wg:oauth:2.0:oob"


def load_oauth_config_file(path: str | Path) -> dict[str, Any]:
    config_path = Path(path)
    if not config_path.exists():
        return {}
    try:
        loaded = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("oauth_config_unreadable", extra={"path": str(config_path), "error": str(exc)})
        return {}
    if not isinstance(loaded, dict):
        logger.warning("oauth_config_not_an_object", extra={"path": str(config_path)})
        return {}
    return loaded


def save_oauth_config_file(path: str | Path, values: Mapping[str, str]) -> None:
    config_path = Path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(dict(values), indent=2), encoding="utf-8")


class CredentialResolver:
    """Looks up OAuth configuration values from, in order: the process
    environment, the persisted setting store, the config-file snapshot taken
    at startup, and finally the caller's fallback.

    Empty strings count as absent at every layer. Lookups never raise.
    """

    def __init__(
        self,
        setting_store: SettingRepository | None = None,
        file_snapshot: Mapping[str, Any] | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        self._setting_store = setting_store
        self._file_snapshot = dict(file_snapshot or {})
        self._environ = environ

    @property
    def file_snapshot(self) -> dict[str, Any]:
        return dict(self._file_snapshot)

    def resolve(self, setting_key: str, env_var: str, fallback: str | None = None) -> str | None:
        environ = os.environ if self._environ is None else self._environ
        value = environ.get(env_var)
        if value:
            return value

        if self._setting_store is not None:
            try:
                stored = self._setting_store.get(setting_key)
            except (SQLAlchemyError, InvalidToken) as exc:
                logger.warning("setting_lookup_failed", extra={"setting_key": setting_key, "error": repr(exc)})
                stored = None
            if stored:
                return stored

        from_file = self._file_snapshot.get(setting_key)
        if from_file:
            return str(from_file)

        return fallback or None

    def access_token(self) -> str | None:
        return self.resolve("access_token", ACCESS_TOKEN_ENV)

    def refresh_token(self) -> str | None:
        return self.resolve("refresh_token", REFRESH_TOKEN_ENV)

    def client_id(self) -> str | None:
        return self.resolve("client_id", CLIENT_ID_ENV)

    def client_secret(self) -> str | None:
        return self.resolve("client_secret", CLIENT_SECRET_ENV)

    def redirect_uri(self, fallback: str = OUT_OF_BAND_REDIRECT_URI) -> str:
        return self.resolve("redirect_uri", REDIRECT_URI_ENV, fallback) or fallback
