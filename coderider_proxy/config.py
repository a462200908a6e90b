import logging
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="CODERIDER_PROXY_", extra="ignore", populate_by_name=True
    )

    database_url: str = "sqlite:///./data/coderider_proxy.db"
    oauth_config_path: str = "jihu_oauth_config.json"
    coderider_host: str = Field(default="https://coderider.jihulab.com", validation_alias="CODERIDER_HOST")
    default_model: str = Field(default="maas/maas-chat-model", validation_alias="CODERIDER_MODEL")
    gitlab_instance: str = "https://jihulab.com"
    upstream_timeout_seconds: float = 60.0
    oauth_timeout_seconds: float = 30.0
    jwt_refresh_skew_seconds: int = 60
    session_ttl_days: int = 30
    session_sweep_interval_seconds: int = 3600
    registration_requires_approval: bool = True
    encryption_key: str | None = None
    legacy_password_salt: str | None = None
    # Detached command launched when the refresh token is rejected upstream.
    reauth_command: str | None = None
    reauth_cooldown_seconds: int = 300
    public_base_url: str = "http://127.0.0.1:8000"
    log_level: str = "INFO"

    @property
    def oauth_token_url(self) -> str:
        return f"{self.gitlab_instance.rstrip('/')}/oauth/token"

    @property
    def oauth_authorize_url(self) -> str:
        return f"{self.gitlab_instance.rstrip('/')}/oauth/authorize"

    @property
    def oauth_applications_url(self) -> str:
        return f"{self.gitlab_instance.rstrip('/')}/-/user_settings/applications"

    def configure_logging(self) -> None:
        numeric_level = getattr(logging, self.log_level.upper(), None)
        if not isinstance(numeric_level, int):
            numeric_level = logging.INFO

        logging.basicConfig(
            level=numeric_level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        logging.getLogger("httpx").setLevel(logging.WARNING)


@lru_cache
def get_settings() -> Settings:
    settings = Settings()
    settings.configure_logging()
    return settings
