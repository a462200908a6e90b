from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta

import httpx
from sqlalchemy import Engine
from sqlalchemy.orm import sessionmaker

from coderider_proxy.accounts import AccountService, ApiKeyService
from coderider_proxy.coderider import CodeRiderClient
from coderider_proxy.config import Settings
from coderider_proxy.credentials import CredentialResolver, load_oauth_config_file
from coderider_proxy.db import build_engine, build_session_factory, create_schema
from coderider_proxy.jwt_cache import UpstreamJwtCache
from coderider_proxy.oauth import OAuthTokenManager
from coderider_proxy.reauth import DetachedReauthTrigger, ReauthTrigger
from coderider_proxy.security import SecretCipher
from coderider_proxy.sql_repositories import (
    SqlApiKeyRepository,
    SqlRegistrationRequestRepository,
    SqlSessionRepository,
    SqlSettingRepository,
    SqlUserRepository,
)


@dataclass
class ServiceContainer:
    """One instance of every stateful component for the lifetime of the process."""

    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    users: SqlUserRepository
    api_keys: SqlApiKeyRepository
    sessions: SqlSessionRepository
    registrations: SqlRegistrationRequestRepository
    setting_store: SqlSettingRepository
    resolver: CredentialResolver
    token_manager: OAuthTokenManager
    jwt_cache: UpstreamJwtCache
    coderider: CodeRiderClient
    api_key_service: ApiKeyService
    accounts: AccountService


def build_services(
    settings: Settings,
    transport: httpx.BaseTransport | None = None,
    environ: Mapping[str, str] | None = None,
    reauth_trigger: ReauthTrigger | None = None,
) -> ServiceContainer:
    engine = build_engine(settings.database_url)
    create_schema(engine)
    session_factory = build_session_factory(engine)

    cipher = SecretCipher(settings.encryption_key) if settings.encryption_key else None
    setting_store = SqlSettingRepository(session_factory, cipher)
    users = SqlUserRepository(session_factory)
    api_keys = SqlApiKeyRepository(session_factory)
    sessions = SqlSessionRepository(session_factory)
    registrations = SqlRegistrationRequestRepository(session_factory)

    if reauth_trigger is None:
        reauth_trigger = DetachedReauthTrigger(settings.reauth_command, settings.reauth_cooldown_seconds)

    resolver = CredentialResolver(
        setting_store=setting_store,
        file_snapshot=load_oauth_config_file(settings.oauth_config_path),
        environ=environ,
    )
    token_manager = OAuthTokenManager(
        resolver,
        settings.oauth_token_url,
        setting_store=setting_store,
        reauth_trigger=reauth_trigger,
        timeout=settings.oauth_timeout_seconds,
        transport=transport,
    )
    jwt_cache = UpstreamJwtCache(
        settings.coderider_host,
        token_manager,
        skew_seconds=settings.jwt_refresh_skew_seconds,
        reauth_trigger=reauth_trigger,
        timeout=settings.upstream_timeout_seconds,
        transport=transport,
    )
    coderider = CodeRiderClient(
        settings.coderider_host,
        jwt_cache,
        default_model=settings.default_model,
        timeout=settings.upstream_timeout_seconds,
        transport=transport,
    )

    api_key_service = ApiKeyService(api_keys)
    accounts = AccountService(
        users,
        sessions,
        registrations,
        api_key_service,
        requires_approval=settings.registration_requires_approval,
        legacy_salt=settings.legacy_password_salt,
        session_ttl=timedelta(days=settings.session_ttl_days),
    )

    return ServiceContainer(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        users=users,
        api_keys=api_keys,
        sessions=sessions,
        registrations=registrations,
        setting_store=setting_store,
        resolver=resolver,
        token_manager=token_manager,
        jwt_cache=jwt_cache,
        coderider=coderider,
        api_key_service=api_key_service,
        accounts=accounts,
    )
