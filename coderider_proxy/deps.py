from dataclasses import dataclass

from fastapi import Depends, Header, Request

from coderider_proxy.errors import AuthenticationError, AuthorizationError
from coderider_proxy.models import UserSession
from coderider_proxy.repositories import ApiKeyIdentity
from coderider_proxy.services import ServiceContainer


@dataclass
class AccountContext:
    api_key: ApiKeyIdentity
    session: UserSession


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def require_api_key(
    request: Request,
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    services: ServiceContainer = Depends(get_services),
) -> ApiKeyIdentity:
    if not x_api_key:
        raise AuthenticationError("Missing X-API-Key header")
    identity = services.api_key_service.validate(x_api_key)
    request.state.api_key = identity
    return identity


def require_session(
    request: Request,
    x_session_token: str | None = Header(default=None, alias="X-Session-Token"),
    services: ServiceContainer = Depends(get_services),
) -> UserSession:
    if not x_session_token:
        raise AuthenticationError("Missing X-Session-Token header")
    session = services.accounts.validate_session(x_session_token)
    request.state.session = session
    return session


def require_account(
    api_key: ApiKeyIdentity = Depends(require_api_key),
    session: UserSession = Depends(require_session),
) -> AccountContext:
    if api_key.user_id != session.user_id:
        raise AuthorizationError("session and api key mismatch")
    return AccountContext(api_key=api_key, session=session)


def require_admin(account: AccountContext = Depends(require_account)) -> AccountContext:
    if not account.api_key.is_admin:
        raise AuthorizationError("admin only")
    return account
