from typing import Any
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import RedirectResponse

from coderider_proxy.accounts import record_chat_usage
from coderider_proxy.deps import AccountContext, get_services, require_account, require_admin, require_api_key, require_session
from coderider_proxy.errors import MissingClientCredentials, SETUP_COMMAND, ValidationError
from coderider_proxy.models import User, UserSession
from coderider_proxy.repositories import ApiKeyIdentity
from coderider_proxy.schemas import ApiKeyCreate, ChatCompletionRequest, ClaudeMessagesRequest, Credentials
from coderider_proxy.services import ServiceContainer
from coderider_proxy.translation import (
    claude_extra_params,
    claude_messages_to_openai,
    claude_model_to_coderider,
    model_config_to_openai,
    openai_response_to_claude,
    static_model_list,
)

router = APIRouter()


def _user_view(user: User) -> dict[str, Any]:
    return {"id": user.id, "username": user.username, "is_admin": bool(user.is_admin)}


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/v1/chat/completions")
def chat_completions(
    payload: ChatCompletionRequest,
    identity: ApiKeyIdentity = Depends(require_api_key),
    services: ServiceContainer = Depends(get_services),
):
    result = services.coderider.chat_completions(
        payload.messages,
        model=payload.model,
        stream=payload.stream,
        extra_params=payload.extra_params(),
    )
    if payload.stream:
        return Response(content=result, media_type="text/event-stream")

    record_chat_usage(services.api_key_service, identity, result, payload.stream)
    return result


@router.post("/v1/messages")
def claude_messages(
    payload: ClaudeMessagesRequest,
    identity: ApiKeyIdentity = Depends(require_api_key),
    services: ServiceContainer = Depends(get_services),
) -> dict[str, Any]:
    body = payload.model_dump()
    model = claude_model_to_coderider(payload.model)
    result = services.coderider.chat_completions(
        claude_messages_to_openai(payload.messages, payload.system),
        model=model,
        extra_params=claude_extra_params(body),
    )
    record_chat_usage(services.api_key_service, identity, result, stream=False)
    return openai_response_to_claude(result, payload.model or model)


@router.get("/v1/models")
def list_models(services: ServiceContainer = Depends(get_services)) -> dict[str, Any]:
    return static_model_list(services.coderider.default_model)


@router.get("/v1/models/full")
def list_models_full(services: ServiceContainer = Depends(get_services)) -> dict[str, Any]:
    return model_config_to_openai(services.coderider.get_model_config())


@router.post("/auth/register")
def register(payload: Credentials, services: ServiceContainer = Depends(get_services)) -> dict[str, Any]:
    outcome = services.accounts.register(payload.username, payload.password)
    if outcome.pending_approval:
        return {
            "pending_approval": True,
            "message": "registration submitted; waiting for administrator approval",
            "admin_username": outcome.admin_username,
        }
    return {"user": _user_view(outcome.user), "api_key": outcome.api_key, "pending_approval": False}


@router.post("/auth/login")
def login(payload: Credentials, services: ServiceContainer = Depends(get_services)) -> dict[str, Any]:
    outcome = services.accounts.login(payload.username, payload.password)
    return {
        "user": _user_view(outcome.user),
        "session_token": outcome.session.token,
        "api_keys": outcome.api_keys,
    }


@router.post("/auth/logout")
def logout(
    session: UserSession = Depends(require_session),
    services: ServiceContainer = Depends(get_services),
) -> dict[str, str]:
    services.accounts.logout(session.token)
    return {"status": "ok"}


@router.get("/auth/api-keys")
def list_api_keys(
    account: AccountContext = Depends(require_account),
    services: ServiceContainer = Depends(get_services),
) -> dict[str, Any]:
    return {"api_keys": services.api_key_service.list_user_keys(account.session.user_id)}


@router.post("/auth/api-keys")
def create_api_key(
    payload: ApiKeyCreate,
    account: AccountContext = Depends(require_account),
    services: ServiceContainer = Depends(get_services),
) -> dict[str, Any]:
    api_key_id, key = services.api_key_service.create(account.session.user_id, payload.name)
    return {"id": api_key_id, "key": key, "name": payload.name}


@router.get("/admin/api-keys", dependencies=[Depends(require_admin)])
def admin_list_api_keys(services: ServiceContainer = Depends(get_services)) -> dict[str, Any]:
    return {"api_keys": services.api_key_service.list_all()}


@router.get("/admin/registrations", dependencies=[Depends(require_admin)])
def admin_list_registrations(services: ServiceContainer = Depends(get_services)) -> dict[str, Any]:
    return {"requests": services.accounts.list_pending_registrations()}


@router.post("/admin/registrations/{request_id}/approve", dependencies=[Depends(require_admin)])
def admin_approve_registration(request_id: int, services: ServiceContainer = Depends(get_services)) -> dict[str, Any]:
    user = services.accounts.approve_registration(request_id)
    return {"status": "approved", "user": _user_view(user)}


@router.post("/admin/registrations/{request_id}/reject", dependencies=[Depends(require_admin)])
def admin_reject_registration(request_id: int, services: ServiceContainer = Depends(get_services)) -> dict[str, str]:
    services.accounts.reject_registration(request_id)
    return {"status": "rejected"}


@router.get("/auth/oauth-start")
def oauth_start(request: Request, services: ServiceContainer = Depends(get_services)) -> RedirectResponse:
    client_id = services.resolver.client_id()
    if not client_id or not services.resolver.client_secret():
        raise ValidationError(f"GitLab application credentials not found; run {SETUP_COMMAND} first")

    query = urlencode(
        {
            "client_id": client_id,
            "redirect_uri": str(request.url_for("oauth_callback")),
            "response_type": "code",
            "scope": "api",
        }
    )
    return RedirectResponse(f"{services.settings.oauth_authorize_url}?{query}", status_code=302)


@router.get("/auth/oauth-callback", name="oauth_callback")
def oauth_callback(
    request: Request,
    code: str | None = Query(default=None),
    error: str | None = Query(default=None),
    services: ServiceContainer = Depends(get_services),
) -> dict[str, str]:
    if error:
        raise ValidationError(f"OAuth authorization failed: {error}")
    if not code:
        raise ValidationError("no authorization code received")
    if not services.resolver.client_id() or not services.resolver.client_secret():
        raise MissingClientCredentials(f"GitLab application credentials not found; run {SETUP_COMMAND} first")

    callback_url = str(request.url_for("oauth_callback"))
    services.token_manager.complete_authorization(code, callback_url, services.settings.oauth_config_path)
    services.jwt_cache.clear()
    return {"status": "ok", "message": "access token and refresh token have been saved"}


@router.post("/api/event_logging/batch")
def event_logging_batch() -> dict[str, str]:
    return {"status": "ok"}
