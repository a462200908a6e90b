import logging
import threading
from dataclasses import dataclass
from pathlib import Path

import httpx

from coderider_proxy.credentials import CredentialResolver, save_oauth_config_file
from coderider_proxy.errors import (
    MalformedUpstreamResponse,
    MissingClientCredentials,
    MissingCredentials,
    SETUP_COMMAND,
    UpstreamAuthExpired,
    UpstreamFailure,
)
from coderider_proxy.reauth import ReauthTrigger, fire_reauth
from coderider_proxy.repositories import SettingRepository

logger = logging.getLogger("coderider_proxy")


@dataclass
class TokenGrant:
    access_token: str
    refresh_token: str | None = None


class OAuthTokenManager:
    """Supplies a GitLab OAuth access token for the CodeRider upstream.

    Every call re-resolves ``access_token`` from the credential sources first, so
    tokens written by the OAuth callback or the environment are picked up at
    once. The in-memory token only covers the gap left by a refresh grant.
    """

    def __init__(
        self,
        resolver: CredentialResolver,
        token_url: str,
        setting_store: SettingRepository | None = None,
        reauth_trigger: ReauthTrigger | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self._resolver = resolver
        self._token_url = token_url
        self._setting_store = setting_store
        self._reauth_trigger = reauth_trigger
        self._timeout = timeout
        self._transport = transport
        self._cached_access_token: str | None = None
        self._refresh_lock = threading.Lock()

    @property
    def cached_access_token(self) -> str | None:
        return self._cached_access_token

    def get_access_token(self) -> str:
        resolved = self._resolver.access_token()
        if resolved:
            self._cached_access_token = resolved
            return resolved

        cached = self._cached_access_token
        if cached:
            return cached

        with self._refresh_lock:
            # Another request may have finished a refresh while we waited.
            if self._cached_access_token:
                return self._cached_access_token
            token = self._refresh()
            self._cached_access_token = token
            return token

    def clear_cache(self) -> None:
        self._cached_access_token = None

    def _refresh(self) -> str:
        refresh_token = self._resolver.refresh_token()
        if not refresh_token:
            raise MissingCredentials(
                f"GitLab OAuth access_token is not configured and no refresh_token is available; run {SETUP_COMMAND}"
            )

        client_id = self._resolver.client_id()
        client_secret = self._resolver.client_secret()
        if not client_id or not client_secret:
            raise MissingClientCredentials(
                "refreshing the access token requires GITLAB_OAUTH_CLIENT_ID and GITLAB_OAUTH_CLIENT_SECRET"
            )

        payload = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": self._resolver.redirect_uri(),
        }
        response = self._post_token(payload)

        if response.status_code in (400, 401):
            logger.warning("oauth_refresh_rejected", extra={"status_code": response.status_code})
            fire_reauth(self._reauth_trigger)
            raise UpstreamAuthExpired(f"refresh token invalid or expired; please run {SETUP_COMMAND}")
        if response.status_code >= 400:
            raise UpstreamFailure("GitLab token refresh failed", response.status_code, response.text)

        grant = self._parse_grant(response)
        if grant.refresh_token and grant.refresh_token != refresh_token and self._setting_store is not None:
            # GitLab rotates refresh tokens; the previous one is now spent.
            self._setting_store.set("refresh_token", grant.refresh_token)
        logger.info("oauth_access_token_refreshed")
        return grant.access_token

    def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        client_id = self._resolver.client_id()
        client_secret = self._resolver.client_secret()
        if not client_id or not client_secret:
            raise MissingClientCredentials(f"GitLab application credentials not found; run {SETUP_COMMAND}")

        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": redirect_uri,
        }
        response = self._post_token(payload)
        if response.status_code >= 400:
            raise UpstreamFailure("GitLab authorization code exchange failed", response.status_code, response.text)

        grant = self._parse_grant(response)
        if not grant.refresh_token:
            raise MalformedUpstreamResponse("GitLab token response is missing refresh_token")
        return grant

    def complete_authorization(self, code: str, redirect_uri: str, config_path: str | Path | None = None) -> TokenGrant:
        """Exchange an authorization code and persist the resulting tokens."""
        grant = self.exchange_code(code, redirect_uri)

        if self._setting_store is not None:
            self._setting_store.set("access_token", grant.access_token)
            self._setting_store.set("refresh_token", grant.refresh_token or "")
            self._setting_store.set("redirect_uri", redirect_uri)

        if config_path is not None:
            save_oauth_config_file(
                config_path,
                {
                    "client_id": self._resolver.client_id() or "",
                    "client_secret": self._resolver.client_secret() or "",
                    "access_token": grant.access_token,
                    "refresh_token": grant.refresh_token or "",
                    "redirect_uri": redirect_uri,
                },
            )

        self.clear_cache()
        logger.info("oauth_authorization_completed")
        return grant

    def _post_token(self, payload: dict[str, str]) -> httpx.Response:
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                return client.post(self._token_url, data=payload, headers={"Accept": "application/json"})
        except httpx.HTTPError as exc:
            raise UpstreamFailure(f"GitLab token endpoint unreachable: {exc}") from exc

    @staticmethod
    def _parse_grant(response: httpx.Response) -> TokenGrant:
        try:
            body = response.json()
        except ValueError as exc:
            raise MalformedUpstreamResponse("GitLab token response is not JSON") from exc
        if not isinstance(body, dict) or not body.get("access_token"):
            raise MalformedUpstreamResponse("GitLab token response is missing access_token")
        return TokenGrant(access_token=body["access_token"], refresh_token=body.get("refresh_token"))
