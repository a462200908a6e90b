import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import httpx

from coderider_proxy.errors import MalformedUpstreamResponse, SETUP_COMMAND, UpstreamAuthExpired, UpstreamFailure
from coderider_proxy.oauth import OAuthTokenManager
from coderider_proxy.reauth import ReauthTrigger, fire_reauth
from coderider_proxy.security import ensure_utc, utcnow

logger = logging.getLogger("coderider_proxy")

JWT_PATH = "/api/v1/auth/jwt"


def parse_expiry(raw: object) -> datetime:
    """Accepts ISO-8601 strings and epoch seconds or milliseconds.

    Strings without an offset are read as UTC, not as server local time.
    """
    if isinstance(raw, bool):
        raise ValueError("boolean is not a timestamp")
    if isinstance(raw, (int, float)):
        seconds = raw / 1000 if raw > 10**11 else raw
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(raw, str) and raw.strip():
        text = raw.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return ensure_utc(datetime.fromisoformat(text))
    raise ValueError(f"unsupported expiry value: {raw!r}")


class UpstreamJwtCache:
    """Caches the short-lived CodeRider JWT until ``skew_seconds`` before it expires."""

    def __init__(
        self,
        base_url: str,
        token_manager: OAuthTokenManager,
        skew_seconds: int = 60,
        reauth_trigger: ReauthTrigger | None = None,
        timeout: float = 60.0,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._url = f"{base_url.rstrip('/')}{JWT_PATH}"
        self._token_manager = token_manager
        self._skew = timedelta(seconds=skew_seconds)
        self._reauth_trigger = reauth_trigger
        self._timeout = timeout
        self._transport = transport
        self._clock = clock
        # (token, expires_at) replaced as one tuple so readers never see a torn pair.
        self._cached: tuple[str, datetime] | None = None
        self._lock = threading.Lock()

    @property
    def expires_at(self) -> datetime | None:
        cached = self._cached
        return cached[1] if cached else None

    def _fresh(self, cached: tuple[str, datetime] | None) -> bool:
        return cached is not None and self._clock() < cached[1] - self._skew

    def get_jwt(self) -> str:
        cached = self._cached
        if self._fresh(cached):
            return cached[0]

        with self._lock:
            cached = self._cached
            if self._fresh(cached):
                return cached[0]

            access_token = self._token_manager.get_access_token()
            token, expires_at = self._exchange(access_token)
            self._cached = (token, expires_at)
            logger.info("jwt_refreshed", extra={"expires_at": expires_at.isoformat()})
            return token

    def clear(self) -> None:
        self._cached = None

    def _exchange(self, access_token: str) -> tuple[str, datetime]:
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(self._url, json={}, headers={"X-Access-Token": access_token})
        except httpx.HTTPError as exc:
            raise UpstreamFailure(f"CodeRider JWT endpoint unreachable: {exc}") from exc

        if response.status_code in (400, 401):
            logger.warning("jwt_exchange_rejected", extra={"status_code": response.status_code})
            self._token_manager.clear_cache()
            self._cached = None
            fire_reauth(self._reauth_trigger)
            raise UpstreamAuthExpired(f"CodeRider rejected the access token; please run {SETUP_COMMAND}")
        if response.status_code >= 400:
            raise UpstreamFailure("CodeRider JWT request failed", response.status_code, response.text)

        try:
            body = response.json()
        except ValueError as exc:
            raise MalformedUpstreamResponse("CodeRider JWT response is not JSON") from exc

        token = body.get("token") if isinstance(body, dict) else None
        raw_expiry = body.get("tokenExpiresAt") if isinstance(body, dict) else None
        if not token or not raw_expiry:
            logger.error("jwt_response_malformed", extra={"fields": sorted(body) if isinstance(body, dict) else None})
            raise MalformedUpstreamResponse("CodeRider JWT response is missing token/tokenExpiresAt")
        try:
            expires_at = parse_expiry(raw_expiry)
        except ValueError as exc:
            raise MalformedUpstreamResponse(f"CodeRider JWT expiry is unreadable: {raw_expiry!r}") from exc
        return token, expires_at
