import logging
from typing import Any

import httpx

from coderider_proxy.errors import MalformedUpstreamResponse, UpstreamFailure
from coderider_proxy.jwt_cache import UpstreamJwtCache

logger = logging.getLogger("coderider_proxy")

CHAT_COMPLETIONS_PATH = "/api/v1/llm/v1/chat/completions"
MODEL_CONFIG_PATH = "/api/v1/config"
MODEL_PREFIXES = ("maas/", "server/")


def strip_model_prefix(model: str) -> str:
    for prefix in MODEL_PREFIXES:
        if model.startswith(prefix):
            return model[len(prefix) :]
    return model


class CodeRiderClient:
    def __init__(
        self,
        base_url: str,
        jwt_cache: UpstreamJwtCache,
        default_model: str = "maas/maas-chat-model",
        timeout: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._jwt_cache = jwt_cache
        self._default_model = default_model
        self._timeout = timeout
        self._transport = transport

    @property
    def default_model(self) -> str:
        return self._default_model

    def chat_completions(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        stream: bool = False,
        extra_params: dict[str, Any] | None = None,
    ) -> dict[str, Any] | bytes:
        """Forward a chat request upstream.

        Returns the decoded JSON body, or the raw event-stream bytes when
        ``stream`` is set. ``UpstreamAuthExpired`` from the JWT exchange is not
        caught here.
        """
        jwt = self._jwt_cache.get_jwt()
        payload = {
            "model": strip_model_prefix(model or self._default_model),
            "messages": messages,
            "stream": stream,
            **(extra_params or {}),
        }
        headers = {"Authorization": f"Bearer {jwt}", "Content-Type": "application/json"}
        response = self._request("POST", CHAT_COMPLETIONS_PATH, headers, json=payload)
        self._raise_for_status(response, "CodeRider chat completion failed")

        if stream:
            return response.content
        return self._json(response)

    def get_model_config(self) -> dict[str, Any]:
        jwt = self._jwt_cache.get_jwt()
        response = self._request("GET", MODEL_CONFIG_PATH, {"Authorization": f"Bearer {jwt}"})
        self._raise_for_status(response, "CodeRider model config request failed")
        return self._json(response)

    def _request(self, method: str, path: str, headers: dict[str, str], **kwargs: Any) -> httpx.Response:
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                return client.request(method, f"{self._base_url}{path}", headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise UpstreamFailure(f"CodeRider request failed: {exc}") from exc

    def _raise_for_status(self, response: httpx.Response, message: str) -> None:
        if response.status_code < 400:
            return
        if response.status_code == 401:
            # The cached JWT was revoked early; fetch a new one next time.
            self._jwt_cache.clear()
        logger.warning("coderider_request_failed", extra={"status_code": response.status_code})
        raise UpstreamFailure(message, response.status_code, response.text)

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as exc:
            raise MalformedUpstreamResponse("CodeRider returned a non-JSON body") from exc
        if not isinstance(body, dict):
            raise MalformedUpstreamResponse("CodeRider returned an unexpected JSON payload")
        return body
