import json
import re
from urllib.parse import parse_qs, urlparse

import httpx

from tests.upstream_utils import CHAT_PATH, JWT_PATH, TOKEN_PATH, chat_ok, jwt_ok


def _register(client, username="alice", password="abcd1234"):
    response = client.post("/auth/register", json={"username": username, "password": password})
    assert response.status_code == 200, response.text
    return response.json()


def _login(client, username="alice", password="abcd1234"):
    response = client.post("/auth/login", json={"username": username, "password": password})
    assert response.status_code == 200, response.text
    return response.json()


def _account_headers(client, username="alice"):
    body = _login(client, username)
    return {"X-API-Key": body["api_keys"][0]["key"], "X-Session-Token": body["session_token"]}


def _upstream_ready(services, upstream):
    services.setting_store.set("access_token", "at-1")
    upstream.handlers[JWT_PATH] = jwt_ok()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_register_first_user_on_empty_store(client):
    body = _register(client)

    assert body["pending_approval"] is False
    assert body["user"]["username"] == "alice"
    assert body["user"]["is_admin"] is True
    assert re.fullmatch(r"[0-9a-f]{64}", body["api_key"])


def test_register_second_user_is_pending(client):
    _register(client)
    body = _register(client, "bob")

    assert body == {
        "pending_approval": True,
        "message": "registration submitted; waiting for administrator approval",
        "admin_username": "alice",
    }


def test_register_rejects_weak_password(client):
    response = client.post("/auth/register", json={"username": "alice", "password": "password"})
    assert response.status_code == 400
    assert "password too weak" in response.json()["detail"]


def test_login_wrong_password(client):
    _register(client)
    response = client.post("/auth/login", json={"username": "alice", "password": "wrong-pass1"})

    assert response.status_code == 401
    assert response.json() == {"detail": "Invalid username or password"}


def test_login_returns_session_and_keys(client):
    registered = _register(client)
    body = _login(client)

    assert body["user"]["username"] == "alice"
    assert body["session_token"]
    assert body["api_keys"][0]["key"] == registered["api_key"]


def test_chat_requires_api_key(client):
    response = client.post("/v1/chat/completions", json={"messages": []})
    assert response.status_code == 401
    assert response.json() == {"detail": "Missing X-API-Key header"}


def test_inactive_and_unknown_keys_rejected_identically(client, services):
    key = _register(client)["api_key"]
    identity = services.api_key_service.validate(key)
    services.api_keys.set_active(identity.id, False)

    inactive = client.post("/v1/chat/completions", json={"messages": []}, headers={"X-API-Key": key})
    unknown = client.post("/v1/chat/completions", json={"messages": []}, headers={"X-API-Key": "0" * 64})

    assert inactive.status_code == unknown.status_code == 401
    assert inactive.json() == unknown.json()


def test_chat_usage_accumulates(client, services, upstream):
    key = _register(client)["api_key"]
    _upstream_ready(services, upstream)
    headers = {"X-API-Key": key}

    upstream.handlers[CHAT_PATH] = chat_ok(10, 5)
    first = client.post("/v1/chat/completions", json={"messages": [{"role": "user", "content": "hi"}]}, headers=headers)
    upstream.handlers[CHAT_PATH] = chat_ok(3, 2)
    second = client.post("/v1/chat/completions", json={"messages": [{"role": "user", "content": "hi"}]}, headers=headers)

    assert first.status_code == second.status_code == 200
    usage = services.api_keys.get_usage(services.api_key_service.validate(key).id)
    assert (usage.total_input_tokens, usage.total_output_tokens, usage.total_requests) == (13, 7, 2)
    assert len(upstream.calls(JWT_PATH)) == 1


def test_chat_with_unreadable_usage_still_returns_completion(client, services, upstream):
    key = _register(client)["api_key"]
    _upstream_ready(services, upstream)
    upstream.handlers[CHAT_PATH] = lambda request: httpx.Response(
        200,
        json={"choices": [{"message": {"role": "assistant", "content": "hi"}}], "usage": {"prompt_tokens": "n/a"}},
    )

    response = client.post("/v1/chat/completions", json={"messages": []}, headers={"X-API-Key": key})

    assert response.status_code == 200
    assert response.json()["choices"][0]["message"]["content"] == "hi"
    usage = services.api_keys.get_usage(services.api_key_service.validate(key).id)
    assert (usage.total_input_tokens, usage.total_output_tokens, usage.total_requests) == (0, 0, 1)


def test_chat_passes_extra_params_and_strips_model_prefix(client, services, upstream):
    key = _register(client)["api_key"]
    _upstream_ready(services, upstream)
    upstream.handlers[CHAT_PATH] = chat_ok(1, 1)

    client.post(
        "/v1/chat/completions",
        json={"model": "server/maas-glm-4.6", "messages": [], "temperature": 0.5},
        headers={"X-API-Key": key},
    )

    payload = json.loads(upstream.calls(CHAT_PATH)[0].content)
    assert payload["model"] == "maas-glm-4.6"
    assert payload["temperature"] == 0.5


def test_streaming_chat_skips_usage(client, services, upstream):
    key = _register(client)["api_key"]
    _upstream_ready(services, upstream)
    upstream.handlers[CHAT_PATH] = lambda request: httpx.Response(200, content=b"data: [DONE]\n\n")

    response = client.post("/v1/chat/completions", json={"messages": [], "stream": True}, headers={"X-API-Key": key})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.content == b"data: [DONE]\n\n"
    assert services.api_keys.get_usage(services.api_key_service.validate(key).id).total_requests == 0


def test_claude_messages_translated(client, services, upstream):
    key = _register(client)["api_key"]
    _upstream_ready(services, upstream)
    upstream.handlers[CHAT_PATH] = chat_ok(7, 3, content="hello there")

    response = client.post(
        "/v1/messages",
        json={
            "model": "claude-3-opus-20240229",
            "system": "be brief",
            "max_tokens": 64,
            "messages": [{"role": "user", "content": [{"type": "text", "text": "hi"}]}],
        },
        headers={"X-API-Key": key},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["type"] == "message"
    assert body["content"] == [{"type": "text", "text": "hello there"}]
    assert body["usage"] == {"input_tokens": 7, "output_tokens": 3}
    payload = json.loads(upstream.calls(CHAT_PATH)[0].content)
    assert payload["model"] == "maas-glm-4.6"
    assert payload["messages"][0] == {"role": "system", "content": "be brief"}
    assert payload["max_tokens"] == 64


def test_auth_expired_returns_structured_body(client, services, upstream, reauth_trigger):
    key = _register(client)["api_key"]
    services.setting_store.set("access_token", "at-stale")
    upstream.handlers[JWT_PATH] = lambda request: httpx.Response(401, text="token expired")

    response = client.post("/v1/chat/completions", json={"messages": []}, headers={"X-API-Key": key})

    assert response.status_code == 401
    detail = response.json()["detail"]
    assert detail["error"] == "jihu_auth_expired"
    assert "coderider-proxy oauth-setup" in detail["message"]
    assert detail["local_oauth_url"] == "/auth/oauth-start"
    assert detail["login_url"].endswith("/-/user_settings/applications")
    assert detail["hint"]
    reauth_trigger.assert_called_once_with()


def test_missing_credentials_is_server_error(client):
    key = _register(client)["api_key"]

    response = client.post("/v1/chat/completions", json={"messages": []}, headers={"X-API-Key": key})

    assert response.status_code == 500
    assert "coderider-proxy oauth-setup" in response.json()["detail"]


def test_upstream_failure_is_bad_gateway(client, services, upstream):
    key = _register(client)["api_key"]
    _upstream_ready(services, upstream)
    upstream.handlers[CHAT_PATH] = lambda request: httpx.Response(503, text="unavailable")

    response = client.post("/v1/chat/completions", json={"messages": []}, headers={"X-API-Key": key})

    assert response.status_code == 502
    assert "503" in response.json()["detail"]


def test_models_static_list(client):
    ids = [m["id"] for m in client.get("/v1/models").json()["data"]]
    assert ids == ["maas/maas-chat-model", "maas-minimax-m2", "maas-deepseek-v3.1", "maas-glm-4.6"]


def test_models_full_reshapes_upstream_config(client, services, upstream):
    _upstream_ready(services, upstream)
    upstream.handlers["/api/v1/config"] = lambda request: httpx.Response(
        200,
        json={
            "chat_models": ["maas/maas-chat-model"],
            "llm_models_params": [{"name": "maas-chat-model", "provider": "deepseek", "context_window": 65536}],
        },
    )

    response = client.get("/v1/models/full")

    assert response.status_code == 200
    body = response.json()
    first = body["data"][0]
    assert first["id"] == "maas/maas-chat-model"
    assert first["type"] == "chat"
    assert first["context_window"] == 65536
    assert {"maas-minimax-m2", "maas-deepseek-v3.1", "maas-glm-4.6"} <= {m["id"] for m in body["data"]}


def test_api_key_routes_require_matching_session(client, services):
    _register(client)
    services.accounts.requires_approval = False
    _register(client, "bob")
    alice = _account_headers(client, "alice")
    bob = _account_headers(client, "bob")

    mismatched = {"X-API-Key": alice["X-API-Key"], "X-Session-Token": bob["X-Session-Token"]}
    response = client.get("/auth/api-keys", headers=mismatched)
    assert response.status_code == 403
    assert response.json() == {"detail": "session and api key mismatch"}

    created = client.post("/auth/api-keys", json={"name": "laptop"}, headers=bob)
    assert created.status_code == 200
    listed = client.get("/auth/api-keys", headers=bob).json()["api_keys"]
    assert {k["name"] for k in listed} == {"default", "laptop"}


def test_session_required_for_account_routes(client):
    key = _register(client)["api_key"]
    response = client.get("/auth/api-keys", headers={"X-API-Key": key, "X-Session-Token": "nope"})
    assert response.status_code == 401
    assert response.json() == {"detail": "Invalid or expired session"}


def test_logout_invalidates_session(client):
    _register(client)
    headers = _account_headers(client)

    assert client.post("/auth/logout", headers={"X-Session-Token": headers["X-Session-Token"]}).status_code == 200
    assert client.get("/auth/api-keys", headers=headers).status_code == 401


def test_admin_routes(client, services):
    _register(client)
    _register(client, "bob")
    admin = _account_headers(client, "alice")

    pending = client.get("/admin/registrations", headers=admin).json()["requests"]
    assert [r["username"] for r in pending] == ["bob"]

    approved = client.post(f"/admin/registrations/{pending[0]['id']}/approve", headers=admin)
    assert approved.status_code == 200
    assert approved.json()["user"]["username"] == "bob"
    again = client.post(f"/admin/registrations/{pending[0]['id']}/reject", headers=admin)
    assert again.status_code == 409
    assert client.post("/admin/registrations/999/approve", headers=admin).status_code == 404

    all_keys = client.get("/admin/api-keys", headers=admin).json()["api_keys"]
    assert {k["username"] for k in all_keys} == {"alice", "bob"}

    bob = _account_headers(client, "bob")
    forbidden = client.get("/admin/api-keys", headers=bob)
    assert forbidden.status_code == 403
    assert forbidden.json() == {"detail": "admin only"}


def test_oauth_start_redirects_to_gitlab(client, services):
    services.setting_store.set("client_id", "cid")
    services.setting_store.set("client_secret", "secret")

    response = client.get("/auth/oauth-start", follow_redirects=False)

    assert response.status_code == 302
    location = urlparse(response.headers["location"])
    assert location.path == "/oauth/authorize"
    query = parse_qs(location.query)
    assert query["client_id"] == ["cid"]
    assert query["response_type"] == ["code"]
    assert query["scope"] == ["api"]
    assert query["redirect_uri"][0].endswith("/auth/oauth-callback")


def test_oauth_start_without_client_credentials(client):
    response = client.get("/auth/oauth-start", follow_redirects=False)
    assert response.status_code == 400


def test_oauth_callback_persists_tokens_and_clears_caches(client, services, upstream, settings):
    services.setting_store.set("client_id", "cid")
    services.setting_store.set("client_secret", "secret")
    upstream.handlers[TOKEN_PATH] = lambda request: httpx.Response(
        200, json={"access_token": "at-new", "refresh_token": "rt-new"}
    )
    upstream.handlers[JWT_PATH] = jwt_ok("jwt-old")
    services.setting_store.set("access_token", "at-old")
    services.jwt_cache.get_jwt()

    response = client.get("/auth/oauth-callback", params={"code": "abc"})

    assert response.status_code == 200
    assert services.setting_store.get("access_token") == "at-new"
    assert services.setting_store.get("refresh_token") == "rt-new"
    assert services.jwt_cache.expires_at is None
    with open(settings.oauth_config_path, encoding="utf-8") as fh:
        assert json.load(fh)["access_token"] == "at-new"


def test_oauth_callback_reports_provider_error(client):
    response = client.get("/auth/oauth-callback", params={"error": "access_denied"})
    assert response.status_code == 400
    assert "access_denied" in response.json()["detail"]


def test_event_logging_batch_ack(client):
    assert client.post("/api/event_logging/batch", json={"events": []}).json() == {"status": "ok"}
