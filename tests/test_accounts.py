import hashlib
from datetime import timedelta

import pytest
from sqlalchemy import update

from coderider_proxy.accounts import record_chat_usage, validate_password_strength
from coderider_proxy.errors import AuthenticationError, ConflictError, NotFoundError, ValidationError
from coderider_proxy.models import UserSession
from coderider_proxy.security import utcnow


def test_first_user_is_admin_and_later_users_are_not(services):
    services.accounts.requires_approval = False

    first = services.accounts.register("alice", "abcd1234")
    second = services.accounts.register("bob", "abcd1234")
    third = services.accounts.register("carol", "abcd1234")

    assert first.user.is_admin is True
    assert second.user.is_admin is False
    assert third.user.is_admin is False
    assert len(first.api_key) == 64


def test_later_registrations_wait_for_approval(services):
    services.accounts.register("alice", "abcd1234")
    outcome = services.accounts.register("bob", "abcd1234")

    assert outcome.pending_approval is True
    assert outcome.admin_username == "alice"
    assert services.users.find_by_username("bob") is None
    assert [r["username"] for r in services.accounts.list_pending_registrations()] == ["bob"]


@pytest.mark.parametrize("password", ["short1", "12345678", "abcdefgh"])
def test_weak_passwords_rejected(password):
    with pytest.raises(ValidationError):
        validate_password_strength(password)


def test_duplicate_username_rejected_for_users_and_pending_requests(services):
    services.accounts.register("alice", "abcd1234")
    services.accounts.register("bob", "abcd1234")

    with pytest.raises(ValidationError):
        services.accounts.register("alice", "abcd1234")
    with pytest.raises(ValidationError):
        services.accounts.register("bob", "abcd1234")


def test_approve_creates_user_with_default_key(services):
    services.accounts.register("alice", "abcd1234")
    services.accounts.register("bob", "abcd1234")
    request_id = services.accounts.list_pending_registrations()[0]["id"]

    user = services.accounts.approve_registration(request_id)

    assert user.username == "bob"
    assert user.is_admin is False
    keys = services.api_key_service.list_user_keys(user.id)
    assert [k["name"] for k in keys] == ["default"]
    assert services.accounts.list_pending_registrations() == []
    with pytest.raises(ConflictError):
        services.accounts.approve_registration(request_id)
    with pytest.raises(ConflictError):
        services.accounts.reject_registration(request_id)


def test_unknown_registration_request(services):
    with pytest.raises(NotFoundError):
        services.accounts.approve_registration(999)


def test_login_issues_session_and_lists_keys(services):
    services.accounts.register("alice", "abcd1234")

    outcome = services.accounts.login("alice", "abcd1234")

    assert outcome.session.token
    assert outcome.api_keys[0]["total_requests"] == 0
    assert services.accounts.validate_session(outcome.session.token).user_id == outcome.user.id


def test_login_failures_look_identical(services):
    services.accounts.register("alice", "abcd1234")

    with pytest.raises(AuthenticationError) as wrong_password:
        services.accounts.login("alice", "wrong-pass1")
    with pytest.raises(AuthenticationError) as unknown_user:
        services.accounts.login("nobody", "abcd1234")

    assert wrong_password.value.message == unknown_user.value.message == "Invalid username or password"


def test_legacy_salted_hash_verifies(services):
    services.accounts.legacy_salt = "pepper"
    legacy_hash = hashlib.sha256(b"pepperabcd1234").hexdigest()
    services.users.create("old-timer", legacy_hash, is_admin=False)

    assert services.accounts.login("old-timer", "abcd1234").user.username == "old-timer"


def test_session_touch_and_sweep(services):
    services.accounts.register("alice", "abcd1234")
    stale = services.accounts.login("alice", "abcd1234").session
    fresh = services.accounts.login("alice", "abcd1234").session

    with services.session_factory() as db:
        db.execute(
            update(UserSession)
            .where(UserSession.token == stale.token)
            .values(last_seen_at=utcnow() - services.accounts.session_ttl - timedelta(hours=1))
        )
        db.commit()

    assert services.accounts.sweep_expired_sessions() == 1
    with pytest.raises(AuthenticationError):
        services.accounts.validate_session(stale.token)
    assert services.accounts.validate_session(fresh.token).token == fresh.token


def test_usage_accumulates_per_key(services):
    outcome = services.accounts.register("alice", "abcd1234")
    identity = services.api_key_service.validate(outcome.api_key)

    assert record_chat_usage(services.api_key_service, identity, {"usage": {"prompt_tokens": 10, "completion_tokens": 5}}, False)
    assert record_chat_usage(services.api_key_service, identity, {"usage": {"prompt_tokens": 3, "completion_tokens": 2}}, False)

    usage = services.api_keys.get_usage(identity.id)
    assert (usage.total_input_tokens, usage.total_output_tokens, usage.total_requests) == (13, 7, 2)


def test_usage_skipped_for_stream_anonymous_and_missing_usage(services):
    outcome = services.accounts.register("alice", "abcd1234")
    identity = services.api_key_service.validate(outcome.api_key)
    body = {"usage": {"prompt_tokens": 10, "completion_tokens": 5}}

    assert record_chat_usage(services.api_key_service, identity, body, stream=True) is False
    assert record_chat_usage(services.api_key_service, None, body, stream=False) is False
    assert record_chat_usage(services.api_key_service, identity, {"choices": []}, stream=False) is False
    assert services.api_keys.get_usage(identity.id).total_requests == 0


def test_unreadable_usage_values_count_as_zero(services, caplog):
    outcome = services.accounts.register("alice", "abcd1234")
    identity = services.api_key_service.validate(outcome.api_key)
    body = {"usage": {"prompt_tokens": "n/a", "completion_tokens": 4.7}}

    with caplog.at_level("WARNING", logger="coderider_proxy"):
        assert record_chat_usage(services.api_key_service, identity, body, stream=False)

    usage = services.api_keys.get_usage(identity.id)
    assert (usage.total_input_tokens, usage.total_output_tokens, usage.total_requests) == (0, 4, 1)
    messages = [record.getMessage() for record in caplog.records]
    assert "usage_value_not_numeric" in messages
    assert "usage_value_truncated" in messages


def test_inactive_key_rejected_like_unknown_key(services):
    outcome = services.accounts.register("alice", "abcd1234")
    identity = services.api_key_service.validate(outcome.api_key)
    services.api_keys.set_active(identity.id, False)

    with pytest.raises(AuthenticationError) as inactive:
        services.api_key_service.validate(outcome.api_key)
    with pytest.raises(AuthenticationError) as unknown:
        services.api_key_service.validate("f" * 64)

    assert inactive.value.message == unknown.value.message
