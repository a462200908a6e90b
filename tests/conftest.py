from unittest.mock import MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient

from coderider_proxy.config import Settings
from coderider_proxy.main import create_app
from coderider_proxy.services import build_services
from tests.upstream_utils import CODERIDER_HOST, GITLAB_INSTANCE, FakeUpstream


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def transport(upstream: FakeUpstream) -> httpx.MockTransport:
    return httpx.MockTransport(upstream)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        oauth_config_path=str(tmp_path / "jihu_oauth_config.json"),
        coderider_host=CODERIDER_HOST,
        gitlab_instance=GITLAB_INSTANCE,
        default_model="maas/maas-chat-model",
    )


@pytest.fixture
def environ() -> dict[str, str]:
    return {}


@pytest.fixture
def reauth_trigger() -> MagicMock:
    return MagicMock()


@pytest.fixture
def services(settings, transport, environ, reauth_trigger):
    return build_services(settings, transport=transport, environ=environ, reauth_trigger=reauth_trigger)


@pytest.fixture
def client(services) -> TestClient:
    return TestClient(create_app(services))
