from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from ci_monitor.config import get_settings
from ci_monitor.main import app, get_runtime

CREDENTIAL_ENV = (
    "GITHUB_REPO_OWNER",
    "GITHUB_REPO_NAME",
    "GITHUB_APP_ID",
    "GITHUB_APP_INSTALLATION_ID",
    "GITHUB_APP_PRIVATE_KEY",
    "GITHUB_APP_PRIVATE_KEY_PATH",
    "SECRETS_DIR",
)


@pytest.fixture(autouse=True)
def reset_api_caches() -> Iterator[None]:
    get_settings.cache_clear()
    get_runtime.cache_clear()
    yield
    get_settings.cache_clear()
    get_runtime.cache_clear()


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    for name in CREDENTIAL_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("LOG_JSON", "false")

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
