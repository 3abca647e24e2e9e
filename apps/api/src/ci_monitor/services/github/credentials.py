from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import structlog

from ci_monitor.config import Settings
from ci_monitor.errors import CredentialError

logger = structlog.get_logger(__name__)

SECRET_REPO_OWNER = "github-repo-owner"
SECRET_REPO_NAME = "github-repo-name"
SECRET_APP_ID = "github-app-id"
SECRET_INSTALLATION_ID = "github-app-installation-id"
SECRET_PRIVATE_KEY = "github-app-private-key"


@dataclass(frozen=True)
class Credentials:
    signing_key: str = field(repr=False)
    app_id: str
    installation_id: str
    owner: str
    repo: str


class SecretStore(Protocol):
    def get_secret(self, name: str) -> str | None: ...


class DirectorySecretStore:
    """One secret per file, as mounted by container orchestrators."""

    def __init__(self, root: Path) -> None:
        self._root = root

    def get_secret(self, name: str) -> str | None:
        path = self._root / name
        if not path.is_file():
            return None
        try:
            value = path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise CredentialError(f"Unable to read secret {name}: {exc}") from exc
        return value or None


def _normalize_pem(value: str) -> str:
    # env vars commonly carry the PEM with literal "\n" sequences
    if "\\n" in value and "\n" not in value:
        value = value.replace("\\n", "\n")
    return value.strip() + "\n"


def _read_key_file(path_value: str) -> str:
    path = Path(path_value)
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CredentialError(f"Unable to read private key file {path}: {exc}") from exc


def load_credentials(settings: Settings, secret_store: SecretStore | None = None) -> Credentials:
    def lookup(secret_name: str, fallback: str | None) -> str | None:
        if secret_store is not None:
            value = secret_store.get_secret(secret_name)
            if value:
                return value
        return fallback

    signing_key = lookup(SECRET_PRIVATE_KEY, settings.github_app_private_key)
    if signing_key is None and settings.github_app_private_key_path:
        signing_key = _read_key_file(settings.github_app_private_key_path)

    values = {
        SECRET_PRIVATE_KEY: signing_key,
        SECRET_APP_ID: lookup(SECRET_APP_ID, settings.github_app_id),
        SECRET_INSTALLATION_ID: lookup(SECRET_INSTALLATION_ID, settings.github_app_installation_id),
        SECRET_REPO_OWNER: lookup(SECRET_REPO_OWNER, settings.github_repo_owner),
        SECRET_REPO_NAME: lookup(SECRET_REPO_NAME, settings.github_repo_name),
    }
    missing = sorted(name for name, value in values.items() if not value)
    if missing:
        raise CredentialError(f"Missing GitHub credentials: {', '.join(missing)}")

    credentials = Credentials(
        signing_key=_normalize_pem(str(values[SECRET_PRIVATE_KEY])),
        app_id=str(values[SECRET_APP_ID]).strip(),
        installation_id=str(values[SECRET_INSTALLATION_ID]).strip(),
        owner=str(values[SECRET_REPO_OWNER]).strip(),
        repo=str(values[SECRET_REPO_NAME]).strip(),
    )
    logger.info(
        "credentials_loaded",
        app_id=credentials.app_id,
        owner=credentials.owner,
        repo=credentials.repo,
        secret_store=secret_store is not None,
    )
    return credentials
