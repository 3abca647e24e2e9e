from dataclasses import dataclass
from functools import lru_cache
import os


def _to_bool(value: str | None, *, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _to_int(value: str | None, *, default: int, minimum: int) -> int:
    if value is None:
        return default
    parsed = int(value)
    return max(minimum, parsed)


def _to_float(value: str | None, *, default: float, minimum: float) -> float:
    if value is None:
        return default
    parsed = float(value)
    return max(minimum, parsed)


def _to_list(value: str | None, *, default: tuple[str, ...]) -> tuple[str, ...]:
    if value is None:
        return default
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _optional(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value.strip()


@dataclass(frozen=True)
class Settings:
    environment: str
    port: int
    log_level: str
    log_json: bool
    cors_allow_origins: tuple[str, ...]
    github_api_url: str
    github_timeout_seconds: float
    github_repo_owner: str | None
    github_repo_name: str | None
    github_app_id: str | None
    github_app_installation_id: str | None
    github_app_private_key: str | None
    github_app_private_key_path: str | None
    secrets_dir: str | None
    status_file_path: str
    status_branch: str | None
    poll_interval_seconds: float
    runs_page_size: int
    discover_delay_seconds: float
    send_timeout_seconds: float
    token_safety_margin_seconds: int
    token_renew_after_seconds: int
    token_retry_seconds: int


@lru_cache
def get_settings() -> Settings:
    return Settings(
        environment=os.getenv("APP_ENV", "development"),
        port=_to_int(os.getenv("PORT"), default=8080, minimum=1),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        log_json=_to_bool(os.getenv("LOG_JSON"), default=True),
        cors_allow_origins=_to_list(os.getenv("CORS_ALLOW_ORIGINS"), default=("*",)),
        github_api_url=os.getenv("GITHUB_API_URL", "https://api.github.com"),
        github_timeout_seconds=_to_float(
            os.getenv("GITHUB_TIMEOUT_SECONDS"), default=30.0, minimum=1.0
        ),
        github_repo_owner=_optional(os.getenv("GITHUB_REPO_OWNER")),
        github_repo_name=_optional(os.getenv("GITHUB_REPO_NAME")),
        github_app_id=_optional(os.getenv("GITHUB_APP_ID")),
        github_app_installation_id=_optional(os.getenv("GITHUB_APP_INSTALLATION_ID")),
        github_app_private_key=_optional(os.getenv("GITHUB_APP_PRIVATE_KEY")),
        github_app_private_key_path=_optional(os.getenv("GITHUB_APP_PRIVATE_KEY_PATH")),
        secrets_dir=_optional(os.getenv("SECRETS_DIR")),
        status_file_path=os.getenv("CI_STATUS_FILE", "ci-status.txt"),
        status_branch=_optional(os.getenv("CI_STATUS_BRANCH")),
        poll_interval_seconds=_to_float(
            os.getenv("MONITOR_POLL_SECONDS"), default=5.0, minimum=0.5
        ),
        runs_page_size=_to_int(os.getenv("MONITOR_RUNS_PAGE_SIZE"), default=10, minimum=1),
        discover_delay_seconds=_to_float(
            os.getenv("MONITOR_DISCOVER_DELAY_SECONDS"), default=2.0, minimum=0.0
        ),
        send_timeout_seconds=_to_float(
            os.getenv("MONITOR_SEND_TIMEOUT_SECONDS"), default=5.0, minimum=0.1
        ),
        token_safety_margin_seconds=_to_int(
            os.getenv("TOKEN_SAFETY_MARGIN_SECONDS"), default=300, minimum=0
        ),
        token_renew_after_seconds=_to_int(
            os.getenv("TOKEN_RENEW_AFTER_SECONDS"), default=3000, minimum=60
        ),
        token_retry_seconds=_to_int(os.getenv("TOKEN_RETRY_SECONDS"), default=60, minimum=1),
    )
