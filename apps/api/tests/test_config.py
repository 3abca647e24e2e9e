from ci_monitor.config import get_settings


def test_settings_defaults(monkeypatch) -> None:
    for name in (
        "MONITOR_POLL_SECONDS",
        "TOKEN_SAFETY_MARGIN_SECONDS",
        "TOKEN_RENEW_AFTER_SECONDS",
        "GITHUB_API_URL",
        "CI_STATUS_FILE",
        "CORS_ALLOW_ORIGINS",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = get_settings()

    assert settings.poll_interval_seconds == 5.0
    assert settings.token_safety_margin_seconds == 300
    assert settings.token_renew_after_seconds == 3000
    assert settings.github_api_url == "https://api.github.com"
    assert settings.status_file_path == "ci-status.txt"
    assert settings.cors_allow_origins == ("*",)


def test_settings_clamp_to_minimums(monkeypatch) -> None:
    monkeypatch.setenv("MONITOR_POLL_SECONDS", "0")
    monkeypatch.setenv("MONITOR_RUNS_PAGE_SIZE", "-3")
    monkeypatch.setenv("TOKEN_RENEW_AFTER_SECONDS", "5")

    settings = get_settings()

    assert settings.poll_interval_seconds == 0.5
    assert settings.runs_page_size == 1
    assert settings.token_renew_after_seconds == 60


def test_blank_optional_values_are_treated_as_unset(monkeypatch) -> None:
    monkeypatch.setenv("GITHUB_REPO_OWNER", "   ")
    monkeypatch.setenv("CI_STATUS_BRANCH", "")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "http://a.test, http://b.test")

    settings = get_settings()

    assert settings.github_repo_owner is None
    assert settings.status_branch is None
    assert settings.cors_allow_origins == ("http://a.test", "http://b.test")
