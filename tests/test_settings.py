from __future__ import annotations

from pathlib import Path

import pytest

from jobworker.settings import get_settings


@pytest.fixture(autouse=True)
def _fresh_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_defaults_without_env_file(monkeypatch, tmp_path: Path) -> None:
    for key in (
        "PLAYWRIGHT_ALLOW_DOMAINS",
        "PLAYWRIGHT_MAX_ACTIONS",
        "PLAYWRIGHT_DEFAULT_TIMEOUT_MS",
        "PLAYWRIGHT_ARTIFACTS_ROUTE",
        "PLAYWRIGHT_HEADLESS",
        "FFMPEG_PATH",
        "RENDER_MAX_IMAGES",
        "API_TOKEN",
    ):
        monkeypatch.delenv(key, raising=False)

    settings = get_settings(str(tmp_path / "missing.env"))

    assert settings.runner.allow_domains == ()
    assert settings.runner.max_actions == 50
    assert settings.runner.default_timeout_ms == 60_000
    assert settings.runner.artifacts_route_prefix == "/playwright/artifacts"
    assert settings.runner.headless is True
    assert settings.render.ffmpeg_path == "ffmpeg"
    assert settings.render.max_images == 10
    assert settings.auth.enabled is False


def test_env_file_and_environment_are_read(monkeypatch, tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text(
        "PLAYWRIGHT_ALLOW_DOMAINS=Example.com, .cdn.test\n"
        "PLAYWRIGHT_MAX_ACTIONS=7\n"
        "PLAYWRIGHT_ARTIFACTS_ROUTE=files/\n"
        "API_TOKEN=from-file\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("PLAYWRIGHT_HEADLESS", "false")
    monkeypatch.setenv("API_TOKEN", "from-env")

    settings = get_settings(str(env_file))

    assert settings.runner.allow_domains == ("example.com", "cdn.test")
    assert settings.runner.max_actions == 7
    assert settings.runner.artifacts_route_prefix == "/files"
    assert settings.runner.headless is False
    assert settings.auth.api_token == "from-env"
    assert settings.auth.enabled is True


def test_non_positive_limits_are_rejected(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PLAYWRIGHT_MAX_ACTIONS", "0")
    with pytest.raises(ValueError, match="PLAYWRIGHT_MAX_ACTIONS"):
        get_settings(str(tmp_path / "missing.env"))
