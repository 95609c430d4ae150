"""Typed configuration objects backed by python-decouple settings."""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final

from decouple import Config as DecoupleConfig, RepositoryEmpty, RepositoryEnv

from jobworker.domains import parse_allow_domains

__all__ = [
    "RunnerSettings",
    "RenderSettings",
    "AuthSettings",
    "Settings",
    "load_config",
    "get_settings",
]

MIB: Final = 1024 * 1024


@dataclass(frozen=True, slots=True)
class RunnerSettings:
    """Knobs for the browser-automation runner."""

    allow_domains: tuple[str, ...]
    storage_dir: Path
    output_dir: Path
    tmp_dir: Path
    artifacts_route_prefix: str
    default_timeout_ms: int
    max_actions: int
    max_upload_bytes: int
    upload_download_timeout_ms: int
    headless: bool
    user_agent: str | None
    allow_evaluate: bool
    upload_root: Path | None


@dataclass(frozen=True, slots=True)
class RenderSettings:
    """ffmpeg/ffprobe locations and media-render limits."""

    ffmpeg_path: str
    ffprobe_path: str
    ffmpeg_preset: str
    ffmpeg_timeout_ms: int
    max_audio_duration_sec: float
    max_images: int
    max_download_bytes: int
    download_timeout_ms: int
    drawtext_font: str | None
    tmp_dir: Path


@dataclass(frozen=True, slots=True)
class AuthSettings:
    """Static bearer token; empty disables auth."""

    api_token: str | None

    @property
    def enabled(self) -> bool:
        return bool(self.api_token)


@dataclass(frozen=True, slots=True)
class Settings:
    """Top-level immutable configuration container."""

    env_path: str
    runner: RunnerSettings
    render: RenderSettings
    auth: AuthSettings


def load_config(env_path: str = ".env") -> DecoupleConfig:
    """Return a python-decouple config anchored to the repository .env file.

    Falls back to the process environment alone when the file is absent.
    """

    if os.path.isfile(env_path):
        return DecoupleConfig(RepositoryEnv(env_path))
    return DecoupleConfig(RepositoryEmpty())


def _int(cfg: DecoupleConfig, key: str, *, default: int) -> int:
    return cfg(key, cast=int, default=default)


def _bool(cfg: DecoupleConfig, key: str, *, default: bool) -> bool:
    return cfg(key, cast=bool, default=default)


def _optional_str(cfg: DecoupleConfig, key: str) -> str | None:
    raw = cfg(key, default="")
    raw = raw.strip() if isinstance(raw, str) else raw
    return raw or None


def _require_positive(**values: int | float) -> None:
    for key, value in values.items():
        if value <= 0:
            msg = f"{key} must be > 0 (got {value})"
            raise ValueError(msg)


@lru_cache(maxsize=1)
def get_settings(env_path: str = ".env") -> Settings:
    """Load and memoize structured settings for the current process."""

    cfg = load_config(env_path)

    upload_root = _optional_str(cfg, "PLAYWRIGHT_UPLOAD_ROOT")
    runner = RunnerSettings(
        allow_domains=parse_allow_domains(cfg("PLAYWRIGHT_ALLOW_DOMAINS", default="")),
        storage_dir=Path(cfg("PLAYWRIGHT_STORAGE_DIR", default="storageStates")),
        output_dir=Path(cfg("PLAYWRIGHT_OUTPUT_DIR", default="outputs/playwright")),
        tmp_dir=Path(cfg("PLAYWRIGHT_TMP_DIR", default="tmp/playwright")),
        artifacts_route_prefix="/" + cfg("PLAYWRIGHT_ARTIFACTS_ROUTE", default="/playwright/artifacts").strip("/"),
        default_timeout_ms=_int(cfg, "PLAYWRIGHT_DEFAULT_TIMEOUT_MS", default=60_000),
        max_actions=_int(cfg, "PLAYWRIGHT_MAX_ACTIONS", default=50),
        max_upload_bytes=_int(cfg, "PLAYWRIGHT_MAX_UPLOAD_BYTES", default=10 * MIB),
        upload_download_timeout_ms=_int(cfg, "PLAYWRIGHT_UPLOAD_DOWNLOAD_TIMEOUT_MS", default=30_000),
        headless=_bool(cfg, "PLAYWRIGHT_HEADLESS", default=True),
        user_agent=_optional_str(cfg, "PLAYWRIGHT_USER_AGENT"),
        allow_evaluate=_bool(cfg, "PLAYWRIGHT_ALLOW_EVALUATE", default=True),
        upload_root=Path(upload_root) if upload_root else None,
    )
    _require_positive(
        PLAYWRIGHT_DEFAULT_TIMEOUT_MS=runner.default_timeout_ms,
        PLAYWRIGHT_MAX_ACTIONS=runner.max_actions,
        PLAYWRIGHT_MAX_UPLOAD_BYTES=runner.max_upload_bytes,
        PLAYWRIGHT_UPLOAD_DOWNLOAD_TIMEOUT_MS=runner.upload_download_timeout_ms,
    )

    render_tmp = _optional_str(cfg, "RENDER_TMP_DIR")
    render = RenderSettings(
        ffmpeg_path=_optional_str(cfg, "FFMPEG_PATH") or "ffmpeg",
        ffprobe_path=_optional_str(cfg, "FFPROBE_PATH") or "ffprobe",
        ffmpeg_preset=cfg("FFMPEG_PRESET", default="veryfast"),
        ffmpeg_timeout_ms=_int(cfg, "FFMPEG_TIMEOUT_MS", default=180_000),
        max_audio_duration_sec=cfg("MAX_AUDIO_DURATION_SEC", cast=float, default=60.0),
        max_images=_int(cfg, "RENDER_MAX_IMAGES", default=10),
        max_download_bytes=_int(cfg, "RENDER_MAX_DOWNLOAD_BYTES", default=50 * MIB),
        download_timeout_ms=_int(cfg, "RENDER_DOWNLOAD_TIMEOUT_MS", default=30_000),
        drawtext_font=_optional_str(cfg, "RENDER_DRAWTEXT_FONT"),
        tmp_dir=Path(render_tmp) if render_tmp else Path(tempfile.gettempdir()),
    )
    _require_positive(
        FFMPEG_TIMEOUT_MS=render.ffmpeg_timeout_ms,
        MAX_AUDIO_DURATION_SEC=render.max_audio_duration_sec,
        RENDER_MAX_IMAGES=render.max_images,
        RENDER_MAX_DOWNLOAD_BYTES=render.max_download_bytes,
        RENDER_DOWNLOAD_TIMEOUT_MS=render.download_timeout_ms,
    )

    auth = AuthSettings(api_token=_optional_str(cfg, "API_TOKEN"))

    return Settings(env_path=env_path, runner=runner, render=render, auth=auth)


# Statically importable settings singleton for modules that prefer constants over DI.
settings: Final[Settings] = get_settings()
