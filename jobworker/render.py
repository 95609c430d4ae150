"""Media-render worker: audio + slideshow images -> vertical MP4 via ffmpeg."""

from __future__ import annotations

import logging
import math
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Any, Final
from urllib.parse import urlsplit, urlunsplit

import httpx
from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    StringConstraints,
    ValidationError,
    ValidationInfo,
    field_validator,
)
from pydantic_core import PydanticCustomError

from jobworker.actions import HttpUrlStr
from jobworker.downloads import download_to_file
from jobworker.errors import RunnerHTTPError, loc_to_path
from jobworker.process import ProcessFailedError, ProcessRunner, run_process
from jobworker.settings import RenderSettings

__all__ = [
    "RenderHTTPError",
    "RenderBusyError",
    "RenderRequest",
    "RenderOutput",
    "RenderSlot",
    "MediaRenderer",
    "parse_render_request",
    "build_video_filter",
    "escape_drawtext",
    "is_drawtext_error",
    "write_concat_file",
    "sanitize_url_for_log",
    "truncate_tail",
]

LOGGER = logging.getLogger(__name__)

TARGET_WIDTH: Final = 1080
TARGET_HEIGHT: Final = 1920
TARGET_FPS: Final = 30
DEFAULT_SECONDS_PER_IMAGE: Final = 3.0
MAX_SECONDS_PER_IMAGE: Final = 20.0
FFPROBE_TIMEOUT_MS: Final = 20_000
STDERR_PREVIEW_CHARS: Final = 4000
DEFAULT_DRAWTEXT_FONT: Final = "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf"

AUDIO_CONTENT_TYPES: Final = frozenset({"audio/mpeg", "application/octet-stream"})
IMAGE_CONTENT_TYPES: Final = frozenset({"image/jpeg", "image/png"})

_DRAWTEXT_ERROR = re.compile(r"drawtext|freetype|fontconfig|font file|cannot find a valid font", re.IGNORECASE)


class RenderHTTPError(RunnerHTTPError):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(status_code, message)


class RenderBusyError(RenderHTTPError):
    def __init__(self) -> None:
        super().__init__(429, "Render worker is busy. Try again shortly.")


def _seconds_input(value: Any) -> Any:
    if value is None or value == "":
        return DEFAULT_SECONDS_PER_IMAGE
    if isinstance(value, bool):
        raise PydanticCustomError("float_type", "Input should be a valid number")
    return value


def _script_input(value: Any) -> Any:
    return value if isinstance(value, str) else ""


SecondsPerImage = Annotated[
    float, BeforeValidator(_seconds_input), Field(gt=0, le=MAX_SECONDS_PER_IMAGE, allow_inf_nan=False)
]
ScriptText = Annotated[str, BeforeValidator(_script_input), StringConstraints(strip_whitespace=True)]


class RenderRequest(BaseModel):
    """Validated ``/render`` body; unknown keys such as ``title`` are ignored."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    audio_url: HttpUrlStr
    image_urls: tuple[HttpUrlStr, ...] = Field(min_length=1)
    seconds_per_image: SecondsPerImage = DEFAULT_SECONDS_PER_IMAGE
    script: ScriptText = ""

    @field_validator("image_urls")
    @classmethod
    def within_image_limit(cls, value: tuple[str, ...], info: ValidationInfo) -> tuple[str, ...]:
        limit = (info.context or {}).get("max_images")
        if limit is not None and len(value) > limit:
            raise PydanticCustomError("too_many_images", "accepts at most {limit} URLs", {"limit": limit})
        return value


@dataclass(frozen=True, slots=True)
class RenderOutput:
    work_dir: Path
    output_path: Path
    bytes: int


class RenderSlot:
    """Counter guarding how many renders may run at once (default one)."""

    def __init__(self, limit: int = 1) -> None:
        if limit < 1:
            msg = "RenderSlot limit must be >= 1"
            raise ValueError(msg)
        self.limit = limit
        self._active = 0

    @property
    def active(self) -> int:
        return self._active

    def try_acquire(self) -> bool:
        if self._active >= self.limit:
            return False
        self._active += 1
        return True

    def release(self) -> None:
        if self._active == 0:
            LOGGER.warning("RenderSlot released more times than acquired")
            return
        self._active -= 1


def parse_render_request(body: Any, *, max_images: int) -> RenderRequest:
    try:
        return RenderRequest.model_validate(body, context={"max_images": max_images})
    except ValidationError as exc:
        error = exc.errors(include_url=False)[0]
        field = loc_to_path(error["loc"]) or "body"
        raise RenderHTTPError(400, f'Field "{field}" is invalid: {error["msg"]}.') from None


def escape_drawtext(text: str) -> str:
    return (
        text.replace("\\", "\\\\")
        .replace(":", "\\:")
        .replace("'", "\\'")
        .replace(",", "\\,")
        .replace("[", "\\[")
        .replace("]", "\\]")
        .replace("\r", "")
        .replace("\n", "\\n")
    )


def build_video_filter(script: str, *, font_path: str = DEFAULT_DRAWTEXT_FONT) -> str:
    base = (
        f"[0:v]fps={TARGET_FPS},"
        f"scale={TARGET_WIDTH}:{TARGET_HEIGHT}:force_original_aspect_ratio=increase,"
        f"crop={TARGET_WIDTH}:{TARGET_HEIGHT},setsar=1"
    )
    if not script:
        return f"{base},format=yuv420p[vout]"
    overlay = (
        f"drawtext=fontfile={font_path}:text='{escape_drawtext(script)}':fontcolor=white:fontsize=56:"
        "line_spacing=8:borderw=3:bordercolor=black@0.75:box=1:boxcolor=black@0.45:boxborderw=18:"
        "x=(w-text_w)/2:y=h-280"
    )
    return f"{base},{overlay},format=yuv420p[vout]"


def is_drawtext_error(stderr: str) -> bool:
    return bool(_DRAWTEXT_ERROR.search(stderr))


def write_concat_file(
    concat_path: Path,
    image_paths: list[Path],
    *,
    seconds_per_image: float,
    audio_duration_sec: float,
) -> None:
    """Write an ffmpeg concat list; the last image stretches to cover the audio."""

    extra = max(0.0, audio_duration_sec - len(image_paths) * seconds_per_image) + 0.1
    last_duration = seconds_per_image + extra

    lines: list[str] = []
    for index, image_path in enumerate(image_paths):
        escaped = str(image_path).replace("'", "'\\''")
        is_last = index == len(image_paths) - 1
        lines.append(f"file '{escaped}'")
        lines.append(f"duration {(last_duration if is_last else seconds_per_image):.3f}")
        if is_last:
            # concat demuxer ignores the final duration unless the file repeats
            lines.append(f"file '{escaped}'")
    concat_path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def sanitize_url_for_log(url: str) -> str:
    try:
        parts = urlsplit(url)
        host = parts.hostname or ""
        port = parts.port
    except ValueError:
        return "[invalid-url]"
    if not parts.scheme or not host:
        return "[invalid-url]"
    netloc = f"{host}:{port}" if port else host
    return urlunsplit((parts.scheme, netloc, parts.path, "", ""))


def truncate_tail(value: str, max_chars: int = STDERR_PREVIEW_CHARS) -> str:
    if len(value) <= max_chars:
        return value
    return f"{value[-max_chars:]} [truncated]"


class MediaRenderer:
    """Download inputs, measure the audio and drive ffmpeg inside a private work dir."""

    def __init__(
        self,
        settings: RenderSettings,
        *,
        process_runner: ProcessRunner = run_process,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self.process_runner = process_runner
        self.http_client = http_client

    async def render(self, request: RenderRequest) -> RenderOutput:
        """Produce ``output.mp4``; the caller owns (and must remove) ``work_dir``.

        On failure the work dir is removed before the error propagates.
        """

        self.settings.tmp_dir.mkdir(parents=True, exist_ok=True)
        work_dir = Path(tempfile.mkdtemp(prefix="render-", dir=self.settings.tmp_dir))
        try:
            return await self._render_in(work_dir, request)
        except BaseException:
            shutil.rmtree(work_dir, ignore_errors=True)
            raise

    async def _render_in(self, work_dir: Path, request: RenderRequest) -> RenderOutput:
        audio_path = work_dir / "audio.mp3"
        audio = await download_to_file(
            request.audio_url,
            audio_path,
            accept=AUDIO_CONTENT_TYPES.__contains__,
            max_bytes=self.settings.max_download_bytes,
            timeout_ms=self.settings.download_timeout_ms,
            label="Audio",
            upstream_status=502,
            client=self.http_client,
        )

        image_paths: list[Path] = []
        for index, url in enumerate(request.image_urls):
            temp_path = work_dir / f"img_{index:03d}.tmp"
            image = await download_to_file(
                url,
                temp_path,
                accept=IMAGE_CONTENT_TYPES.__contains__,
                max_bytes=self.settings.max_download_bytes,
                timeout_ms=self.settings.download_timeout_ms,
                label=f"Image #{index + 1}",
                upstream_status=502,
                client=self.http_client,
            )
            extension = ".png" if image.content_type == "image/png" else ".jpg"
            final_path = temp_path.with_suffix(extension)
            temp_path.replace(final_path)
            image_paths.append(final_path)

        duration = await self._read_duration(audio_path)
        if duration > self.settings.max_audio_duration_sec:
            raise RenderHTTPError(
                400,
                f"Audio exceeds the {self.settings.max_audio_duration_sec:g}s limit. Detected duration: {duration:.2f}s.",
            )

        LOGGER.info(
            "[render] start images=%s audio_url=%s audio_bytes=%s estimated_duration=%.2fs",
            len(image_paths),
            sanitize_url_for_log(request.audio_url),
            audio.bytes,
            max(duration, len(image_paths) * request.seconds_per_image),
        )

        concat_path = work_dir / "slides.txt"
        write_concat_file(
            concat_path,
            image_paths,
            seconds_per_image=request.seconds_per_image,
            audio_duration_sec=duration,
        )

        output_path = work_dir / "output.mp4"
        await self._run_ffmpeg_with_optional_text(concat_path, audio_path, output_path, request.script)
        size = output_path.stat().st_size
        LOGGER.info("[render] success output_bytes=%s", size)
        return RenderOutput(work_dir=work_dir, output_path=output_path, bytes=size)

    async def _read_duration(self, audio_path: Path) -> float:
        args = [
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            str(audio_path),
        ]
        result = await self.process_runner(self.settings.ffprobe_path, args, FFPROBE_TIMEOUT_MS)
        try:
            duration = float(result.stdout.strip())
        except ValueError:
            duration = math.nan
        if not math.isfinite(duration) or duration <= 0:
            raise RenderHTTPError(400, "Could not determine the audio duration.")
        return duration

    async def _run_ffmpeg_with_optional_text(
        self, concat_path: Path, audio_path: Path, output_path: Path, script: str
    ) -> None:
        if not script:
            await self._run_ffmpeg(concat_path, audio_path, output_path, "")
            return
        try:
            await self._run_ffmpeg(concat_path, audio_path, output_path, script)
        except ProcessFailedError as exc:
            if exc.timed_out or not is_drawtext_error(exc.stderr):
                raise
            LOGGER.warning("[render] drawtext unavailable, rendering without text overlay")
            await self._run_ffmpeg(concat_path, audio_path, output_path, "")

    async def _run_ffmpeg(self, concat_path: Path, audio_path: Path, output_path: Path, script: str) -> None:
        args = [
            "-y",
            "-f",
            "concat",
            "-safe",
            "0",
            "-i",
            str(concat_path),
            "-i",
            str(audio_path),
            "-filter_complex",
            build_video_filter(script, font_path=self.settings.drawtext_font or DEFAULT_DRAWTEXT_FONT),
            "-map",
            "[vout]",
            "-map",
            "1:a:0",
            "-r",
            str(TARGET_FPS),
            "-c:v",
            "libx264",
            "-preset",
            self.settings.ffmpeg_preset,
            "-pix_fmt",
            "yuv420p",
            "-c:a",
            "aac",
            "-b:a",
            "128k",
            "-movflags",
            "+faststart",
            "-shortest",
            str(output_path),
        ]
        await self.process_runner(self.settings.ffmpeg_path, args, self.settings.ffmpeg_timeout_ms)
