"""Streaming downloads with content-type, size and deadline enforcement."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Callable, Final, Iterable
from urllib.parse import unquote, urlsplit

import httpx

from jobworker.domains import assert_allowed_domain, host_is_allowed
from jobworker.errors import DownloadError
from jobworker.paths import resolve_unique_filename

__all__ = [
    "DownloadResult",
    "DownloadedAsset",
    "IMAGE_EXTENSIONS",
    "download_to_file",
    "fetch_image",
    "image_content_type",
    "safe_basename_from_url",
]

LOGGER = logging.getLogger(__name__)

IMAGE_EXTENSIONS: Final[dict[str, str]] = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "image/bmp": ".bmp",
}
FALLBACK_EXTENSION: Final = ".img"
FALLBACK_BASENAME: Final = "upload"
CHUNK_SIZE: Final = 64 * 1024

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True, slots=True)
class DownloadResult:
    path: Path
    bytes: int
    content_type: str


@dataclass(frozen=True, slots=True)
class DownloadedAsset:
    path: Path
    filename: str
    content_type: str
    bytes: int


def image_content_type(content_type: str) -> bool:
    return content_type.startswith("image/")


async def download_to_file(
    url: str,
    destination: Path,
    *,
    accept: Callable[[str], bool],
    max_bytes: int,
    timeout_ms: int,
    label: str = "Asset",
    upstream_status: int = 400,
    allow_domains: Iterable[str] = (),
    client: httpx.AsyncClient | None = None,
) -> DownloadResult:
    """Stream ``url`` into ``destination`` or raise :class:`DownloadError`.

    ``destination`` is only opened once the status and content type are
    acceptable, and it is removed again on any later failure. ``accept`` gets
    the lower-cased media type without parameters. ``upstream_status`` is the
    HTTP status reported for network errors, timeouts and non-2xx answers.
    """

    destination = Path(destination)
    owns_client = client is None
    http_client = client or httpx.AsyncClient(follow_redirects=True)
    try:
        try:
            return await _stream_to_file(
                http_client,
                url,
                destination,
                accept=accept,
                max_bytes=max_bytes,
                timeout_ms=timeout_ms,
                label=label,
                upstream_status=upstream_status,
                domains=tuple(allow_domains),
            )
        except (TimeoutError, httpx.TimeoutException) as exc:
            raise DownloadError(
                upstream_status, f"{label} download timeout after {timeout_ms}ms.", reason="timeout"
            ) from exc
        except httpx.HTTPError as exc:
            raise DownloadError(upstream_status, f"{label} download failed: {exc}", reason="network") from exc
    except BaseException:
        destination.unlink(missing_ok=True)
        raise
    finally:
        if owns_client:
            await http_client.aclose()


async def _stream_to_file(
    http_client: httpx.AsyncClient,
    url: str,
    destination: Path,
    *,
    accept: Callable[[str], bool],
    max_bytes: int,
    timeout_ms: int,
    label: str,
    upstream_status: int,
    domains: tuple[str, ...],
) -> DownloadResult:
    async with asyncio.timeout(timeout_ms / 1000):
        async with http_client.stream("GET", url) as response:
            if domains and not host_is_allowed(response.url.host or "", domains):
                raise DownloadError(
                    400, f"{label} redirected to a domain that is not allowed.", reason="domain_not_allowed"
                )
            if not response.is_success:
                raise DownloadError(
                    upstream_status,
                    f"{label} download failed: HTTP {response.status_code}",
                    reason="http_status",
                )

            content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
            if not accept(content_type):
                raise DownloadError(
                    400,
                    f"{label} has an unsupported content-type: {content_type or 'missing'}",
                    reason="content_type",
                )

            declared = response.headers.get("content-length", "")
            if declared.isdigit() and int(declared) > max_bytes:
                raise DownloadError(400, f"{label} exceeds the limit of {max_bytes} bytes.", reason="too_large")

            total = 0
            with destination.open("wb") as handle:
                async for chunk in response.aiter_bytes(CHUNK_SIZE):
                    total += len(chunk)
                    if total > max_bytes:
                        raise DownloadError(
                            400, f"{label} exceeds the limit of {max_bytes} bytes.", reason="too_large"
                        )
                    handle.write(chunk)

    if total == 0:
        raise DownloadError(400, f"{label} is empty.", reason="empty")
    return DownloadResult(path=destination, bytes=total, content_type=content_type)


def safe_basename_from_url(url: str) -> str:
    try:
        raw_path = urlsplit(url).path
    except ValueError:
        return FALLBACK_BASENAME
    stem = PurePosixPath(unquote(raw_path)).stem
    stem = _WHITESPACE.sub("-", stem)
    stem = _UNSAFE_CHARS.sub("_", stem)
    stem = stem.strip("-_.")[:80]
    return stem or FALLBACK_BASENAME


async def fetch_image(
    url: str,
    destination_dir: Path,
    *,
    max_bytes: int,
    timeout_ms: int,
    allow_domains: Iterable[str] = (),
    client: httpx.AsyncClient | None = None,
) -> DownloadedAsset:
    """Download an image for ``uploadFromUrl`` into ``destination_dir``.

    Upstream failures surface as 400: the caller's URL is at fault.
    """

    domains = tuple(allow_domains)
    assert_allowed_domain(url, domains, "url")

    destination_dir = Path(destination_dir)
    base = safe_basename_from_url(url)
    part_name = resolve_unique_filename(destination_dir, f"{base}.part")
    result = await download_to_file(
        url,
        destination_dir / part_name,
        accept=image_content_type,
        max_bytes=max_bytes,
        timeout_ms=timeout_ms,
        label="Image",
        upstream_status=400,
        allow_domains=domains,
        client=client,
    )

    extension = IMAGE_EXTENSIONS.get(result.content_type, FALLBACK_EXTENSION)
    filename = resolve_unique_filename(destination_dir, f"{base}{extension}")
    final_path = destination_dir / filename
    result.path.replace(final_path)
    LOGGER.debug("Downloaded %s bytes (%s) to %s", result.bytes, result.content_type, final_path)
    return DownloadedAsset(path=final_path, filename=filename, content_type=result.content_type, bytes=result.bytes)
