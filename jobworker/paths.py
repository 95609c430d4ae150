"""Traversal-safe path helpers for job directories, artifacts and uploads."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Final

from jobworker.errors import RunnerHTTPError

__all__ = [
    "JOB_ID_PATTERN",
    "validate_job_id",
    "resolve_inside_root",
    "ensure_job_directories",
    "ensure_runner_directories",
    "sanitize_artifact_filename",
    "validate_artifact_filename",
    "resolve_artifact_path",
    "resolve_unique_filename",
    "resolve_local_upload_path",
]

JOB_ID_PATTERN: Final = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
ARTIFACT_FILENAME_PATTERN: Final = re.compile(r"^[A-Za-z0-9._-]{1,128}$")

DEFAULT_ARTIFACT_BASE: Final = "screenshot"
ARTIFACT_EXTENSION: Final = ".png"
MAX_ARTIFACT_BASE_CHARS: Final = 100

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_WHITESPACE = re.compile(r"\s+")
_REPEATED_UNDERSCORE = re.compile(r"_+")
_REPEATED_DASH = re.compile(r"-+")


def validate_job_id(job_id: str) -> str:
    if not isinstance(job_id, str) or not JOB_ID_PATTERN.match(job_id):
        raise RunnerHTTPError(400, "Invalid jobId.")
    return job_id


def resolve_inside_root(root: Path, target: str | Path, label: str) -> Path:
    """Resolve ``target`` against ``root`` and refuse anything that escapes it.

    Works purely on path strings; nothing is created or touched.
    """

    root_path = Path(root).resolve()
    resolved = (root_path / target).resolve()
    if resolved != root_path and root_path not in resolved.parents:
        raise RunnerHTTPError(400, f"Invalid {label} path.")
    return resolved


def ensure_job_directories(output_dir: Path, tmp_dir: Path, job_id: str) -> tuple[Path, Path]:
    """Create ``<output_dir>/<job_id>`` and ``<tmp_dir>/<job_id>``; returns (output, tmp)."""

    validate_job_id(job_id)
    job_output = resolve_inside_root(output_dir, job_id, "output")
    job_tmp = resolve_inside_root(tmp_dir, job_id, "tmp")
    job_output.mkdir(parents=True, exist_ok=True)
    job_tmp.mkdir(parents=True, exist_ok=True)
    return job_output, job_tmp


def ensure_runner_directories(*roots: Path) -> None:
    for root in roots:
        Path(root).mkdir(parents=True, exist_ok=True)


def sanitize_artifact_filename(name: str) -> str:
    base = name.strip()
    if base.lower().endswith(ARTIFACT_EXTENSION):
        base = base[: -len(ARTIFACT_EXTENSION)]
    base = _WHITESPACE.sub("-", base)
    base = _UNSAFE_CHARS.sub("_", base)
    base = _REPEATED_UNDERSCORE.sub("_", base)
    base = _REPEATED_DASH.sub("-", base)
    base = base.strip("-_.")[:MAX_ARTIFACT_BASE_CHARS].rstrip("-_.")
    return f"{base or DEFAULT_ARTIFACT_BASE}{ARTIFACT_EXTENSION}"


def validate_artifact_filename(filename: str) -> str:
    if (
        not isinstance(filename, str)
        or not ARTIFACT_FILENAME_PATTERN.match(filename)
        or filename in (".", "..")
        or filename.startswith(".")
    ):
        raise RunnerHTTPError(400, "Invalid artifact filename.")
    return filename


def resolve_artifact_path(output_dir: Path, job_id: str, filename: str) -> Path:
    validate_job_id(job_id)
    validate_artifact_filename(filename)
    job_dir = resolve_inside_root(output_dir, job_id, "output")
    return resolve_inside_root(job_dir, filename, "artifact")


def resolve_unique_filename(directory: Path, filename: str) -> str:
    """Return ``filename`` or the first free ``<stem>-<n><suffix>`` inside ``directory``."""

    candidate = Path(filename)
    stem, suffix = candidate.stem, candidate.suffix
    name = filename
    counter = 1
    while (Path(directory) / name).exists():
        name = f"{stem}-{counter}{suffix}"
        counter += 1
    return name


def resolve_local_upload_path(path: str, upload_root: Path | None = None) -> Path:
    """Resolve a caller-supplied upload path and require a regular file.

    With ``upload_root`` set, the path is interpreted relative to it and must
    stay inside it.
    """

    if upload_root is not None:
        resolved = resolve_inside_root(upload_root, path, "upload")
    else:
        resolved = Path(path).expanduser().resolve()
    if not resolved.is_file():
        raise RunnerHTTPError(400, f"Upload file not found: {path}")
    return resolved
