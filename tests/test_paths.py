from __future__ import annotations

import uuid
from pathlib import Path

import pytest

from jobworker.errors import RunnerHTTPError
from jobworker.paths import (
    ensure_job_directories,
    resolve_artifact_path,
    resolve_inside_root,
    resolve_local_upload_path,
    resolve_unique_filename,
    sanitize_artifact_filename,
    validate_job_id,
)


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("home", "home.png"),
        ("Home Page", "Home-Page.png"),
        ("../../etc/passwd", "etc_passwd.png"),
        ("a   b", "a-b.png"),
        ("shot.png", "shot.png"),
        ("___", "screenshot.png"),
        ("", "screenshot.png"),
        ("résumé!!", "r_sum.png"),
    ],
)
def test_sanitize_artifact_filename(name: str, expected: str) -> None:
    assert sanitize_artifact_filename(name) == expected


def test_validate_job_id_rejects_forged_ids() -> None:
    job_id = str(uuid.uuid4())
    assert validate_job_id(job_id) == job_id
    for forged in ("../x", "not-a-uuid", job_id + "/.."):
        with pytest.raises(RunnerHTTPError):
            validate_job_id(forged)


def test_resolve_inside_root_rejects_escape(tmp_path: Path) -> None:
    assert resolve_inside_root(tmp_path, "a/b.json", "session") == (tmp_path / "a" / "b.json").resolve()
    with pytest.raises(RunnerHTTPError) as excinfo:
        resolve_inside_root(tmp_path, "../outside.json", "session")
    assert excinfo.value.status_code == 400
    assert not (tmp_path.parent / "outside.json").exists()


def test_ensure_job_directories_creates_both(tmp_path: Path) -> None:
    job_id = str(uuid.uuid4())
    output, tmp = ensure_job_directories(tmp_path / "out", tmp_path / "tmp", job_id)
    assert output.is_dir() and output.name == job_id
    assert tmp.is_dir() and tmp.name == job_id


def test_resolve_unique_filename_appends_suffix(tmp_path: Path) -> None:
    assert resolve_unique_filename(tmp_path, "shot.png") == "shot.png"
    (tmp_path / "shot.png").write_bytes(b"1")
    assert resolve_unique_filename(tmp_path, "shot.png") == "shot-1.png"
    (tmp_path / "shot-1.png").write_bytes(b"2")
    assert resolve_unique_filename(tmp_path, "shot.png") == "shot-2.png"


def test_resolve_artifact_path(tmp_path: Path) -> None:
    job_id = str(uuid.uuid4())
    path = resolve_artifact_path(tmp_path, job_id, "home.png")
    assert path == (tmp_path / job_id / "home.png").resolve()
    for bad in ("../secret.png", ".hidden", "a/b.png"):
        with pytest.raises(RunnerHTTPError):
            resolve_artifact_path(tmp_path, job_id, bad)


def test_resolve_local_upload_path(tmp_path: Path) -> None:
    target = tmp_path / "file.txt"
    target.write_text("x", encoding="utf-8")
    assert resolve_local_upload_path(str(target)) == target.resolve()
    assert resolve_local_upload_path("file.txt", tmp_path) == target.resolve()

    with pytest.raises(RunnerHTTPError):
        resolve_local_upload_path(str(tmp_path / "missing.txt"))
    with pytest.raises(RunnerHTTPError):
        resolve_local_upload_path(str(tmp_path))
    with pytest.raises(RunnerHTTPError):
        resolve_local_upload_path("../file.txt", tmp_path / "sub")
