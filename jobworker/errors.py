"""Error taxonomy shared by the validator, fetcher, runner and HTTP layer."""

from __future__ import annotations

import re
from typing import Any, Iterable

__all__ = [
    "RunnerHTTPError",
    "InvalidFieldError",
    "DownloadError",
    "JobFailedError",
    "is_timeout_error",
    "error_message",
    "loc_to_path",
]

_TIMEOUT_PATTERN = re.compile(r"timeout", re.IGNORECASE)


class RunnerHTTPError(Exception):
    """An error that already knows which HTTP status it should surface as."""

    def __init__(self, status_code: int, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.details = details


class InvalidFieldError(RunnerHTTPError):
    """Request-shape failure scoped to a single field path (``actions[2].selector``)."""

    kind = "InvalidField"

    def __init__(self, field: str, message: str, *, reason: str = "invalid") -> None:
        super().__init__(400, message, {"field": field, "kind": self.kind, "reason": reason})
        self.field = field
        self.reason = reason


class DownloadError(RunnerHTTPError):
    """Remote asset could not be fetched; ``reason`` tells callers why."""

    def __init__(self, status_code: int, message: str, *, reason: str) -> None:
        super().__init__(status_code, message, {"reason": reason})
        self.reason = reason


class JobFailedError(Exception):
    """Terminal failure of a browser job, carrying everything the caller needs."""

    def __init__(
        self,
        *,
        message: str,
        status_code: int,
        job_id: str,
        took_ms: int,
        logs: list[str],
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.job_id = job_id
        self.took_ms = took_ms
        self.logs = logs
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "ok": False,
            "error": self.message,
            "jobId": self.job_id,
            "tookMs": self.took_ms,
            "logs": list(self.logs),
        }
        if self.details is not None:
            payload["details"] = self.details
        return payload


def is_timeout_error(error: BaseException) -> bool:
    """Return True for Playwright/asyncio timeouts or anything whose message says so."""

    if type(error).__name__ == "TimeoutError" or isinstance(error, TimeoutError):
        return True
    return bool(_TIMEOUT_PATTERN.search(error_message(error)))


def error_message(error: BaseException) -> str:
    if isinstance(error, RunnerHTTPError):
        return error.message
    message = str(error)
    return message or type(error).__name__


def loc_to_path(loc: Iterable[int | str]) -> str:
    """Render a pydantic error location as ``actions[2].selector``."""

    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path = f"{path}.{part}" if path else str(part)
    return path
