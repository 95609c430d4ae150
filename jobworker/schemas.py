"""Pydantic DTOs shared across endpoints."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SaveStateRequest(BaseModel):
    """Payload for uploading a storage state captured elsewhere."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    session: str = Field(description="Session id ([A-Za-z0-9._-]{1,64})")
    storage_state: dict[str, Any] = Field(
        alias="storageState",
        description="Browser storage state (cookies + origins) as returned by Playwright",
    )


class SaveStateResponse(BaseModel):
    ok: bool = True
    session: str
    file: str


class ErrorResponse(BaseModel):
    """Error envelope used by the render worker and generic failures."""

    error: str
    stderr_preview: str | None = Field(default=None, description="Tail of ffmpeg stderr")
