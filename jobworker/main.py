"""Entry point for the FastAPI application."""

from __future__ import annotations

import logging
import shutil
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse
from prometheus_fastapi_instrumentator import Instrumentator

from jobworker import metrics
from jobworker.actions import parse_run_request, validate_session_name
from jobworker.auth import AuthContext, get_auth_context
from jobworker.errors import InvalidFieldError, JobFailedError, RunnerHTTPError
from jobworker.paths import ensure_runner_directories, resolve_artifact_path
from jobworker.process import ProcessFailedError
from jobworker.render import (
    MediaRenderer,
    RenderBusyError,
    RenderSlot,
    parse_render_request,
    truncate_tail,
)
from jobworker.runner import JobRunner
from jobworker.schemas import ErrorResponse, SaveStateRequest, SaveStateResponse
from jobworker.sessions import SessionStore
from jobworker.settings import Settings, settings

LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    active: Settings = app.state.settings
    ensure_runner_directories(active.runner.storage_dir, active.runner.output_dir, active.runner.tmp_dir)
    LOGGER.info(
        "jobworker ready (auth=%s, allow_domains=%s)",
        "on" if active.auth.enabled else "off",
        ",".join(active.runner.allow_domains) or "*",
    )
    yield


app = FastAPI(title="jobworker", lifespan=_lifespan)
app.state.settings = settings

instrumentator = Instrumentator(should_instrument_requests_inprogress=True)
instrumentator.instrument(app)
try:
    instrumentator.expose(app, include_in_schema=False, dependencies=[Depends(get_auth_context)])
except ValueError:  # pragma: no cover - already registered
    LOGGER.debug("Prometheus /metrics endpoint already exposed")

JOB_RUNNER = JobRunner(settings.runner)
SESSION_STORE = SessionStore(settings.runner.storage_dir)
RENDERER = MediaRenderer(settings.render)
RENDER_SLOT = RenderSlot(limit=1)

_INVALID_JSON = object()


def _active_settings(request: Request) -> Settings:
    return request.app.state.settings


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return _INVALID_JSON


@app.get("/", response_class=PlainTextResponse, include_in_schema=False)
async def index() -> str:
    return "ok"


@app.get("/health", response_class=PlainTextResponse, tags=["health"])
async def healthcheck() -> str:
    """Return a simple status useful for smoke tests."""

    return "ok"


@app.post("/playwright/run")
async def playwright_run(request: Request, _auth: AuthContext = Depends(get_auth_context)) -> JSONResponse:
    """Validate and execute one browser job synchronously."""

    body = await _read_json(request)
    if body is _INVALID_JSON:
        return JSONResponse({"ok": False, "error": "Invalid JSON body."}, status_code=status.HTTP_400_BAD_REQUEST)

    active = _active_settings(request).runner
    try:
        run_request = parse_run_request(
            body,
            max_actions=active.max_actions,
            default_timeout_ms=active.default_timeout_ms,
            allow_domains=active.allow_domains,
            allow_evaluate=active.allow_evaluate,
        )
    except InvalidFieldError as exc:
        return JSONResponse(
            {"ok": False, "error": exc.message, "details": exc.details},
            status_code=exc.status_code,
        )

    try:
        result = await JOB_RUNNER.run(run_request)
    except JobFailedError as exc:
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)
    return JSONResponse(result.to_dict())


@app.post("/playwright/save-state", response_model=SaveStateResponse)
async def playwright_save_state(
    payload: SaveStateRequest,
    _auth: AuthContext = Depends(get_auth_context),
) -> SaveStateResponse:
    """Persist a storage state captured outside the worker (see ``jobworker_cli capture-session``)."""

    try:
        session = validate_session_name(payload.session, "session")
        path = SESSION_STORE.persist(session, payload.storage_state)
    except RunnerHTTPError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    return SaveStateResponse(session=session, file=path.name)


async def playwright_artifact(
    job_id: str,
    filename: str,
    request: Request,
    _auth: AuthContext = Depends(get_auth_context),
) -> FileResponse:
    try:
        path = resolve_artifact_path(_active_settings(request).runner.output_dir, job_id, filename)
    except RunnerHTTPError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    if not path.is_file():
        raise HTTPException(status_code=404, detail="Artifact not found")
    return FileResponse(path)


app.add_api_route(
    f"{settings.runner.artifacts_route_prefix}/{{job_id}}/{{filename}}",
    playwright_artifact,
    methods=["GET"],
    name="playwright_artifact",
)


class RenderFileResponse(FileResponse):
    """Streams the rendered MP4, then drops its work dir and frees the render slot.

    Cleanup runs even when ``send`` raises because the client went away.
    """

    def __init__(self, path: Path, *, work_dir: Path, **kwargs: Any) -> None:
        super().__init__(path, **kwargs)
        self.work_dir = work_dir

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            _finish_render(self.work_dir)


@app.post("/render")
async def render(request: Request, _auth: AuthContext = Depends(get_auth_context)):
    """Compose a vertical MP4 from one audio URL and 1..N image URLs."""

    if not RENDER_SLOT.try_acquire():
        busy = RenderBusyError()
        metrics.record_render_outcome(busy.status_code)
        return JSONResponse(ErrorResponse(error=busy.message).model_dump(exclude_none=True), status_code=429)
    metrics.set_render_active(RENDER_SLOT.active)

    handed_off = False
    try:
        body = await _read_json(request)
        if body is _INVALID_JSON:
            raise RunnerHTTPError(400, "Invalid JSON body.")
        render_request = parse_render_request(body, max_images=_active_settings(request).render.max_images)
        output = await RENDERER.render(render_request)
        response = RenderFileResponse(
            output.output_path,
            work_dir=output.work_dir,
            media_type="video/mp4",
            headers={"Content-Disposition": 'inline; filename="output.mp4"'},
        )
        handed_off = True
        metrics.record_render_outcome(200)
        return response
    except Exception as exc:
        return _render_error_response(exc, _active_settings(request).render.ffmpeg_timeout_ms)
    finally:
        if not handed_off:
            _release_render_slot()


def _finish_render(work_dir: Path) -> None:
    try:
        shutil.rmtree(work_dir, ignore_errors=True)
    finally:
        _release_render_slot()


def _release_render_slot() -> None:
    RENDER_SLOT.release()
    metrics.set_render_active(RENDER_SLOT.active)


def _render_error_response(exc: Exception, ffmpeg_timeout_ms: int) -> JSONResponse:
    if isinstance(exc, RunnerHTTPError):
        LOGGER.warning("[render] rejected status=%s: %s", exc.status_code, exc.message)
        payload = ErrorResponse(error=exc.message)
        status_code = exc.status_code
    elif isinstance(exc, ProcessFailedError) and exc.timed_out:
        LOGGER.warning("[render] ffmpeg timed out after %sms", ffmpeg_timeout_ms)
        payload = ErrorResponse(
            error=f"ffmpeg timed out after {ffmpeg_timeout_ms}ms. Try shorter audio or fewer images."
        )
        status_code = 504
    else:
        LOGGER.exception("[render] failed")
        preview = truncate_tail(getattr(exc, "stderr", "") or str(exc))
        payload = ErrorResponse(error="ffmpeg failed while rendering.", stderr_preview=preview or None)
        status_code = 500
    metrics.record_render_outcome(status_code)
    return JSONResponse(payload.model_dump(exclude_none=True), status_code=status_code)
