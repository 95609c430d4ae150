"""Browser job runner: one validated action list, one browser, one shared deadline."""

from __future__ import annotations

import json
import logging
import math
import shutil
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Final, assert_never
from urllib.parse import quote

import httpx
from playwright.async_api import Browser, BrowserContext, Page, Playwright, Route, async_playwright

from jobworker import metrics
from jobworker.actions import (
    Action,
    Click,
    Evaluate,
    ExtractAttr,
    ExtractText,
    Fill,
    Goto,
    Press,
    ProxySettings,
    RunRequest,
    SaveStorage,
    Screenshot,
    Upload,
    UploadFromUrl,
    WaitFor,
)
from jobworker.downloads import fetch_image
from jobworker.errors import JobFailedError, RunnerHTTPError, error_message, is_timeout_error
from jobworker.paths import (
    ensure_job_directories,
    resolve_local_upload_path,
    resolve_unique_filename,
    sanitize_artifact_filename,
)
from jobworker.sessions import SessionStore
from jobworker.settings import RunnerSettings

__all__ = [
    "Artifact",
    "StorageRecord",
    "JobOutputs",
    "JobSuccess",
    "Deadline",
    "effective_timeout_ms",
    "LaunchedBrowser",
    "ChromiumLauncher",
    "BrowserLauncher",
    "JobRunner",
    "run_job",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_VIEWPORT: Final = {"width": 1280, "height": 800}
DEFAULT_USER_AGENT: Final = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/122.0.0.0 Safari/537.36"
)
CHROMIUM_ARGS: Final = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-blink-features=AutomationControlled",
)
PAGE_DEFAULT_TIMEOUT_CAP_MS: Final = 30_000
BROWSER_LOG_MAX_CHARS: Final = 500
EVALUATE_LOG_MAX_CHARS: Final = 500


@dataclass(frozen=True, slots=True)
class Artifact:
    name: str
    filename: str
    url: str


@dataclass(frozen=True, slots=True)
class StorageRecord:
    session: str
    file: str


@dataclass(slots=True)
class JobOutputs:
    """Append-only collections filled while a job's actions run."""

    artifacts: list[Artifact] = field(default_factory=list)
    extracted: dict[str, Any] = field(default_factory=dict)
    storage: list[StorageRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "artifacts": [
                {"name": item.name, "filename": item.filename, "url": item.url} for item in self.artifacts
            ],
            "extracted": dict(self.extracted),
            "storage": [{"session": item.session, "file": item.file} for item in self.storage],
        }


@dataclass(frozen=True, slots=True)
class JobSuccess:
    job_id: str
    took_ms: int
    outputs: JobOutputs
    logs: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "jobId": self.job_id,
            "tookMs": self.took_ms,
            "outputs": self.outputs.to_dict(),
            "logs": list(self.logs),
        }


@dataclass(frozen=True, slots=True)
class Deadline:
    """Absolute expiry on the monotonic clock, fixed once per job."""

    expires_at: float

    @classmethod
    def after(cls, timeout_ms: int, now: float) -> Deadline:
        return cls(expires_at=now + timeout_ms / 1000)

    def remaining_ms(self, now: float) -> float:
        return (self.expires_at - now) * 1000

    def expired(self, now: float) -> bool:
        return self.remaining_ms(now) <= 0


def effective_timeout_ms(deadline: Deadline, now: float, requested: int | None = None) -> int:
    """Per-step timeout: the tighter of the step's own request and the job budget left."""

    remaining = max(1, math.floor(deadline.remaining_ms(now)))
    if requested is None:
        return remaining
    return max(1, min(requested, remaining))


class LaunchedBrowser:
    """A Chromium browser bound to the Playwright driver that started it."""

    def __init__(self, playwright: Playwright, browser: Browser) -> None:
        self._playwright = playwright
        self._browser = browser

    async def new_context(self, **options: Any) -> BrowserContext:
        return await self._browser.new_context(**options)

    async def close(self) -> None:
        try:
            await self._browser.close()
        finally:
            await self._playwright.stop()


BrowserLauncher = Callable[..., Awaitable[Any]]


class ChromiumLauncher:
    """Default launcher: headless Chromium via ``async_playwright``."""

    def __init__(self, *, headless: bool = True) -> None:
        self.headless = headless

    async def __call__(self, *, proxy: ProxySettings | None = None) -> LaunchedBrowser:
        playwright = await async_playwright().start()
        try:
            options: dict[str, Any] = {"headless": self.headless, "args": list(CHROMIUM_ARGS)}
            if proxy is not None:
                options["proxy"] = proxy.to_playwright()
            LOGGER.debug("launching chromium", extra={"headless": self.headless, "proxy": proxy is not None})
            browser = await playwright.chromium.launch(**options)
        except BaseException:
            await playwright.stop()
            raise
        return LaunchedBrowser(playwright, browser)


class JobLog:
    """Timestamped, append-only job log mirrored to the module logger."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        self.lines: list[str] = []

    def __call__(self, message: str) -> None:
        stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
        self.lines.append(f"{stamp} {message}")
        LOGGER.debug("[job %s] %s", self.job_id, message)


@dataclass(slots=True)
class _StepContext:
    job_id: str
    context: BrowserContext
    page: Page
    outputs: JobOutputs
    deadline: Deadline
    log: JobLog
    output_dir: Path
    tmp_dir: Path


class JobRunner:
    """Execute validated :class:`RunRequest` objects against a fresh browser each time."""

    def __init__(
        self,
        settings: RunnerSettings,
        *,
        launcher: BrowserLauncher | None = None,
        session_store: SessionStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.launcher = launcher or ChromiumLauncher(headless=settings.headless)
        self.session_store = session_store or SessionStore(settings.storage_dir)
        self.http_client = http_client
        self.clock = clock

    async def run(self, request: RunRequest) -> JobSuccess:
        """Run ``request`` to completion.

        Returns :class:`JobSuccess` or raises :class:`JobFailedError`; no other
        exception type escapes.
        """

        started = self.clock()
        job_id = str(uuid.uuid4())
        log = JobLog(job_id)
        outputs = JobOutputs()
        browser: Any = None
        context: BrowserContext | None = None
        tmp_dir: Path | None = None

        try:
            log(
                f"[runner] start job={job_id} actions={len(request.actions)} "
                f"session={request.session or '-'} timeout_ms={request.timeout_ms}"
            )
            output_dir, tmp_dir = ensure_job_directories(self.settings.output_dir, self.settings.tmp_dir, job_id)

            browser = await self.launcher(proxy=request.proxy)
            context = await browser.new_context(**self._context_options(request, log))
            page = await context.new_page()
            await self._prepare_page(page, request, log)

            deadline = Deadline.after(request.timeout_ms, started)
            step = _StepContext(
                job_id=job_id,
                context=context,
                page=page,
                outputs=outputs,
                deadline=deadline,
                log=log,
                output_dir=output_dir,
                tmp_dir=tmp_dir,
            )

            total = len(request.actions)
            for index, action in enumerate(request.actions):
                label = f"{index + 1}/{total} {action.name}"
                if deadline.expired(self.clock()):
                    message = f'Job total timeout reached before action {index + 1} ("{action.name}").'
                    raise RunnerHTTPError(
                        408,
                        message,
                        {"index": index, "step": index + 1, "action": action.name, "reason": message},
                    )

                step_started = self.clock()
                log(f"[step] start {label}")
                try:
                    await self._execute(action, step)
                except Exception as exc:
                    metrics.record_step_failure(action.name)
                    raise _wrap_step_error(exc, action, index) from exc
                log(f"[step] done {label} took_ms={_elapsed_ms(step_started, self.clock())}")

            await context.close()
            context = None
            await browser.close()
            browser = None

            took_ms = _elapsed_ms(started, self.clock())
            log(f"[runner] success job={job_id} took_ms={took_ms}")
            metrics.record_job_outcome("success", took_ms)
            LOGGER.info("Browser job %s succeeded in %sms", job_id, took_ms)
            return JobSuccess(job_id=job_id, took_ms=took_ms, outputs=outputs, logs=log.lines)
        except Exception as exc:
            took_ms = _elapsed_ms(started, self.clock())
            message = error_message(exc)
            status_code = _resolve_status_code(exc)
            details = exc.details if isinstance(exc, RunnerHTTPError) else None
            log(f"[runner] error job={job_id} status={status_code} message={message}")
            metrics.record_job_outcome("timeout" if status_code in (408, 504) else "error", took_ms)
            if status_code >= 500 and not isinstance(exc, RunnerHTTPError):
                LOGGER.exception("Browser job %s failed during setup", job_id)
            else:
                LOGGER.warning("Browser job %s failed status=%s: %s", job_id, status_code, message)
            raise JobFailedError(
                message=message,
                status_code=status_code,
                job_id=job_id,
                took_ms=took_ms,
                logs=log.lines,
                details=details,
            ) from exc
        finally:
            await self._cleanup(job_id, context, browser, tmp_dir)

    def _context_options(self, request: RunRequest, log: JobLog) -> dict[str, Any]:
        viewport = request.viewport
        options: dict[str, Any] = {
            "viewport": {"width": viewport.width, "height": viewport.height} if viewport else dict(DEFAULT_VIEWPORT),
            "user_agent": request.user_agent or self.settings.user_agent or DEFAULT_USER_AGENT,
            "bypass_csp": True,
            "service_workers": "block",
        }
        if request.proxy is not None:
            options["proxy"] = request.proxy.to_playwright()
        if request.session:
            if self.session_store.exists(request.session):
                options["storage_state"] = str(self.session_store.resolve_state_path(request.session))
                log(f"[runner] loaded storageState session={request.session}")
            else:
                log(f"[runner] no storageState found for session={request.session}")
        return options

    async def _prepare_page(self, page: Page, request: RunRequest, log: JobLog) -> None:
        if request.block_resources:
            blocked = frozenset(request.block_resources)

            async def _block(route: Route) -> None:
                if route.request.resource_type in blocked:
                    await route.abort()
                else:
                    await route.continue_()

            await page.route("**/*", _block)

        page.set_default_timeout(min(PAGE_DEFAULT_TIMEOUT_CAP_MS, request.timeout_ms))
        page.on(
            "console",
            lambda message: log(f"[browser:console:{message.type}] {_truncate(message.text, BROWSER_LOG_MAX_CHARS)}"),
        )
        page.on("pageerror", lambda error: log(f"[browser:pageerror] {_truncate(str(error), BROWSER_LOG_MAX_CHARS)}"))

    async def _execute(self, action: Action, step: _StepContext) -> None:
        page = step.page
        timeout = self._timeout

        match action:
            case Goto(url=url, wait_until=wait_until):
                await page.goto(url, wait_until=wait_until or "domcontentloaded", timeout=timeout(step))

            case Click(selector=selector, delay_ms=delay_ms):
                options: dict[str, Any] = {"timeout": timeout(step)}
                if delay_ms is not None:
                    options["delay"] = delay_ms
                await page.click(selector, **options)

            case Fill(selector=selector, text=text):
                await page.fill(selector, text, timeout=timeout(step))

            case Press(selector=selector, key=key):
                await page.press(selector, key, timeout=timeout(step))

            case WaitFor(selector=selector, state=state, timeout_ms=timeout_ms):
                step_timeout = timeout(step, timeout_ms)
                if selector:
                    await page.wait_for_selector(selector, state=state or "visible", timeout=step_timeout)
                else:
                    await page.wait_for_timeout(step_timeout)

            case Upload(selector=selector, path=path):
                local_path = resolve_local_upload_path(path, self.settings.upload_root)
                await page.set_input_files(selector, str(local_path), timeout=timeout(step))

            case UploadFromUrl(selector=selector, url=url):
                asset = await fetch_image(
                    url,
                    step.tmp_dir,
                    max_bytes=self.settings.max_upload_bytes,
                    timeout_ms=min(timeout(step), self.settings.upload_download_timeout_ms),
                    allow_domains=self.settings.allow_domains,
                    client=self.http_client,
                )
                step.log(f"[step] uploadFromUrl downloaded bytes={asset.bytes} file={asset.filename}")
                await page.set_input_files(selector, str(asset.path), timeout=timeout(step))

            case Screenshot(label=label, full_page=full_page):
                filename = resolve_unique_filename(step.output_dir, sanitize_artifact_filename(label))
                await page.screenshot(path=str(step.output_dir / filename), full_page=full_page, timeout=timeout(step))
                step.outputs.artifacts.append(
                    Artifact(
                        name=label,
                        filename=filename,
                        url=f"{self.settings.artifacts_route_prefix}/{step.job_id}/{quote(filename, safe='')}",
                    )
                )

            case ExtractText(selector=selector, key=key):
                text = await page.text_content(selector, timeout=timeout(step))
                step.outputs.extracted[key] = (text or "").strip()

            case ExtractAttr(selector=selector, attr=attr, key=key):
                value = await page.get_attribute(selector, attr, timeout=timeout(step))
                step.outputs.extracted[key] = value or ""

            case SaveStorage(session=session):
                state = await step.context.storage_state()
                path = self.session_store.persist(session, state)
                step.outputs.storage.append(StorageRecord(session=session, file=path.name))
                step.log(f"[step] saveStorage session={session} file={path.name}")

            case Evaluate(script=script, arg=arg, key=key):
                result = await page.evaluate(script, arg)
                if key:
                    step.outputs.extracted[key] = result
                step.log(
                    f"[step] evaluate script_len={len(script)} "
                    f"result={_truncate(json.dumps(result, default=str), EVALUATE_LOG_MAX_CHARS)}"
                )

            case _:
                assert_never(action)

    def _timeout(self, step: _StepContext, requested: int | None = None) -> int:
        return effective_timeout_ms(step.deadline, self.clock(), requested)

    async def _cleanup(self, job_id: str, context: Any, browser: Any, tmp_dir: Path | None) -> None:
        if context is not None:
            try:
                await context.close()
            except Exception as exc:  # pragma: no cover - depends on browser state
                LOGGER.warning("Closing context for job %s failed: %s", job_id, exc)
        if browser is not None:
            try:
                await browser.close()
            except Exception as exc:  # pragma: no cover - depends on browser state
                LOGGER.warning("Closing browser for job %s failed: %s", job_id, exc)
        if tmp_dir is not None:
            try:
                shutil.rmtree(tmp_dir)
            except FileNotFoundError:
                pass
            except OSError as exc:
                LOGGER.warning("Removing tmp dir %s for job %s failed: %s", tmp_dir, job_id, exc)


async def run_job(request: RunRequest, settings: RunnerSettings, **kwargs: Any) -> JobSuccess:
    """Convenience wrapper around :meth:`JobRunner.run` for one-off callers."""

    return await JobRunner(settings, **kwargs).run(request)


def _wrap_step_error(exc: Exception, action: Action, index: int) -> RunnerHTTPError:
    details: dict[str, Any] = {
        "index": index,
        "step": index + 1,
        "action": action.name,
        "reason": error_message(exc),
    }
    if isinstance(exc, RunnerHTTPError):
        if exc.details:
            details.update(exc.details)
        return RunnerHTTPError(exc.status_code, exc.message, details)
    if is_timeout_error(exc):
        return RunnerHTTPError(504, f"Timeout in action {index + 1} ({action.name}).", details)
    return RunnerHTTPError(500, f"Action {index + 1} ({action.name}) failed.", details)


def _resolve_status_code(exc: BaseException) -> int:
    if isinstance(exc, RunnerHTTPError):
        return exc.status_code
    if is_timeout_error(exc):
        return 504
    return 500


def _elapsed_ms(start: float, end: float) -> int:
    return max(0, int(round((end - start) * 1000)))


def _truncate(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return value[:limit] + "..."
