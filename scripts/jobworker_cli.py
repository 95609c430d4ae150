#!/usr/bin/env python3
"""Operator CLI for the jobworker API (browser jobs, sessions, renders)."""

from __future__ import annotations

import asyncio
import json
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, ContextManager, Iterator, List, Optional

import httpx
import typer
from decouple import Config as DecoupleConfig, RepositoryEnv
from rich.console import Console
from rich.table import Table

from jobworker.actions import validate_session_name
from jobworker.errors import InvalidFieldError
from jobworker.sessions import SessionStore

console = Console()
cli = typer.Typer(help="Interact with the jobworker API")

_DEFAULT_BASE_URL = "http://localhost:3000"
_CAPTURE_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/122.0.0.0 Safari/537.36"
)


@dataclass
class APISettings:
    base_url: str
    api_token: Optional[str]
    storage_dir: Path


def _load_env_settings() -> APISettings:
    env_path = Path(".env")
    if env_path.exists():
        config = DecoupleConfig(RepositoryEnv(str(env_path)))
        return APISettings(
            base_url=config("API_BASE_URL", default=_DEFAULT_BASE_URL),
            api_token=config("API_TOKEN", default=None) or None,
            storage_dir=Path(config("PLAYWRIGHT_STORAGE_DIR", default="storageStates")),
        )
    return APISettings(base_url=_DEFAULT_BASE_URL, api_token=None, storage_dir=Path("storageStates"))


def _resolve_settings(override_base: Optional[str]) -> APISettings:
    settings = _load_env_settings()
    if override_base:
        settings.base_url = override_base
    return settings


def _auth_headers(settings: APISettings) -> dict[str, str]:
    headers: dict[str, str] = {}
    if settings.api_token:
        headers["Authorization"] = f"Bearer {settings.api_token}"
    return headers


def _client_ctx(settings: APISettings, *, timeout: float | None = 660.0) -> ContextManager[httpx.Client]:
    @contextmanager
    def _ctx() -> Iterator[httpx.Client]:
        client = httpx.Client(base_url=settings.base_url, timeout=timeout, headers=_auth_headers(settings))
        try:
            yield client
        finally:
            client.close()

    return _ctx()


def _response_json(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {"error": response.text or f"HTTP {response.status_code}"}
    return payload if isinstance(payload, dict) else {"value": payload}


def _print_job_result(payload: dict[str, Any]) -> None:
    outputs = payload.get("outputs") or {}
    console.print(f"[green]job {payload.get('jobId')} ok[/] took_ms={payload.get('tookMs')}")

    artifacts = outputs.get("artifacts") or []
    if artifacts:
        table = Table("Name", "Filename", "URL", title="Artifacts")
        for item in artifacts:
            table.add_row(str(item.get("name")), str(item.get("filename")), str(item.get("url")))
        console.print(table)

    extracted = outputs.get("extracted") or {}
    if extracted:
        table = Table("Key", "Value", title="Extracted")
        for key, value in extracted.items():
            table.add_row(str(key), value if isinstance(value, str) else json.dumps(value))
        console.print(table)

    for record in outputs.get("storage") or []:
        console.print(f"storage saved: session={record.get('session')} file={record.get('file')}")


def _print_job_failure(payload: dict[str, Any], status_code: int, *, log_tail: int) -> None:
    console.print(f"[red]job failed (HTTP {status_code}):[/] {payload.get('error')}")
    details = payload.get("details")
    if details:
        console.print(f"details: {json.dumps(details)}")
    logs = payload.get("logs") or []
    for line in logs[-log_tail:] if log_tail > 0 else []:
        console.print(f"  {line}", markup=False, highlight=False)


@cli.command()
def run(
    payload_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON RunRequest file."),
    api_base: Optional[str] = typer.Option(None, "--api-base", help="Override API base URL."),
    json_output: bool = typer.Option(False, "--json", help="Print the raw JSON response."),
    log_tail: int = typer.Option(20, "--log-tail", help="Log lines to show on failure."),
) -> None:
    """Submit a browser job and print its artifacts and extracted values."""

    try:
        body = json.loads(payload_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"{payload_path} is not valid JSON: {exc}") from exc

    settings = _resolve_settings(api_base)
    with _client_ctx(settings) as client:
        response = client.post("/playwright/run", json=body)
    payload = _response_json(response)

    if json_output:
        console.print_json(data=payload)
    elif payload.get("ok"):
        _print_job_result(payload)
    else:
        _print_job_failure(payload, response.status_code, log_tail=log_tail)

    if not payload.get("ok"):
        raise typer.Exit(1)


@cli.command("push-state")
def push_state(
    session: str = typer.Option(..., "--session", help="Session id to store the state under."),
    file: Path = typer.Option(..., "--file", exists=True, dir_okay=False, help="storageState JSON file."),
    api_base: Optional[str] = typer.Option(None, "--api-base", help="Override API base URL."),
) -> None:
    """Upload a locally captured storage state to the worker."""

    try:
        session = validate_session_name(session, "session")
    except InvalidFieldError as exc:
        raise typer.BadParameter(exc.message, param_hint="--session") from exc
    storage_state = json.loads(file.read_text(encoding="utf-8"))

    settings = _resolve_settings(api_base)
    with _client_ctx(settings, timeout=30.0) as client:
        response = client.post(
            "/playwright/save-state", json={"session": session, "storageState": storage_state}
        )
    payload = _response_json(response)
    if response.status_code >= 400:
        console.print(f"[red]save-state failed (HTTP {response.status_code}):[/] {payload.get('detail') or payload}")
        raise typer.Exit(1)
    console.print(f"[green]stored[/] session={payload.get('session')} file={payload.get('file')}")


async def _capture_session(store: SessionStore, session: str, url: str) -> Path:
    from playwright.async_api import async_playwright

    async with async_playwright() as playwright:
        browser = await playwright.chromium.launch(
            headless=False, args=["--disable-blink-features=AutomationControlled"]
        )
        try:
            options: dict[str, Any] = {"user_agent": _CAPTURE_USER_AGENT}
            if store.exists(session):
                options["storage_state"] = str(store.resolve_state_path(session))
                console.print(f"loading existing state: {store.resolve_state_path(session)}")
            context = await browser.new_context(**options)
            page = await context.new_page()
            await page.goto(url, wait_until="domcontentloaded", timeout=120_000)
            console.print("Finish logging in in the opened browser window.")
            await asyncio.to_thread(input, "Press ENTER to save the storage state... ")
            state = await context.storage_state()
            await context.close()
        finally:
            await browser.close()
    return store.persist(session, state)


@cli.command("capture-session")
def capture_session(
    session: str = typer.Option(..., "--session", help="Session id ([A-Za-z0-9._-]{1,64})."),
    url: str = typer.Option("https://x.com/login", "--url", help="Login page to open."),
    storage_dir: Optional[Path] = typer.Option(None, "--storage-dir", help="Override the storage directory."),
) -> None:
    """Open a headed browser, let an operator log in, then save the session locally."""

    try:
        session = validate_session_name(session, "session")
    except InvalidFieldError as exc:
        raise typer.BadParameter(exc.message, param_hint="--session") from exc

    root = storage_dir or _load_env_settings().storage_dir
    path = asyncio.run(_capture_session(SessionStore(root), session, url))
    console.print(f"[green]saved[/] {path}")


@cli.command()
def render(
    audio_url: str = typer.Option(..., "--audio-url", help="MP3 URL."),
    image_urls: List[str] = typer.Option(..., "--image-url", help="Image URL (repeat 1-10 times)."),
    script: Optional[str] = typer.Option(None, "--script", help="Overlay text."),
    seconds_per_image: Optional[float] = typer.Option(None, "--seconds-per-image", help="Seconds per slide."),
    out: Path = typer.Option(Path("output.mp4"), "--out", help="Where to write the MP4."),
    api_base: Optional[str] = typer.Option(None, "--api-base", help="Override API base URL."),
) -> None:
    """Render a vertical MP4 and stream it to ``--out``."""

    body: dict[str, Any] = {"audio_url": audio_url, "image_urls": list(image_urls)}
    if script:
        body["script"] = script
    if seconds_per_image is not None:
        body["seconds_per_image"] = seconds_per_image

    settings = _resolve_settings(api_base)
    with _client_ctx(settings, timeout=None) as client:
        with client.stream("POST", "/render", json=body) as response:
            if response.status_code != 200:
                response.read()
                payload = _response_json(response)
                console.print(f"[red]render failed (HTTP {response.status_code}):[/] {payload.get('error')}")
                if payload.get("stderr_preview"):
                    console.print(payload["stderr_preview"], markup=False, highlight=False)
                raise typer.Exit(1)
            written = 0
            with out.open("wb") as handle:
                for chunk in response.iter_bytes():
                    handle.write(chunk)
                    written += len(chunk)
    console.print(f"[green]wrote[/] {out} ({written} bytes)")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
