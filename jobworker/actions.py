"""Typed action vocabulary and the strict validator for browser-job requests.

Requests arrive as untrusted JSON. :func:`parse_run_request` validates them
through the pydantic models below into an immutable :class:`RunRequest`, or
raises :class:`InvalidFieldError` naming the offending field path
(``actions[2].selector``). Nothing here touches the browser or the
filesystem, so a rejected request never costs a browser launch.
"""

from __future__ import annotations

from typing import Annotated, Any, Final, Iterable, Literal, Mapping, Optional, Union
from urllib.parse import urlsplit

from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    StrictBool,
    StringConstraints,
    TypeAdapter,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel
from pydantic_core import PydanticCustomError

from jobworker.domains import host_is_allowed
from jobworker.errors import InvalidFieldError, loc_to_path

__all__ = [
    "Goto",
    "Click",
    "Fill",
    "Press",
    "WaitFor",
    "Upload",
    "UploadFromUrl",
    "Screenshot",
    "ExtractText",
    "ExtractAttr",
    "SaveStorage",
    "Evaluate",
    "Action",
    "ACTION_NAMES",
    "ProxySettings",
    "Viewport",
    "RunRequest",
    "SESSION_PATTERN",
    "HttpUrlStr",
    "validate_session_name",
    "parse_run_request",
    "invalid_field_from",
]

SESSION_PATTERN: Final = r"^[A-Za-z0-9._-]{1,64}$"

PROXY_SCHEMES: Final = ("http", "https", "socks5")

MAX_JOB_TIMEOUT_MS: Final = 600_000
MAX_WAIT_TIMEOUT_MS: Final = 120_000
MAX_CLICK_DELAY_MS: Final = 10_000
MAX_VIEWPORT_PX: Final = 10_000
MAX_USER_AGENT_CHARS: Final = 512

# Error types surfaced verbatim as InvalidField reasons; everything else is "invalid".
_REASON_CODES: Final = frozenset({"domain_not_allowed", "malformed_url"})


def _is_unset(value: Any) -> bool:
    return value is None or value == ""


def _blank_to_none(value: Any) -> Any:
    return None if _is_unset(value) else value


def _blank_to_false(value: Any) -> Any:
    return False if _is_unset(value) else value


def _blank_to_empty(value: Any) -> Any:
    return () if _is_unset(value) else value


def _reject_bool(value: Any) -> Any:
    if isinstance(value, bool):
        raise PydanticCustomError("int_type", "Input should be a valid integer")
    return value


def _optional_int_input(value: Any) -> Any:
    return _reject_bool(_blank_to_none(value))


def _check_http_url(value: str, info: ValidationInfo) -> str:
    try:
        parts = urlsplit(value)
        host = parts.hostname
    except ValueError:
        raise PydanticCustomError("malformed_url", "Input should be a valid URL") from None
    if parts.scheme.lower() not in ("http", "https"):
        raise PydanticCustomError("url_scheme", "URL scheme should be 'http' or 'https'")
    if not host:
        raise PydanticCustomError("malformed_url", "Input should be a valid URL")
    domains = (info.context or {}).get("allow_domains") or ()
    if domains and not host_is_allowed(host, domains):
        raise PydanticCustomError(
            "domain_not_allowed",
            "Domain {host} is blocked. Allowed: {allowed}",
            {"host": host, "allowed": ", ".join(domains)},
        )
    return value


def _dedupe(values: tuple[str, ...]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(values))


NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
OptionalNonEmptyStr = Annotated[Optional[NonEmptyStr], BeforeValidator(_blank_to_none)]
OptionalText = Annotated[Optional[str], BeforeValidator(_blank_to_none)]
HttpUrlStr = Annotated[NonEmptyStr, AfterValidator(_check_http_url)]
SessionName = Annotated[str, StringConstraints(strip_whitespace=True, pattern=SESSION_PATTERN)]
Flag = Annotated[StrictBool, BeforeValidator(_blank_to_false)]
WaitUntil = Annotated[
    Optional[Literal["load", "domcontentloaded", "networkidle", "commit"]], BeforeValidator(_blank_to_none)
]
WaitState = Annotated[Optional[Literal["attached", "detached", "visible", "hidden"]], BeforeValidator(_blank_to_none)]
BlockableResource = Literal["stylesheet", "image", "font", "media"]
UserAgent = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=MAX_USER_AGENT_CHARS)]
ClickDelayMs = Annotated[
    Optional[Annotated[int, Field(gt=0, le=MAX_CLICK_DELAY_MS)]], BeforeValidator(_optional_int_input)
]
WaitTimeoutMs = Annotated[
    Optional[Annotated[int, Field(gt=0, le=MAX_WAIT_TIMEOUT_MS)]], BeforeValidator(_optional_int_input)
]


class _WireModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True, alias_generator=to_camel)


class _ActionModel(_WireModel):
    action: str

    @property
    def name(self) -> str:
        return self.action


class Goto(_ActionModel):
    action: Literal["goto"] = "goto"
    url: HttpUrlStr
    wait_until: WaitUntil = None


class Click(_ActionModel):
    action: Literal["click"] = "click"
    selector: NonEmptyStr
    delay_ms: ClickDelayMs = None


class Fill(_ActionModel):
    action: Literal["fill"] = "fill"
    selector: NonEmptyStr
    # Typed text is kept verbatim and may be empty
    text: str


class Press(_ActionModel):
    action: Literal["press"] = "press"
    selector: NonEmptyStr
    key: NonEmptyStr


class WaitFor(_ActionModel):
    action: Literal["waitFor"] = "waitFor"
    selector: OptionalNonEmptyStr = None
    state: WaitState = None
    timeout_ms: WaitTimeoutMs = None

    @model_validator(mode="after")
    def needs_target(self) -> "WaitFor":
        if self.selector is None and self.timeout_ms is None:
            raise PydanticCustomError("wait_for_target", 'waitFor needs "selector" and/or "timeoutMs"')
        return self


class Upload(_ActionModel):
    action: Literal["upload"] = "upload"
    selector: NonEmptyStr
    path: NonEmptyStr


class UploadFromUrl(_ActionModel):
    action: Literal["uploadFromUrl"] = "uploadFromUrl"
    selector: NonEmptyStr
    url: HttpUrlStr


class Screenshot(_ActionModel):
    action: Literal["screenshot"] = "screenshot"
    label: NonEmptyStr = Field(alias="name")
    full_page: Flag = False


class ExtractText(_ActionModel):
    action: Literal["extractText"] = "extractText"
    selector: NonEmptyStr
    key: NonEmptyStr


class ExtractAttr(_ActionModel):
    action: Literal["extractAttr"] = "extractAttr"
    selector: NonEmptyStr
    attr: NonEmptyStr
    key: NonEmptyStr


class SaveStorage(_ActionModel):
    action: Literal["saveStorage"] = "saveStorage"
    session: SessionName


class Evaluate(_ActionModel):
    """The one deliberate escape hatch: caller-supplied script text runs in the page."""

    action: Literal["evaluate"] = "evaluate"
    script: NonEmptyStr
    arg: Any = None
    key: OptionalNonEmptyStr = None

    @field_validator("action")
    @classmethod
    def evaluate_enabled(cls, value: str, info: ValidationInfo) -> str:
        if not (info.context or {}).get("allow_evaluate", True):
            raise PydanticCustomError("evaluate_disabled", "evaluate is disabled on this worker")
        return value


_ACTION_MODELS: Final = (
    Goto,
    Click,
    Fill,
    Press,
    WaitFor,
    Upload,
    UploadFromUrl,
    Screenshot,
    ExtractText,
    ExtractAttr,
    SaveStorage,
    Evaluate,
)

AnyAction = Union[
    Goto,
    Click,
    Fill,
    Press,
    WaitFor,
    Upload,
    UploadFromUrl,
    Screenshot,
    ExtractText,
    ExtractAttr,
    SaveStorage,
    Evaluate,
]
Action = Annotated[AnyAction, Field(discriminator="action")]

ACTION_NAMES: Final = tuple(model.model_fields["action"].default for model in _ACTION_MODELS)


class ProxySettings(_WireModel):
    server: NonEmptyStr
    username: OptionalText = None
    password: OptionalText = None

    @field_validator("server")
    @classmethod
    def check_proxy_server(cls, value: str) -> str:
        try:
            parts = urlsplit(value)
            host = parts.hostname
        except ValueError:
            host = None
        if not host or parts.scheme.lower() not in PROXY_SCHEMES:
            raise PydanticCustomError("proxy_url", "Proxy server should be an http, https or socks5 URL")
        return value

    def to_playwright(self) -> dict[str, str]:
        payload = {"server": self.server}
        if self.username is not None:
            payload["username"] = self.username
        if self.password is not None:
            payload["password"] = self.password
        return payload


class Viewport(_WireModel):
    width: Annotated[int, BeforeValidator(_reject_bool), Field(gt=0, le=MAX_VIEWPORT_PX)]
    height: Annotated[int, BeforeValidator(_reject_bool), Field(gt=0, le=MAX_VIEWPORT_PX)]


class RunRequest(_WireModel):
    """Validated, immutable browser job.

    Validation context keys: ``max_actions``, ``default_timeout_ms``,
    ``allow_domains`` and ``allow_evaluate``.
    """

    timeout_ms: Annotated[int, BeforeValidator(_reject_bool), Field(gt=0, le=MAX_JOB_TIMEOUT_MS)]
    actions: tuple[Action, ...]
    session: Annotated[Optional[SessionName], BeforeValidator(_blank_to_none)] = None
    proxy: Annotated[Optional[ProxySettings], BeforeValidator(_blank_to_none)] = None
    block_resources: Annotated[
        tuple[BlockableResource, ...], BeforeValidator(_blank_to_empty), AfterValidator(_dedupe)
    ] = ()
    user_agent: Annotated[Optional[UserAgent], BeforeValidator(_blank_to_none)] = None
    viewport: Annotated[Optional[Viewport], BeforeValidator(_blank_to_none)] = None

    @model_validator(mode="before")
    @classmethod
    def normalize_payload(cls, data: Any, info: ValidationInfo) -> Any:
        if not isinstance(data, Mapping):
            return data
        context = info.context or {}
        payload = dict(data)

        raw_actions = _resolve_actions_array(payload)
        if not raw_actions:
            raise InvalidFieldError("actions", 'Send at least 1 action in "actions".')
        max_actions = context.get("max_actions")
        if max_actions is not None and len(raw_actions) > max_actions:
            raise InvalidFieldError("actions", f"Limit exceeded: at most {max_actions} actions per job.")

        payload.pop("commands", None)
        payload["actions"] = [
            _normalize_action_object(raw, f"actions[{index}]") for index, raw in enumerate(raw_actions)
        ]
        if _is_unset(payload.get("timeoutMs")) and "default_timeout_ms" in context:
            payload["timeoutMs"] = context["default_timeout_ms"]
        return payload


_SESSION_ADAPTER: Final = TypeAdapter(SessionName)


def validate_session_name(value: Any, field_name: str = "session") -> str:
    try:
        return _SESSION_ADAPTER.validate_python(value)
    except ValidationError:
        raise InvalidFieldError(
            field_name,
            f'Field "{field_name}" is invalid. Use only letters, digits, dot, underscore and hyphen (max 64).',
        ) from None


def parse_run_request(
    body: Any,
    *,
    max_actions: int,
    default_timeout_ms: int,
    allow_domains: Iterable[str] = (),
    allow_evaluate: bool = True,
) -> RunRequest:
    """Validate an untrusted payload into a :class:`RunRequest`.

    Validation runs to completion before anything is executed; the first
    problem found is raised as :class:`InvalidFieldError`.
    """

    context = {
        "max_actions": max_actions,
        "default_timeout_ms": default_timeout_ms,
        "allow_domains": tuple(allow_domains),
        "allow_evaluate": allow_evaluate,
    }
    try:
        return RunRequest.model_validate(body, context=context)
    except ValidationError as exc:
        raise invalid_field_from(exc) from None


def invalid_field_from(exc: ValidationError) -> InvalidFieldError:
    """Turn the first pydantic error into an :class:`InvalidFieldError` with a dotted path."""

    error = exc.errors(include_url=False)[0]
    error_type = error["type"]
    parts = list(error["loc"])
    # Discriminated unions put the tag after the list index
    if len(parts) >= 3 and parts[0] == "actions" and isinstance(parts[1], int) and parts[2] in ACTION_NAMES:
        del parts[2]
    if error_type in ("union_tag_invalid", "union_tag_not_found"):
        parts.append("action")
    if error_type == "extra_forbidden" and len(parts) == 1:
        parts.insert(0, "body")
    field = loc_to_path(parts) or "body"
    reason = error_type if error_type in _REASON_CODES else "invalid"
    return InvalidFieldError(field, f'Field "{field}" is invalid: {error["msg"]}.', reason=reason)


def _resolve_actions_array(payload: Mapping[str, Any]) -> list[Any]:
    actions = payload.get("actions")
    commands = payload.get("commands")
    if isinstance(actions, (list, tuple)) and isinstance(commands, (list, tuple)):
        raise InvalidFieldError("actions", 'Send either "actions" or "commands", not both.')
    if isinstance(actions, (list, tuple)):
        return list(actions)
    if isinstance(commands, (list, tuple)):
        return list(commands)
    raise InvalidFieldError("actions", 'Field "actions" must be an array.')


def _normalize_action_object(value: Any, path: str) -> Any:
    """Rewrite the ``{"<action>": {...}}`` short form into the canonical one."""

    if not isinstance(value, Mapping):
        # Left to the model so the error carries the item path
        return value
    if "action" in value:
        if not isinstance(value["action"], str):
            raise InvalidFieldError(f"{path}.action", f'Field "{path}.action" must be a string.')
        return dict(value)

    if len(value) != 1:
        raise InvalidFieldError(path, f'{path} must contain "action" or use the short form {{"<action>": {{...}}}}.')

    (short_name, nested), = value.items()
    if short_name not in ACTION_NAMES:
        raise InvalidFieldError(path, f'{path} short action is not supported: "{short_name}".')
    if not isinstance(nested, Mapping):
        raise InvalidFieldError(f"{path}.{short_name}", f'Field "{path}.{short_name}" must be an object.')
    if "action" in nested:
        raise InvalidFieldError(f"{path}.{short_name}.action", f'{path}.{short_name} must not repeat "action".')
    return {"action": short_name, **nested}
