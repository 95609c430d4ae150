from __future__ import annotations

from pathlib import Path

import pytest

from jobworker.actions import (
    Click,
    Evaluate,
    Fill,
    Goto,
    ProxySettings,
    Screenshot,
    SaveStorage,
    Viewport,
    WaitFor,
    parse_run_request,
    validate_session_name,
)
from jobworker.errors import InvalidFieldError

OPTIONS = {"max_actions": 5, "default_timeout_ms": 60_000, "allow_domains": ()}


def _parse(body, **overrides):
    return parse_run_request(body, **{**OPTIONS, **overrides})


def _field_error(body, **overrides) -> InvalidFieldError:
    with pytest.raises(InvalidFieldError) as excinfo:
        _parse(body, **overrides)
    assert excinfo.value.status_code == 400
    assert excinfo.value.details["kind"] == "InvalidField"
    return excinfo.value


def test_canonical_and_shorthand_forms_normalize_identically() -> None:
    canonical = _parse(
        {
            "actions": [
                {"action": "goto", "url": "https://example.com", "waitUntil": "load"},
                {"action": "click", "selector": " #go ", "delayMs": 50},
            ]
        }
    )
    shorthand = _parse(
        {
            "actions": [
                {"goto": {"url": "https://example.com", "waitUntil": "load"}},
                {"click": {"selector": "#go", "delayMs": 50}},
            ]
        }
    )

    assert canonical == shorthand
    assert canonical.actions == (Goto(url="https://example.com", wait_until="load"), Click(selector="#go", delay_ms=50))
    assert canonical.timeout_ms == 60_000


def test_commands_alias_is_accepted() -> None:
    request = _parse({"commands": [{"action": "screenshot", "name": "home", "fullPage": True}]})
    assert request.actions == (Screenshot(label="home", full_page=True),)


def test_actions_and_commands_together_are_rejected() -> None:
    error = _field_error({"actions": [{"action": "goto", "url": "https://a.test"}], "commands": []})
    assert error.field == "actions"


def test_missing_action_list_is_rejected() -> None:
    assert _field_error({"actions": "nope"}).field == "actions"
    assert _field_error({"actions": []}).field == "actions"


def test_too_many_actions_fails_before_any_directory_exists(tmp_path: Path) -> None:
    body = {"actions": [{"action": "waitFor", "timeoutMs": 10}] * 6}
    error = _field_error(body)
    assert error.field == "actions"
    assert list(tmp_path.iterdir()) == []


def test_unknown_action_and_unknown_field_are_rejected() -> None:
    assert _field_error({"actions": [{"action": "scroll"}]}).field == "actions[0].action"
    error = _field_error({"actions": [{"action": "click", "selector": "#a", "force": True}]})
    assert error.field == "actions[0].force"


def test_unknown_top_level_key_is_rejected() -> None:
    assert _field_error({"actions": [{"action": "waitFor", "timeoutMs": 5}], "retries": 3}).field == "body.retries"


def test_shorthand_requires_exactly_one_key() -> None:
    error = _field_error({"actions": [{"goto": {"url": "https://a.test"}, "click": {"selector": "#a"}}]})
    assert error.field == "actions[0]"


def test_field_path_points_at_offending_step() -> None:
    body = {
        "actions": [
            {"action": "goto", "url": "https://example.com"},
            {"action": "fill", "selector": "#q", "text": ""},
            {"action": "press", "selector": "   ", "key": "Enter"},
        ]
    }
    assert _field_error(body).field == "actions[2].selector"


def test_fill_text_is_kept_verbatim() -> None:
    request = _parse({"actions": [{"action": "fill", "selector": " #q ", "text": "  spaced  "}]})
    assert request.actions == (Fill(selector="#q", text="  spaced  "),)


def test_url_must_be_http_and_allowed() -> None:
    assert _field_error({"actions": [{"action": "goto", "url": "ftp://example.com"}]}).field == "actions[0].url"
    error = _field_error(
        {"actions": [{"action": "uploadFromUrl", "selector": "input", "url": "https://evil.test/a.png"}]},
        allow_domains=("example.com",),
    )
    assert error.reason == "domain_not_allowed"
    assert error.field == "actions[0].url"


@pytest.mark.parametrize(
    ("body", "field"),
    [
        ({"timeoutMs": True, "actions": [{"action": "waitFor", "timeoutMs": 5}]}, "timeoutMs"),
        ({"timeoutMs": 600_001, "actions": [{"action": "waitFor", "timeoutMs": 5}]}, "timeoutMs"),
        ({"actions": [{"action": "waitFor", "timeoutMs": 120_001}]}, "actions[0].timeoutMs"),
        ({"actions": [{"action": "click", "selector": "#a", "delayMs": 10_001}]}, "actions[0].delayMs"),
        ({"actions": [{"action": "click", "selector": "#a", "delayMs": 0}]}, "actions[0].delayMs"),
    ],
)
def test_integer_ceilings_and_booleans(body, field) -> None:
    assert _field_error(body).field == field


def test_enum_fields_are_closed() -> None:
    assert _field_error({"actions": [{"action": "goto", "url": "https://a.test", "waitUntil": "idle"}]}).field == (
        "actions[0].waitUntil"
    )
    assert _field_error({"actions": [{"action": "waitFor", "selector": "#a", "state": "gone"}]}).field == (
        "actions[0].state"
    )


def test_wait_for_needs_selector_or_timeout() -> None:
    assert _field_error({"actions": [{"action": "waitFor", "state": "visible"}]}).field == "actions[0]"
    request = _parse({"actions": [{"action": "waitFor", "selector": "#ready", "state": ""}]})
    assert request.actions == (WaitFor(selector="#ready", state=None, timeout_ms=None),)


def test_session_pattern_is_enforced() -> None:
    assert _field_error({"session": "../etc", "actions": [{"action": "waitFor", "timeoutMs": 5}]}).field == "session"
    assert _field_error({"session": "x" * 65, "actions": [{"action": "waitFor", "timeoutMs": 5}]}).field == "session"
    assert validate_session_name("x-main_1.v2") == "x-main_1.v2"


def test_save_storage_session_is_validated() -> None:
    error = _field_error({"actions": [{"action": "saveStorage", "session": "a/b"}]})
    assert error.field == "actions[0].session"
    request = _parse({"actions": [{"saveStorage": {"session": "acct"}}]})
    assert request.actions == (SaveStorage(session="acct"),)


def test_request_options_are_parsed() -> None:
    request = _parse(
        {
            "session": "acct",
            "timeoutMs": "5000",
            "proxy": {"server": "socks5://proxy.test:1080", "username": "u", "password": "p"},
            "blockResources": ["image", "font", "image"],
            "userAgent": "jobworker-test",
            "viewport": {"width": 390, "height": 844},
            "actions": [{"action": "evaluate", "script": "(x) => x * 2", "arg": 21, "key": "answer"}],
        }
    )
    assert request.session == "acct"
    assert request.timeout_ms == 5000
    assert request.proxy == ProxySettings(server="socks5://proxy.test:1080", username="u", password="p")
    assert request.proxy.to_playwright() == {"server": "socks5://proxy.test:1080", "username": "u", "password": "p"}
    assert request.block_resources == ("image", "font")
    assert request.user_agent == "jobworker-test"
    assert request.viewport == Viewport(width=390, height=844)
    assert request.actions == (Evaluate(script="(x) => x * 2", arg=21, key="answer"),)


@pytest.mark.parametrize(
    ("patch", "field"),
    [
        ({"proxy": {"server": "ftp://proxy.test"}}, "proxy.server"),
        ({"proxy": {"server": "http://proxy.test", "bypass": "*"}}, "proxy.bypass"),
        ({"blockResources": ["script"]}, "blockResources[0]"),
        ({"viewport": {"width": 0, "height": 100}}, "viewport.width"),
        ({"viewport": {"width": 100}}, "viewport.height"),
        ({"userAgent": "x" * 513}, "userAgent"),
    ],
)
def test_request_options_are_validated(patch, field) -> None:
    body = {"actions": [{"action": "waitFor", "timeoutMs": 5}], **patch}
    assert _field_error(body).field == field


def test_evaluate_can_be_disabled() -> None:
    body = {"actions": [{"action": "evaluate", "script": "1 + 1"}]}
    assert _field_error(body, allow_evaluate=False).field == "actions[0].action"


def test_validation_is_idempotent() -> None:
    body = {
        "session": "acct",
        "timeoutMs": 9000,
        "actions": [
            {"action": "goto", "url": "https://example.com"},
            {"extractAttr": {"selector": "a", "attr": "href", "key": "link"}},
            {"action": "screenshot", "name": "home"},
        ],
    }
    first = _parse(body)
    second = _parse(body)
    assert first == second
    assert first is not second


def test_error_message_names_the_field() -> None:
    error = _field_error({"actions": [{"action": "press", "selector": "#q"}]})
    assert error.field == "actions[0].key"
    assert error.message.startswith('Field "actions[0].key" is invalid:')
    assert error.details == {"field": "actions[0].key", "kind": "InvalidField", "reason": "invalid"}


def test_body_must_be_an_object() -> None:
    assert _field_error([{"action": "goto", "url": "https://a.test"}]).field == "body"


def test_url_without_host_is_malformed() -> None:
    error = _field_error({"actions": [{"action": "goto", "url": "https://"}]})
    assert error.field == "actions[0].url"
    assert error.reason == "malformed_url"


def test_shorthand_must_not_repeat_action() -> None:
    error = _field_error({"actions": [{"goto": {"action": "goto", "url": "https://a.test"}}]})
    assert error.field == "actions[0].goto.action"
    assert _field_error({"actions": [{"scroll": {"y": 10}}]}).field == "actions[0]"


def test_full_page_must_be_boolean() -> None:
    error = _field_error({"actions": [{"action": "screenshot", "name": "home", "fullPage": "yes"}]})
    assert error.field == "actions[0].fullPage"


def test_allowlist_accepts_subdomains() -> None:
    request = _parse(
        {"actions": [{"action": "goto", "url": "https://shop.example.com/cart"}]},
        allow_domains=("example.com",),
    )
    assert request.actions == (Goto(url="https://shop.example.com/cart"),)
    assert request.actions[0].name == "goto"
