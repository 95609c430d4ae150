from __future__ import annotations

import json
from pathlib import Path

import pytest

from jobworker.errors import InvalidFieldError
from jobworker.sessions import SessionStore, build_session_store


def test_resolve_state_path_stays_inside_root(tmp_path: Path) -> None:
    store = SessionStore(tmp_path / "states")
    path = store.resolve_state_path("acct.main")
    assert path.name == "acct.main.json"
    assert (tmp_path / "states").resolve() in path.parents


@pytest.mark.parametrize("session", ["../x", "a/b", "", "x" * 65, "名前"])
def test_resolve_state_path_revalidates_session(tmp_path: Path, session: str) -> None:
    store = SessionStore(tmp_path)
    with pytest.raises(InvalidFieldError):
        store.resolve_state_path(session)


def test_dotdot_lookalike_session_still_resolves_inside_root(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    path = store.resolve_state_path("...")
    assert path.parent == tmp_path.resolve()


def test_persist_writes_pretty_json_and_replaces_atomically(tmp_path: Path) -> None:
    store = build_session_store(tmp_path / "states")
    assert not store.exists("acct")

    first = store.persist("acct", {"cookies": [{"name": "sid", "value": "1"}], "origins": []})
    second = store.persist("acct", {"cookies": [], "origins": []})

    assert first == second
    assert store.exists("acct")
    raw = store.read_bytes("acct").decode("utf-8")
    assert raw.endswith("\n")
    assert raw == json.dumps({"cookies": [], "origins": []}, indent=2) + "\n"
    assert sorted(p.name for p in (tmp_path / "states").iterdir()) == ["acct.json"]
