"""Filesystem store for persisted browser storage states (cookies + origins)."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Mapping

from jobworker.actions import validate_session_name
from jobworker.paths import resolve_inside_root

__all__ = ["SessionStore", "build_session_store"]

LOGGER = logging.getLogger(__name__)


class SessionStore:
    """Map session ids to ``<root>/<session>.json`` files.

    The stored blob is opaque: it is written as pretty JSON and handed back to
    the browser context untouched.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def resolve_state_path(self, session: str) -> Path:
        name = validate_session_name(session, "session")
        return resolve_inside_root(self.root, f"{name}.json", "session")

    def exists(self, session: str) -> bool:
        return self.resolve_state_path(session).is_file()

    def persist(self, session: str, state: Mapping[str, Any]) -> Path:
        """Atomically replace the stored state for ``session``."""

        path = self.resolve_state_path(session)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(state, indent=2, ensure_ascii=False) + "\n"

        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        LOGGER.debug("Persisted storage state for session %s at %s", session, path)
        return path

    def read_bytes(self, session: str) -> bytes:
        return self.resolve_state_path(session).read_bytes()


def build_session_store(root: Path) -> SessionStore:
    store = SessionStore(root)
    store.root.mkdir(parents=True, exist_ok=True)
    return store
