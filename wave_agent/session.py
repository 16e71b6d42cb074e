"""Session persistence: save and load conversation history."""

import json
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import CONFIG_DIR
from .errors import SessionNotFoundError
from .logger import get_logger
from .messages import Session

_log = get_logger(__name__)

SESSIONS_DIR = CONFIG_DIR / "sessions"


class SessionStore:
    """One JSON file per session under ``sessions_dir``."""

    def __init__(self, sessions_dir: Optional[Path] = None):
        self.sessions_dir = Path(sessions_dir) if sessions_dir else SESSIONS_DIR

    def _ensure_dir(self):
        self.sessions_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, session_id: str) -> Path:
        safe_id = "".join(c if c.isalnum() or c in "-_" else "_" for c in session_id)
        return self.sessions_dir / f"{safe_id}.json"

    def save(self, session: Session) -> Path:
        """Write the session atomically; keeps the original ``created_at``."""
        self._ensure_dir()
        filepath = self._path(session.id)
        now = time.strftime("%Y-%m-%d %H:%M:%S")

        created_at = now
        if filepath.exists():
            try:
                with open(filepath, "r", encoding="utf-8") as f:
                    created_at = json.load(f).get("created_at", now)
            except (json.JSONDecodeError, OSError):
                pass

        data = session.to_dict()
        data["created_at"] = created_at
        data["updated_at"] = now

        tmp = filepath.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp, filepath)
        _log.debug("Saved session %s (%d messages)", session.id, len(session.messages))
        return filepath

    def load(self, session_id: str) -> Session:
        """Load a session by id or unique id prefix."""
        filepath = self._path(session_id)
        if not filepath.exists() and self.sessions_dir.exists():
            candidates = [p for p in self.sessions_dir.glob("*.json") if p.stem.startswith(session_id)]
            if len(candidates) == 1:
                filepath = candidates[0]
        if not filepath.exists():
            raise SessionNotFoundError(session_id)

        try:
            with open(filepath, "r", encoding="utf-8") as f:
                return Session.from_dict(json.load(f))
        except (json.JSONDecodeError, KeyError, OSError) as e:
            _log.error("Failed to load session %s: %s", filepath, e)
            raise SessionNotFoundError(session_id) from e

    def list(self, limit: int = 10, workdir: Optional[str] = None) -> List[Dict[str, Any]]:
        """Summaries of recent sessions, newest first."""
        if not self.sessions_dir.exists():
            return []

        sessions = []
        for filepath in sorted(self.sessions_dir.glob("*.json"),
                               key=lambda p: p.stat().st_mtime,
                               reverse=True):
            try:
                with open(filepath, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (json.JSONDecodeError, OSError):
                continue
            if workdir is not None and data.get("workdir") != workdir:
                continue
            sessions.append({
                "id": data.get("id", filepath.stem),
                "workdir": data.get("workdir"),
                "created_at": data.get("created_at", "unknown"),
                "updated_at": data.get("updated_at", "unknown"),
                "messages": len(data.get("messages", [])),
                "total_tokens": data.get("total_tokens", 0),
            })
            if len(sessions) >= limit:
                break
        return sessions

    def latest(self, workdir: Optional[str] = None) -> Optional[Session]:
        """Most recently saved session, optionally restricted to ``workdir``."""
        recent = self.list(limit=1, workdir=workdir)
        if not recent:
            return None
        return self.load(recent[0]["id"])

    def delete(self, session_id: str) -> bool:
        filepath = self._path(session_id)
        if filepath.exists():
            filepath.unlink()
            return True
        return False
