"""
On-disk action state.

One JSON document per action id under ``<root>/<action-name>/<id>.json``.
Unknown values are encoded explicitly so a planned state survives a round
trip.  Writes go to a temp file in the same directory and are renamed into
place.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from outpost.config.settings import OutpostSettings, get_settings
from outpost.values import dumps_wire, loads_wire

LOGGER = logging.getLogger(__name__)

STATE_VERSION = 1


def _timestamp() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def _safe_token(value: str) -> str:
    token = re.sub(r"[^A-Za-z0-9_.-]+", "_", value.strip())
    return token or "action"


class StateStore:
    def __init__(
        self,
        root: Optional[os.PathLike] = None,
        *,
        settings: Optional[OutpostSettings] = None,
    ) -> None:
        if root is None:
            root = (settings or get_settings()).state_dir
        self.root = Path(root).expanduser().resolve()

    @classmethod
    def from_settings(cls, settings: OutpostSettings) -> "StateStore":
        return cls(settings.state_dir)

    def path(self, action: str, action_id: str) -> Path:
        return self.root / _safe_token(action) / f"{_safe_token(action_id)}.json"

    def load(self, action: str, action_id: str) -> Optional[Dict[str, Any]]:
        """Return the stored state or ``None`` when nothing was saved."""
        path = self.path(action, action_id)
        if not path.exists():
            return None
        try:
            document = loads_wire(path.read_text(encoding="utf-8"))
        except ValueError as exc:
            LOGGER.warning("Failed to read state file %s: %s", path, exc)
            return None
        if not isinstance(document, Mapping) or not isinstance(document.get("state"), Mapping):
            LOGGER.warning("Ignoring malformed state file %s", path)
            return None
        return dict(document["state"])

    def save(self, action: str, action_id: str, state: Mapping[str, Any]) -> Path:
        path = self.path(action, action_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = dumps_wire(
            {
                "version": STATE_VERSION,
                "action": action,
                "id": action_id,
                "updated_at": _timestamp(),
                "state": dict(state),
            },
            indent=2,
            ensure_ascii=False,
        )
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}-", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        LOGGER.debug("Saved %s state %s", action, action_id)
        return path

    def delete(self, action: str, action_id: str) -> bool:
        path = self.path(action, action_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def list(self, action: str) -> List[str]:
        directory = self.root / _safe_token(action)
        if not directory.exists():
            return []
        ids: List[str] = []
        for path in sorted(directory.glob("*.json")):
            try:
                document = json.loads(path.read_text(encoding="utf-8"))
            except ValueError:
                LOGGER.warning("Skipping unreadable state file %s", path)
                continue
            ids.append(str(document.get("id") or path.stem))
        return ids


__all__ = ["StateStore"]
