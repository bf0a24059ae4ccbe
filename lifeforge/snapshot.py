from __future__ import annotations

import json
import logging
from pathlib import Path

from lifeforge.errors import LifeForgeError
from lifeforge.state import GameState

logger = logging.getLogger(__name__)


class SnapshotStore:
    """Keeps the whole GameState of one user as a single JSON file per name."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def _path(self, name: str) -> Path:
        return self.directory / f"{name}.json"

    def load(self, name: str) -> GameState | None:
        path = self._path(name)
        if not path.exists():
            return None
        try:
            return GameState.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (ValueError, KeyError, TypeError, LifeForgeError) as exc:
            logger.warning("Discarding unreadable snapshot %s: %s", path, exc)
            return None

    def save(self, name: str, state: GameState) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(name)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(state.to_dict()), encoding="utf-8")
        tmp.replace(path)

    def clear(self, name: str) -> None:
        self._path(name).unlink(missing_ok=True)
