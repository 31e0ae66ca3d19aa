"""JSON snapshot persistence for reputation, credibility, trend and queue state."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Generic, TypeVar

from pydantic import BaseModel

from newswire.models import (
    CredibilitySnapshot,
    QueueSnapshot,
    ReputationSnapshot,
    TrendSnapshot,
    utcnow,
)

logger = logging.getLogger(__name__)
T = TypeVar("T", bound=BaseModel)


class SnapshotFile(Generic[T]):
    """One pydantic model stored as pretty JSON at a fixed path."""

    def __init__(self, path: str | Path, model: type[T]) -> None:
        self._path = Path(path)
        self._model = model
        self._write_lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> T:
        if not self._path.exists():
            return self._model()
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            return self._model.model_validate(raw)
        except (OSError, ValueError):
            logger.warning("Ignoring unreadable snapshot %s", self._path, exc_info=True)
            return self._model()

    def save(self, data: T) -> None:
        if hasattr(data, "saved_at"):
            data.saved_at = utcnow()
        payload = data.model_dump_json(indent=2) + "\n"
        with self._write_lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp.write_text(payload, encoding="utf-8")
            tmp.replace(self._path)


class StateDirectory:
    """Snapshot files under ``STATE_DIR``."""

    def __init__(self, root: str | Path) -> None:
        root = Path(root)
        self.reputation = SnapshotFile(root / "reputation.json", ReputationSnapshot)
        self.credibility = SnapshotFile(root / "credibility.json", CredibilitySnapshot)
        self.trends = SnapshotFile(root / "trends.json", TrendSnapshot)
        self.queue = SnapshotFile(root / "queue.json", QueueSnapshot)
