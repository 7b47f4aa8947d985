"""On-disk snapshot of all task states."""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Any

from odm_node.taskqueue.errors import PersistenceError

SNAPSHOT_VERSION = 1


class TaskSnapshot:
    """Reads and atomically writes the serialized task collection."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._write_lock = threading.Lock()

    def write(self, entries: list[dict[str, Any]]) -> None:
        payload = {"version": SNAPSHOT_VERSION, "tasks": entries}
        partial = self.path.with_name(f"{self.path.name}.partial")
        try:
            with self._write_lock:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                partial.write_text(json.dumps(payload, ensure_ascii=False, indent=2), "utf-8")
                os.replace(partial, self.path)
        except (OSError, TypeError, ValueError) as error:
            raise PersistenceError(f"Cannot write task snapshot {self.path}: {error}") from error

    def read(self) -> list[Any]:
        """Return serialized tasks; a missing file yields an empty list."""

        if not self.path.exists():
            return []
        try:
            payload = json.loads(self.path.read_text("utf-8"))
        except (OSError, ValueError) as error:
            raise PersistenceError(f"Cannot read task snapshot {self.path}: {error}") from error
        if not isinstance(payload, dict) or not isinstance(payload.get("tasks"), list):
            raise PersistenceError(f"Unexpected task snapshot layout in {self.path}")
        return payload["tasks"]
