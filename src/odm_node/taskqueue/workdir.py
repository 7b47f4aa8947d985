"""Per-task directory layout under the node data directory."""

from __future__ import annotations

import logging
import shutil
import time
import uuid
from pathlib import Path

logger = logging.getLogger(__name__)

IMAGES_DIR_NAME = "images"
GCP_DIR_NAME = "gcp"


class TaskDirectories:
    """Creates and removes the deterministic ``<data_dir>/<task_id>`` layout."""

    def __init__(self, data_dir: Path, tmp_dir: Path | None = None) -> None:
        self.data_dir = data_dir
        self.tmp_dir = tmp_dir or data_dir.parent / "tmp"

    def ensure_roots(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.tmp_dir.mkdir(parents=True, exist_ok=True)

    def task_dir(self, task_id: str) -> Path:
        return self.data_dir / task_id

    def images_dir(self, task_id: str) -> Path:
        return self.task_dir(task_id) / IMAGES_DIR_NAME

    def gcp_dir(self, task_id: str) -> Path:
        return self.task_dir(task_id) / GCP_DIR_NAME

    def upload_dir(self, task_id: str) -> Path:
        return self.tmp_dir / task_id

    def count_images(self, task_id: str) -> int:
        images_dir = self.images_dir(task_id)
        if not images_dir.is_dir():
            return 0
        return sum(
            1 for entry in images_dir.iterdir() if entry.is_file() and not entry.name.startswith(".")
        )

    def remove(self, task_id: str) -> None:
        """Delete the whole task tree; a missing tree is not an error."""

        task_dir = self.task_dir(task_id)
        if not task_dir.exists():
            return
        try:
            shutil.rmtree(task_dir)
        except OSError as error:
            logger.warning("Failed to delete %s: %s", task_dir, error)

    def orphaned_task_dirs(
        self,
        known_ids: set[str],
        older_than_seconds: float = 0.0,
    ) -> list[Path]:
        """Task-shaped directories owned by no task and untouched for ``older_than_seconds``."""

        if not self.data_dir.is_dir():
            return []
        cutoff = time.time() - older_than_seconds
        return [
            entry
            for entry in sorted(self.data_dir.iterdir())
            if entry.is_dir()
            and _is_uuid(entry.name)
            and entry.name not in known_ids
            and entry.stat().st_mtime <= cutoff
        ]

    def stale_upload_dirs(self, older_than_seconds: float) -> list[Path]:
        if not self.tmp_dir.is_dir():
            return []
        cutoff = time.time() - older_than_seconds
        return [
            entry
            for entry in sorted(self.tmp_dir.iterdir())
            if entry.is_dir() and entry.stat().st_mtime < cutoff
        ]


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True
