"""Download artifacts of completed tasks."""

from __future__ import annotations

import logging
import os
import threading
import uuid
import zipfile
from collections.abc import Callable
from pathlib import Path

from odm_node.taskqueue.workdir import TaskDirectories

logger = logging.getLogger(__name__)

ARCHIVE_NAME = "all.zip"

BASE_OUTPUT_DIRS = (
    "odm_orthophoto",
    "odm_georeferencing",
    "odm_texturing",
    "odm_dem",
    "odm_report",
    "odm_meshing",
)

DERIVATIVE_OUTPUT_DIRS = (
    "orthophoto_tiles",
    "dsm_tiles",
    "dtm_tiles",
    "entwine_pointcloud",
    "potree_pointcloud",
    "3d_tiles",
)

NAMED_ASSETS = {
    "orthophoto.tif": Path("odm_orthophoto/odm_orthophoto.tif"),
    "dsm.tif": Path("odm_dem/dsm.tif"),
    "dtm.tif": Path("odm_dem/dtm.tif"),
    "georeferenced_model.laz": Path("odm_georeferencing/odm_georeferenced_model.laz"),
    "report.pdf": Path("odm_report/report.pdf"),
}


class AssetPackager:
    """Builds the cached ``all.zip`` archive and resolves named assets."""

    def __init__(self, directories: TaskDirectories) -> None:
        self.directories = directories
        self._build_lock = threading.Lock()

    @staticmethod
    def is_known_asset(asset_name: str) -> bool:
        return asset_name == ARCHIVE_NAME or asset_name in NAMED_ASSETS

    def archive_path(self, task_id: str) -> Path:
        return self.directories.task_dir(task_id) / ARCHIVE_NAME

    def build_archive(
        self,
        task_id: str,
        *,
        skip_post_processing: bool,
        is_current: Callable[[], bool] | None = None,
    ) -> Path | None:
        """Zip the task outputs once; later calls return the cached archive.

        ``is_current`` is consulted under the build lock right before the
        archive is published. When it answers ``False`` the freshly written
        zip belongs to an outdated run: it is discarded and ``None`` returned.
        """

        archive = self.archive_path(task_id)
        if archive.exists():
            return archive

        task_dir = self.directories.task_dir(task_id)
        if not task_dir.is_dir():
            raise FileNotFoundError(f"Task directory does not exist: {task_dir}")
        included = BASE_OUTPUT_DIRS
        if not skip_post_processing:
            included = BASE_OUTPUT_DIRS + DERIVATIVE_OUTPUT_DIRS

        partial = archive.with_name(f".{ARCHIVE_NAME}.{uuid.uuid4().hex}.partial")
        try:
            files = self._write_zip(task_dir, partial, included)
        except OSError:
            partial.unlink(missing_ok=True)
            raise

        with self._build_lock:
            if is_current is not None and not is_current():
                partial.unlink(missing_ok=True)
                logger.info("Discarded archive of an outdated run of task %s", task_id)
                return None
            if archive.exists():
                partial.unlink(missing_ok=True)
                return archive
            os.replace(partial, archive)

        logger.info("Packaged %d files into %s", files, archive)
        return archive

    def _write_zip(self, task_dir: Path, target: Path, included: tuple[str, ...]) -> int:
        files = 0
        with zipfile.ZipFile(target, "w", zipfile.ZIP_DEFLATED, allowZip64=True) as bundle:
            for dir_name in included:
                source = task_dir / dir_name
                if not source.is_dir():
                    continue
                for path in sorted(source.rglob("*")):
                    if path.is_file():
                        bundle.write(path, path.relative_to(task_dir).as_posix())
                        files += 1
        return files

    def resolve(self, task_id: str, asset_name: str) -> Path | None:
        if asset_name == ARCHIVE_NAME:
            candidate = self.archive_path(task_id)
        elif asset_name in NAMED_ASSETS:
            candidate = self.directories.task_dir(task_id) / NAMED_ASSETS[asset_name]
        else:
            return None
        return candidate if candidate.is_file() else None

    def invalidate(self, task_id: str) -> None:
        with self._build_lock:
            self.archive_path(task_id).unlink(missing_ok=True)
