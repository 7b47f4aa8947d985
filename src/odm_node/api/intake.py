"""Task intake: turn an upload request into a registered task."""

from __future__ import annotations

import logging
import re
import shutil
import uuid
import zipfile
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO

import httpx

from odm_node.taskqueue.errors import ValidationError
from odm_node.taskqueue.manager import TaskManager
from odm_node.taskqueue.models import TaskOption
from odm_node.taskqueue.options import OptionValidator
from odm_node.taskqueue.task import Task
from odm_node.taskqueue.workdir import TaskDirectories

logger = logging.getLogger(__name__)

USER_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
ZIP_URL_ARCHIVE_NAME = "zipurl.zip"


@dataclass(slots=True)
class UploadedFile:
    """One uploaded file stream with its client-side name."""

    filename: str
    stream: BinaryIO


@dataclass(slots=True)
class IntakeRequest:
    """Everything a client sends to create a task."""

    files: list[UploadedFile] = field(default_factory=list)
    name: str | None = None
    options: str | list[object] | None = None
    webhook: str | None = None
    skip_post_processing: bool = False
    zip_url: str | None = None
    set_uuid: str | None = None


@dataclass(slots=True)
class IntakeContext:
    """State shared by intake steps."""

    request: IntakeRequest
    task_id: str
    upload_dir: Path
    options: list[TaskOption] = field(default_factory=list)
    task_dir_created: bool = False
    task: Task | None = None


IntakeStep = Callable[[IntakeContext], None]


class TaskIntake:
    """Runs the fallible intake steps in order, stopping at the first failure."""

    def __init__(
        self,
        *,
        manager: TaskManager,
        validator: OptionValidator,
        directories: TaskDirectories,
        max_images: int = 0,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.manager = manager
        self.validator = validator
        self.directories = directories
        self.max_images = max_images
        self._http = http_client or httpx.Client(
            timeout=httpx.Timeout(120.0, connect=10.0),
            follow_redirects=True,
        )

    def close(self) -> None:
        self._http.close()

    def submit(self, request: IntakeRequest) -> Task:
        task_id = self._resolve_task_id(request.set_uuid)
        if not request.files and not request.zip_url:
            raise ValidationError("Need at least 1 file or a zip file url.")
        if self.max_images and len(request.files) > self.max_images:
            raise ValidationError(
                f"{len(request.files)} images uploaded, "
                f"but this node can only process up to {self.max_images}.",
            )

        steps: list[IntakeStep] = [
            self._filter_options,
            self._save_uploads,
            self._download_zip,
            self._materialize_task_dir,
            self._extract_archives,
            self._move_gcp_files,
            self._create_task,
        ]
        with self._upload_dir(task_id) as upload_dir:
            context = IntakeContext(request=request, task_id=task_id, upload_dir=upload_dir)
            try:
                for step in steps:
                    step(context)
            except Exception:
                if context.task_dir_created:
                    self.directories.remove(task_id)
                raise

        if context.task is None:
            raise ValidationError(f"Task {task_id} was not created.")
        self.manager.add_new(context.task)
        return context.task

    def _resolve_task_id(self, set_uuid: str | None) -> str:
        if not set_uuid:
            return str(uuid.uuid4())
        candidate = set_uuid.strip()
        if USER_UUID_PATTERN.match(candidate) and self.manager.find(candidate) is None:
            return candidate
        raise ValidationError(f"Invalid set-uuid: {set_uuid}")

    @contextmanager
    def _upload_dir(self, task_id: str) -> Iterator[Path]:
        upload_dir = self.directories.upload_dir(task_id)
        upload_dir.mkdir(parents=True, exist_ok=True)
        try:
            yield upload_dir
        finally:
            if upload_dir.exists():
                shutil.rmtree(upload_dir, ignore_errors=True)

    # -- steps -----------------------------------------------------------------

    def _filter_options(self, context: IntakeContext) -> None:
        context.options = self.validator.filter_options(context.request.options)

    def _save_uploads(self, context: IntakeContext) -> None:
        for upload in context.request.files:
            filename = Path(upload.filename or "").name
            if not filename:
                raise ValidationError("Uploaded file has no name.")
            with (context.upload_dir / filename).open("wb") as target:
                shutil.copyfileobj(upload.stream, target)

    def _download_zip(self, context: IntakeContext) -> None:
        url = context.request.zip_url
        if not url:
            return
        target = context.upload_dir / ZIP_URL_ARCHIVE_NAME
        try:
            with self._http.stream("GET", url) as response, target.open("wb") as handle:
                response.raise_for_status()
                for chunk in response.iter_bytes():
                    handle.write(chunk)
        except httpx.HTTPError as error:
            raise ValidationError(f"Cannot download {url}: {error}") from error
        logger.info("Downloaded %s for task %s", url, context.task_id)

    def _materialize_task_dir(self, context: IntakeContext) -> None:
        task_dir = self.directories.task_dir(context.task_id)
        if task_dir.exists():
            raise ValidationError(f"Directory exists (should not have happened): {task_dir}")
        task_dir.mkdir(parents=True)
        context.task_dir_created = True
        self.directories.gcp_dir(context.task_id).mkdir()
        shutil.move(str(context.upload_dir), str(self.directories.images_dir(context.task_id)))

    def _extract_archives(self, context: IntakeContext) -> None:
        images_dir = self.directories.images_dir(context.task_id)
        for archive in sorted(images_dir.glob("*")):
            if archive.suffix.lower() != ".zip" or not archive.is_file():
                continue
            try:
                with zipfile.ZipFile(archive) as bundle:
                    members = [info for info in bundle.infolist() if not info.is_dir()]
                    if self.max_images and len(members) > self.max_images:
                        raise ValidationError(
                            f"{len(members)} images uploaded, "
                            f"but this node can only process up to {self.max_images}.",
                        )
                    for member in members:
                        _extract_flat(bundle, member, images_dir)
            except zipfile.BadZipFile as error:
                raise ValidationError(f"Extract error: {archive.name}: {error}") from error
            archive.unlink()
            logger.info("Extracted %d entries from %s", len(members), archive.name)

    def _move_gcp_files(self, context: IntakeContext) -> None:
        images_dir = self.directories.images_dir(context.task_id)
        gcp_dir = self.directories.gcp_dir(context.task_id)
        for entry in sorted(images_dir.glob("*")):
            if entry.is_file() and entry.suffix.lower() == ".txt":
                shutil.move(str(entry), str(gcp_dir / entry.name))

    def _create_task(self, context: IntakeContext) -> None:
        request = context.request
        context.task = Task.create(
            task_id=context.task_id,
            directories=self.directories,
            name=request.name,
            options=context.options,
            webhook=request.webhook,
            skip_post_processing=request.skip_post_processing,
        )


def _extract_flat(bundle: zipfile.ZipFile, member: zipfile.ZipInfo, target_dir: Path) -> None:
    filename = Path(member.filename).name
    if not filename or filename.startswith("."):
        return
    with bundle.open(member) as source, (target_dir / filename).open("wb") as target:
        shutil.copyfileobj(source, target)
