"""Task entity: one image set processed end to end by the pipeline."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from odm_node.taskqueue.assets import ARCHIVE_NAME, AssetPackager
from odm_node.taskqueue.backend import PipelineCommand, ProcessRunner, RunningProcess
from odm_node.taskqueue.errors import IllegalTransition, LaunchError, RuntimeFailure, ValidationError
from odm_node.taskqueue.models import TaskOption, TaskStatus, to_epoch_ms, utc_now
from odm_node.taskqueue.webhook import WebhookNotifier
from odm_node.taskqueue.workdir import TaskDirectories

logger = logging.getLogger(__name__)

TransitionListener = Callable[["Task", TaskStatus, TaskStatus], None]
FinishListener = Callable[["Task"], None]

RESTARTABLE_STATUSES = frozenset(
    {TaskStatus.CANCELED, TaskStatus.FAILED, TaskStatus.COMPLETED, TaskStatus.RUNNING},
)


@dataclass(slots=True)
class PipelineRuntime:
    """Collaborators a task needs once it is admitted by the manager."""

    runner: ProcessRunner
    packager: AssetPackager
    command: PipelineCommand
    notifier: WebhookNotifier | None = None
    max_output_lines: int = 0


@dataclass(slots=True)
class _RunAttempt:
    """One start-to-terminal execution; owns the live process handle."""

    generation: int
    process: RunningProcess | None = None
    thread: threading.Thread | None = None


class Task:
    """State, options, output log and artifacts of one processing job.

    All state changes happen under ``self._lock``. Once the task is bound to a
    manager the lock is the manager's own, so a task transition and the
    manager's queue bookkeeping are a single atomic step. Process spawning,
    output reading, packaging and webhooks run on the attempt thread without
    holding the lock.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        directories: TaskDirectories,
        name: str | None = None,
        options: Iterable[TaskOption] = (),
        webhook: str | None = None,
        skip_post_processing: bool = False,
        images_count: int = 0,
        date_created: datetime | None = None,
    ) -> None:
        self.id = task_id
        self.directories = directories
        self.date_created = date_created or utc_now()
        self.name = name or f"Task of {self.date_created.isoformat()}"
        self.webhook = webhook or None
        self.skip_post_processing = skip_post_processing
        self.images_count = images_count
        self.options: list[TaskOption] = list(options)
        self.processing_start: datetime | None = None
        self.processing_end: datetime | None = None
        self._status = TaskStatus.QUEUED
        self._output: list[str] = []
        self._dropped_lines = 0
        self._generation = 0
        self._attempt: _RunAttempt | None = None
        self._stopping: _RunAttempt | None = None
        self._lock: threading.RLock = threading.RLock()
        self._runtime: PipelineRuntime | None = None
        self._on_transition: TransitionListener | None = None
        self._on_finished: FinishListener | None = None

    @classmethod
    def create(  # noqa: PLR0913
        cls,
        *,
        task_id: str,
        directories: TaskDirectories,
        name: str | None = None,
        options: Iterable[TaskOption] = (),
        webhook: str | None = None,
        skip_post_processing: bool = False,
    ) -> Task:
        """New queued task over images already materialized in its directory."""

        images_count = directories.count_images(task_id)
        if images_count == 0:
            raise ValidationError(f"No images found for task {task_id}.")
        return cls(
            task_id=task_id,
            directories=directories,
            name=name,
            options=options,
            webhook=webhook,
            skip_post_processing=skip_post_processing,
            images_count=images_count,
        )

    def bind(
        self,
        *,
        runtime: PipelineRuntime,
        lock: threading.RLock,
        on_transition: TransitionListener | None = None,
        on_finished: FinishListener | None = None,
    ) -> None:
        """Attach manager collaborators; called once when the task is registered."""

        self._runtime = runtime
        self._lock = lock
        self._on_transition = on_transition
        self._on_finished = on_finished

    @property
    def status(self) -> TaskStatus:
        return self._status

    @property
    def task_dir(self) -> Path:
        return self.directories.task_dir(self.id)

    # -- lifecycle -------------------------------------------------------------

    def start(self) -> None:
        """Move ``QUEUED -> RUNNING`` and launch the pipeline; scheduler only."""

        with self._lock:
            if self._status != TaskStatus.QUEUED:
                raise IllegalTransition(f"Cannot start task {self.id} in state {self._status.name}")
            if self._runtime is None:
                raise IllegalTransition(f"Task {self.id} is not registered with a task manager")
            self._generation += 1
            attempt = _RunAttempt(generation=self._generation)
            self._attempt = attempt
            self.processing_start = utc_now()
            self.processing_end = None
            self._set_status(TaskStatus.RUNNING)
            thread = threading.Thread(
                target=self._run_attempt,
                args=(attempt,),
                daemon=True,
                name=f"task-{self.id[:8]}-{attempt.generation}",
            )
            attempt.thread = thread
            thread.start()
        logger.info("Task %s started (attempt %d)", self.id, attempt.generation)

    def cancel(self) -> bool:
        """Cancel a queued or running task; returns ``False`` when already terminal.

        A running task keeps its slot until its process tree is gone: the
        attempt is detached under the lock and its process killed outside it.
        Only then is ``CANCELED`` published, which frees the slot.
        """

        with self._lock:
            if self._status.is_terminal:
                return False
            if self._status == TaskStatus.QUEUED:
                self._set_status(TaskStatus.CANCELED)
                logger.info("Task %s canceled", self.id)
                return True
            if self._attempt is not None:
                self._generation += 1
                self._stopping = self._attempt
                self._attempt = None
            stopping = self._stopping
            process = stopping.process if stopping is not None else None

        if stopping is not None:
            self._stop_attempt(stopping, process)

        with self._lock:
            if self._status == TaskStatus.RUNNING and self._attempt is None:
                self._stopping = None
                self.processing_end = utc_now()
                self._set_status(TaskStatus.CANCELED)
        logger.info("Task %s canceled", self.id)
        return True

    def _stop_attempt(self, attempt: _RunAttempt, process: RunningProcess | None) -> None:
        if process is not None:
            process.kill()
        thread = attempt.thread
        if thread is None or thread is threading.current_thread():
            return
        # A process spawned after the detach is killed by the attempt thread itself.
        grace = self._runtime.runner.kill_grace_seconds if self._runtime is not None else 0.0
        thread.join(timeout=2 * grace + 1)
        if thread.is_alive():
            logger.debug("Task %s attempt %d is still winding down", self.id, attempt.generation)

    def restart(self, options: Iterable[TaskOption] | None = None) -> None:
        """Reset a finished or running task to ``QUEUED``, optionally with new options."""

        with self._lock:
            if self._status not in RESTARTABLE_STATUSES:
                raise IllegalTransition(
                    f"Cannot restart task {self.id} in state {self._status.name}",
                )
            runtime = self._runtime
        if runtime is None:
            raise IllegalTransition(f"Task {self.id} is not registered with a task manager")

        self.cancel()
        with self._lock:
            if not self._status.is_terminal:
                raise IllegalTransition(f"Task {self.id} was restarted concurrently")
            # Archive builds still in flight for the old outputs are now outdated.
            self._generation += 1
        runtime.packager.invalidate(self.id)

        with self._lock:
            if not self._status.is_terminal:
                raise IllegalTransition(f"Task {self.id} was restarted concurrently")
            self._output = []
            self._dropped_lines = 0
            self.processing_start = None
            self.processing_end = None
            if options is not None:
                self.options = list(options)
            self._set_status(TaskStatus.QUEUED)
        logger.info("Task %s restarted", self.id)

    def abort_attempt(self) -> None:
        """Kill the running process without recording a transition (node shutdown)."""

        with self._lock:
            if self._attempt is None:
                return
            process = self._attempt.process
            self._generation += 1
            self._attempt = None
        if process is not None:
            process.kill()

    # -- process events --------------------------------------------------------

    def on_output_line(self, line: str, *, generation: int | None = None) -> None:
        with self._lock:
            if not self._accepts_events(generation):
                return
            self._output.append(line)
            limit = self._runtime.max_output_lines if self._runtime is not None else 0
            if limit > 0 and len(self._output) > limit:
                overflow = len(self._output) - limit
                del self._output[:overflow]
                self._dropped_lines += overflow

    def on_process_exit(self, exit_code: int, *, generation: int | None = None) -> None:
        """Finalize the attempt: package on success, then record the terminal state."""

        with self._lock:
            if not self._accepts_events(generation):
                return
            runtime = self._runtime
            attempt_generation = self._generation

        status = TaskStatus.COMPLETED
        if exit_code != 0:
            status = TaskStatus.FAILED
            failure = RuntimeFailure(exit_code)
            logger.warning("Task %s failed: %s", self.id, failure)
            self.on_output_line(str(failure), generation=attempt_generation)
        elif runtime is not None:
            try:
                runtime.packager.build_archive(
                    self.id,
                    skip_post_processing=self.skip_post_processing,
                    is_current=lambda: self._is_current_attempt(attempt_generation),
                )
            except OSError as error:
                logger.warning("Task %s packaging failed: %s", self.id, error)
                self.on_output_line(f"Packaging failed: {error}", generation=attempt_generation)
                status = TaskStatus.FAILED

        self._finish(attempt_generation, status)

    def _finish(self, generation: int, status: TaskStatus) -> None:
        with self._lock:
            if not self._accepts_events(generation):
                return
            self.processing_end = utc_now()
            self._attempt = None
            self._set_status(status)
            runtime = self._runtime
            on_finished = self._on_finished
        logger.info("Task %s finished with status %s", self.id, status.name)
        if on_finished is not None:
            on_finished(self)
        if self.webhook and runtime is not None and runtime.notifier is not None:
            runtime.notifier.notify(self.webhook, self.get_info())

    def _is_current_attempt(self, generation: int) -> bool:
        with self._lock:
            return self._accepts_events(generation)

    def _is_current_result(self, generation: int) -> bool:
        with self._lock:
            return self._status == TaskStatus.COMPLETED and self._generation == generation

    def _accepts_events(self, generation: int | None) -> bool:
        if self._status != TaskStatus.RUNNING or self._attempt is None:
            return False
        return generation is None or generation == self._attempt.generation

    def _set_status(self, status: TaskStatus) -> None:
        previous = self._status
        self._status = status
        if self._on_transition is not None and previous != status:
            self._on_transition(self, previous, status)

    # -- attempt thread --------------------------------------------------------

    def _run_attempt(self, attempt: _RunAttempt) -> None:
        runtime = self._runtime
        if runtime is None:
            return
        try:
            with self._lock:
                options = list(self.options)
            commands = [runtime.command.build_process_args(self.id, options)]
            if not self.skip_post_processing:
                postprocess = runtime.command.build_postprocess_args(self.id)
                if postprocess is not None:
                    commands.append(postprocess)

            exit_code = 0
            for args in commands:
                result = self._run_process(runtime.runner, attempt, args)
                if result is None:
                    return
                exit_code = result
                if exit_code != 0:
                    break
            self.on_process_exit(exit_code, generation=attempt.generation)
        except Exception as error:
            logger.exception("Task %s attempt %d crashed", self.id, attempt.generation)
            self.on_output_line(f"Internal error: {error}", generation=attempt.generation)
            self._finish(attempt.generation, TaskStatus.FAILED)

    def _run_process(
        self,
        runner: ProcessRunner,
        attempt: _RunAttempt,
        args: list[str],
    ) -> int | None:
        """Run one pipeline process; ``None`` means the attempt already ended."""

        try:
            process = runner.spawn(args)
        except LaunchError as error:
            logger.error("Task %s could not launch pipeline: %s", self.id, error)
            self.on_output_line(str(error), generation=attempt.generation)
            self._finish(attempt.generation, TaskStatus.FAILED)
            return None

        with self._lock:
            adopted = self._accepts_events(attempt.generation)
            if adopted:
                attempt.process = process
        if not adopted:
            process.kill()
            return None

        for line in process.iter_lines():
            self.on_output_line(line, generation=attempt.generation)
        exit_code = process.wait()

        with self._lock:
            if attempt.process is process:
                attempt.process = None
            if not self._accepts_events(attempt.generation):
                return None
        return exit_code

    # -- queries ---------------------------------------------------------------

    def processing_time_ms(self) -> int:
        with self._lock:
            start, end, status = self.processing_start, self.processing_end, self._status
        if start is None:
            return 0
        if end is None:
            if status != TaskStatus.RUNNING:
                return 0
            end = utc_now()
        return max(0, to_epoch_ms(end) - to_epoch_ms(start))

    def get_info(self) -> dict[str, Any]:
        with self._lock:
            info = {
                "uuid": self.id,
                "name": self.name,
                "dateCreated": to_epoch_ms(self.date_created),
                "processingTime": self.processing_time_ms(),
                "status": {"code": int(self._status)},
                "options": [option.to_dict() for option in self.options],
                "imagesCount": self.images_count,
            }
        return info

    def get_output(self, from_line: int = 0) -> list[str]:
        """Lines from absolute position ``from_line``; past the end gives ``[]``."""

        with self._lock:
            lines = list(self._output)
            dropped = self._dropped_lines
        start = max(from_line, 0) - dropped
        if start >= len(lines):
            return []
        return lines[max(start, 0) :]

    def get_assets_archive_path(self, asset_name: str) -> Path | None:
        """Path of a downloadable asset, or ``None`` when not completed or absent."""

        with self._lock:
            status = self._status
            runtime = self._runtime
            generation = self._generation
        if status != TaskStatus.COMPLETED or runtime is None:
            return None
        if asset_name == ARCHIVE_NAME:
            try:
                archive = runtime.packager.build_archive(
                    self.id,
                    skip_post_processing=self.skip_post_processing,
                    is_current=lambda: self._is_current_result(generation),
                )
            except OSError as error:
                logger.warning("Task %s archive unavailable: %s", self.id, error)
                return None
            if archive is None:
                return None
        return runtime.packager.resolve(self.id, asset_name)

    # -- persistence -----------------------------------------------------------

    def to_serialized(self) -> dict[str, Any]:
        with self._lock:
            return {
                "uuid": self.id,
                "name": self.name,
                "date_created": self.date_created.isoformat(),
                "status": int(self._status),
                "options": [option.to_dict() for option in self.options],
                "output": list(self._output),
                "dropped_output_lines": self._dropped_lines,
                "processing_start": _isoformat(self.processing_start),
                "processing_end": _isoformat(self.processing_end),
                "webhook": self.webhook,
                "skip_post_processing": self.skip_post_processing,
                "images_count": self.images_count,
            }

    @classmethod
    def from_serialized(cls, data: dict[str, Any], directories: TaskDirectories) -> Task:
        """Rebuild a task; a task that was running comes back queued with a clean log."""

        task = cls(
            task_id=str(data["uuid"]),
            directories=directories,
            name=data.get("name"),
            options=[TaskOption.from_dict(raw) for raw in data.get("options", [])],
            webhook=data.get("webhook"),
            skip_post_processing=bool(data.get("skip_post_processing", False)),
            images_count=int(data.get("images_count", 0)),
            date_created=datetime.fromisoformat(data["date_created"]),
        )
        status = TaskStatus(int(data["status"]))
        if status in (TaskStatus.RUNNING, TaskStatus.QUEUED):
            return task
        task._status = status
        task._output = [str(line) for line in data.get("output", [])]
        task._dropped_lines = int(data.get("dropped_output_lines", 0))
        task.processing_start = _parse_datetime(data.get("processing_start"))
        task.processing_end = _parse_datetime(data.get("processing_end"))
        return task


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(str(value))
