"""Task manager: FIFO admission, bounded concurrency, lifecycle and persistence."""

from __future__ import annotations

import logging
import shutil
import threading
import time
from collections import deque
from collections.abc import Callable
from datetime import timedelta

from odm_node.taskqueue.errors import PersistenceError, TaskError, UUIDNotFound, ValidationError
from odm_node.taskqueue.models import OperationResult, TaskOption, TaskStatus, utc_now
from odm_node.taskqueue.snapshot import TaskSnapshot
from odm_node.taskqueue.task import PipelineRuntime, Task
from odm_node.taskqueue.workdir import TaskDirectories

logger = logging.getLogger(__name__)

ResultCallback = Callable[[OperationResult], None]

ORPHAN_GRACE_SECONDS = 3_600


class TaskManager:
    """Owns every task, the admission queue and the concurrency limit.

    One re-entrant lock serialises all bookkeeping: the task map, the queue and
    each registered task's state (tasks share this lock). Transitions reported
    by tasks keep the queue in sync and re-run the scheduler in the same
    critical section, so a task can never be started after ``cancel`` returned.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        directories: TaskDirectories,
        runtime: PipelineRuntime,
        snapshot: TaskSnapshot,
        max_parallel_tasks: int = 2,
        cleanup_tasks_after_minutes: int = 0,
        cleanup_uploads_after_minutes: int = 0,
        snapshot_interval_seconds: int = 0,
        maintenance_interval_seconds: float = 60.0,
    ) -> None:
        self.directories = directories
        self.runtime = runtime
        self.snapshot = snapshot
        self.max_parallel_tasks = max_parallel_tasks
        self.cleanup_tasks_after_minutes = cleanup_tasks_after_minutes
        self.cleanup_uploads_after_minutes = cleanup_uploads_after_minutes
        self.snapshot_interval_seconds = snapshot_interval_seconds
        self.maintenance_interval_seconds = maintenance_interval_seconds
        self._lock = threading.RLock()
        self._dump_lock = threading.Lock()
        self._tasks: dict[str, Task] = {}
        self._queue: deque[str] = deque()
        self._stop = threading.Event()
        self._maintenance_thread: threading.Thread | None = None
        self._last_snapshot_monotonic = time.monotonic()

    # -- service lifecycle -----------------------------------------------------

    def start(self) -> None:
        """Restore the previous snapshot and start the maintenance loop."""

        self.directories.ensure_roots()
        self.restore_task_list()
        self._stop.clear()
        self._maintenance_thread = threading.Thread(
            target=self._maintenance_loop,
            daemon=True,
            name="task-maintenance",
        )
        self._maintenance_thread.start()
        logger.info(
            "Task manager started: %d tasks, max parallel %s",
            len(self._tasks),
            self.max_parallel_tasks if self.max_parallel_tasks > 0 else "unbounded",
        )

    def shutdown(self) -> None:
        """Snapshot all tasks, then stop running pipelines so they resume on next start."""

        self._stop.set()
        if self._maintenance_thread is not None:
            self._maintenance_thread.join(timeout=15)
            self._maintenance_thread = None
        self.dump_task_list()
        with self._lock:
            running = [task for task in self._tasks.values() if task.status == TaskStatus.RUNNING]
        for task in running:
            task.abort_attempt()
        logger.info("Task manager stopped, %d running tasks interrupted", len(running))

    # -- admission and lookup --------------------------------------------------

    def add_new(self, task: Task) -> None:
        with self._lock:
            if task.id in self._tasks:
                raise ValidationError(f"Task {task.id} already exists.")
            self._register(task)
            self._process_next()
        logger.info("Task %s queued (%d images)", task.id, task.images_count)

    def find(self, task_id: str) -> Task | None:
        with self._lock:
            return self._tasks.get(task_id)

    def list_tasks(self) -> list[Task]:
        with self._lock:
            return list(self._tasks.values())

    def get_queue_count(self) -> int:
        with self._lock:
            return sum(
                1
                for task in self._tasks.values()
                if task.status in (TaskStatus.QUEUED, TaskStatus.RUNNING)
            )

    def running_count(self) -> int:
        with self._lock:
            return sum(1 for task in self._tasks.values() if task.status == TaskStatus.RUNNING)

    def queued_ids(self) -> list[str]:
        with self._lock:
            return list(self._queue)

    # -- lifecycle operations --------------------------------------------------

    def cancel(self, task_id: str, callback: ResultCallback | None = None) -> OperationResult:
        def _cancel() -> None:
            self._require(task_id).cancel()

        return self._run_operation("cancel", task_id, _cancel, callback)

    def remove(self, task_id: str, callback: ResultCallback | None = None) -> OperationResult:
        def _remove() -> None:
            task = self._require(task_id)
            task.cancel()
            with self._lock:
                if self._tasks.get(task_id) is not task:
                    raise UUIDNotFound(task_id)
                del self._tasks[task_id]
                self._discard_queued(task_id)
                self._process_next()
            self.directories.remove(task_id)

        return self._run_operation("remove", task_id, _remove, callback)

    def restart(
        self,
        task_id: str,
        options: list[TaskOption] | None = None,
        callback: ResultCallback | None = None,
    ) -> OperationResult:
        def _restart() -> None:
            self._require(task_id).restart(options)

        return self._run_operation("restart", task_id, _restart, callback)

    def _run_operation(
        self,
        name: str,
        task_id: str,
        operation: Callable[[], None],
        callback: ResultCallback | None,
    ) -> OperationResult:
        try:
            operation()
        except UUIDNotFound as error:
            result = OperationResult.failed(error)
        except TaskError as error:
            logger.error("Task %s: %s failed: %s", task_id, name, error)
            result = OperationResult.failed(error)
        else:
            result = OperationResult.ok()
        if callback is not None:
            callback(result)
        return result

    def _require(self, task_id: str) -> Task:
        task = self.find(task_id)
        if task is None:
            raise UUIDNotFound(task_id)
        return task

    # -- scheduler -------------------------------------------------------------

    def _register(self, task: Task) -> None:
        task.bind(
            runtime=self.runtime,
            lock=self._lock,
            on_transition=self._on_transition,
            on_finished=self._on_finished,
        )
        self._tasks[task.id] = task
        if task.status == TaskStatus.QUEUED:
            self._queue.append(task.id)

    def _on_transition(self, task: Task, previous: TaskStatus, current: TaskStatus) -> None:
        # Runs under self._lock, inside the task's own state change.
        if previous == TaskStatus.QUEUED:
            self._discard_queued(task.id)
        if current == TaskStatus.QUEUED:
            self._queue.append(task.id)
        if current != TaskStatus.RUNNING:
            self._process_next()

    def _on_finished(self, task: Task) -> None:
        if self.snapshot_interval_seconds > 0:
            self.dump_task_list()

    def _discard_queued(self, task_id: str) -> None:
        if task_id in self._queue:
            self._queue.remove(task_id)

    def _has_free_slot(self) -> bool:
        if self.max_parallel_tasks <= 0:
            return True
        return self.running_count() < self.max_parallel_tasks

    def _process_next(self) -> None:
        with self._lock:
            while self._queue and self._has_free_slot():
                task_id = self._queue.popleft()
                task = self._tasks.get(task_id)
                if task is None or task.status != TaskStatus.QUEUED:
                    continue
                try:
                    task.start()
                except TaskError:
                    logger.exception("Scheduler could not start task %s", task_id)

    # -- persistence -----------------------------------------------------------

    def dump_task_list(self, callback: ResultCallback | None = None) -> OperationResult:
        # Collect and write as one step: the file holds the most recently collected list.
        with self._dump_lock:
            with self._lock:
                entries = [task.to_serialized() for task in self._tasks.values()]
            try:
                self.snapshot.write(entries)
            except PersistenceError as error:
                logger.warning("%s", error)
                result = OperationResult.failed(error)
            else:
                self._last_snapshot_monotonic = time.monotonic()
                logger.debug("Wrote snapshot of %d tasks to %s", len(entries), self.snapshot.path)
                result = OperationResult.ok()
        if callback is not None:
            callback(result)
        return result

    def restore_task_list(self) -> int:
        """Load the snapshot; unreadable data leaves the node with no tasks."""

        try:
            entries = self.snapshot.read()
        except PersistenceError as error:
            logger.warning("Starting with an empty task list: %s", error)
            return 0

        restored: list[Task] = []
        for entry in entries:
            if not isinstance(entry, dict):
                logger.warning("Skipping malformed snapshot entry: %r", entry)
                continue
            try:
                restored.append(Task.from_serialized(entry, self.directories))
            except (KeyError, TypeError, ValueError) as error:
                logger.warning("Skipping malformed snapshot entry %r: %s", entry.get("uuid"), error)

        with self._lock:
            for task in restored:
                if task.id in self._tasks:
                    logger.warning("Skipping duplicate task %s in snapshot", task.id)
                    continue
                self._register(task)
            self._process_next()
        logger.info("Restored %d tasks from %s", len(restored), self.snapshot.path)
        return len(restored)

    # -- housekeeping ----------------------------------------------------------

    def remove_old_tasks(self) -> list[str]:
        """Remove finished tasks older than the cleanup window."""

        if self.cleanup_tasks_after_minutes <= 0:
            return []
        cutoff = utc_now() - timedelta(minutes=self.cleanup_tasks_after_minutes)
        with self._lock:
            expired = [
                task.id
                for task in self._tasks.values()
                if task.status.is_terminal
                and (task.processing_end or task.date_created) < cutoff
            ]
        removed = [task_id for task_id in expired if self.remove(task_id).success]
        if removed:
            logger.info("Cleaned up %d old tasks", len(removed))
        return removed

    def remove_orphaned_directories(self) -> list[str]:
        with self._lock:
            known = set(self._tasks)
        # Intake creates the directory just before registering the task.
        orphans = self.directories.orphaned_task_dirs(known, ORPHAN_GRACE_SECONDS)
        for path in orphans:
            logger.info("Removing orphaned directory %s", path)
            shutil.rmtree(path, ignore_errors=True)
        return [path.name for path in orphans]

    def remove_stale_uploads(self) -> list[str]:
        if self.cleanup_uploads_after_minutes <= 0:
            return []
        stale = self.directories.stale_upload_dirs(self.cleanup_uploads_after_minutes * 60)
        for path in stale:
            logger.info("Removing stale upload directory %s", path)
            shutil.rmtree(path, ignore_errors=True)
        return [path.name for path in stale]

    def run_maintenance(self) -> None:
        self.remove_old_tasks()
        self.remove_orphaned_directories()
        self.remove_stale_uploads()
        if self.snapshot_interval_seconds > 0:
            elapsed = time.monotonic() - self._last_snapshot_monotonic
            if elapsed >= self.snapshot_interval_seconds:
                self.dump_task_list()

    def _maintenance_loop(self) -> None:
        while not self._stop.wait(timeout=self.maintenance_interval_seconds):
            try:
                self.run_maintenance()
            except Exception:
                logger.exception("Task maintenance error")
