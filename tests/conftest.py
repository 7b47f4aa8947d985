"""Shared test fixtures."""

from __future__ import annotations

import sys
import time
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from odm_node.config import FAKE_PIPELINE_MODULE
from odm_node.taskqueue.assets import AssetPackager
from odm_node.taskqueue.backend import PipelineCommand, ProcessRunner
from odm_node.taskqueue.manager import TaskManager
from odm_node.taskqueue.snapshot import TaskSnapshot
from odm_node.taskqueue.task import PipelineRuntime
from odm_node.taskqueue.webhook import WebhookNotifier
from odm_node.taskqueue.workdir import TaskDirectories

FAKE_PIPELINE_ARGV = (sys.executable, "-m", FAKE_PIPELINE_MODULE)


@pytest.fixture()
def directories(tmp_path: Path) -> TaskDirectories:
    dirs = TaskDirectories(tmp_path / "data", tmp_path / "tmp")
    dirs.ensure_roots()
    return dirs


@pytest.fixture()
def seed_images(directories: TaskDirectories) -> Callable[..., None]:
    """Materialize a task directory with ``count`` dummy images."""

    def _seed(task_id: str, count: int = 2) -> None:
        images_dir = directories.images_dir(task_id)
        images_dir.mkdir(parents=True, exist_ok=True)
        directories.gcp_dir(task_id).mkdir(exist_ok=True)
        for index in range(count):
            (images_dir / f"IMG_{index:04d}.JPG").write_bytes(b"\xff\xd8fake-jpeg")

    return _seed


@pytest.fixture()
def wait_for() -> Callable[..., None]:
    def _wait(predicate: Callable[[], bool], timeout: float = 15.0, message: str = "") -> None:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return
            time.sleep(0.02)
        raise AssertionError(message or "condition not met before timeout")

    return _wait


@pytest.fixture()
def make_runtime(directories: TaskDirectories) -> Callable[..., PipelineRuntime]:
    """Runtime driving the fake pipeline module through a real subprocess."""

    def _make(
        *,
        notifier: WebhookNotifier | None = None,
        max_output_lines: int = 0,
        odm_argv: tuple[str, ...] = FAKE_PIPELINE_ARGV,
        postprocess_argv: tuple[str, ...] = (),
    ) -> PipelineRuntime:
        return PipelineRuntime(
            runner=ProcessRunner(kill_grace_seconds=2.0),
            packager=AssetPackager(directories),
            command=PipelineCommand(
                odm_argv=odm_argv,
                data_dir=directories.data_dir,
                postprocess_argv=postprocess_argv,
            ),
            notifier=notifier,
            max_output_lines=max_output_lines,
        )

    return _make


@pytest.fixture()
def make_manager(
    tmp_path: Path,
    directories: TaskDirectories,
    make_runtime: Callable[..., PipelineRuntime],
) -> Iterator[Callable[..., TaskManager]]:
    created: list[TaskManager] = []

    def _make(
        *,
        max_parallel_tasks: int = 2,
        runtime: PipelineRuntime | None = None,
        snapshot_path: Path | None = None,
        **kwargs: int,
    ) -> TaskManager:
        manager = TaskManager(
            directories=directories,
            runtime=runtime or make_runtime(),
            snapshot=TaskSnapshot(snapshot_path or tmp_path / "data" / "tasks.json"),
            max_parallel_tasks=max_parallel_tasks,
            **kwargs,
        )
        created.append(manager)
        return manager

    yield _make

    for manager in created:
        for task in manager.list_tasks():
            task.cancel()
