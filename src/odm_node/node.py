"""Wiring of node services from settings."""

from __future__ import annotations

from dataclasses import dataclass

from odm_node.api.intake import TaskIntake
from odm_node.config import Settings
from odm_node.taskqueue.assets import AssetPackager
from odm_node.taskqueue.backend import PipelineCommand, ProcessRunner
from odm_node.taskqueue.manager import TaskManager
from odm_node.taskqueue.options import OptionValidator
from odm_node.taskqueue.snapshot import TaskSnapshot
from odm_node.taskqueue.task import PipelineRuntime
from odm_node.taskqueue.webhook import WebhookNotifier
from odm_node.taskqueue.workdir import TaskDirectories


@dataclass(slots=True)
class Node:
    """Explicitly constructed services shared by the HTTP layer and the CLI."""

    settings: Settings
    manager: TaskManager
    validator: OptionValidator
    intake: TaskIntake
    notifier: WebhookNotifier

    def close(self) -> None:
        self.intake.close()
        self.notifier.close()


def build_node(settings: Settings) -> Node:
    """Create node services; raises ``OSError``/``ValueError`` on bad collaborators."""

    directories = TaskDirectories(settings.data_dir, settings.tmp_dir)
    directories.ensure_roots()

    validator = OptionValidator()
    if settings.options_schema_path is not None:
        validator = OptionValidator.from_schema_file(settings.options_schema_path)

    notifier = WebhookNotifier(
        timeout_seconds=settings.webhook.timeout_seconds,
        max_retries=settings.webhook.max_retries,
    )
    runtime = PipelineRuntime(
        runner=ProcessRunner(kill_grace_seconds=settings.pipeline.kill_grace_seconds),
        packager=AssetPackager(directories),
        command=PipelineCommand(
            odm_argv=settings.pipeline.odm_argv(),
            data_dir=settings.data_dir,
            postprocess_argv=settings.pipeline.postprocess_argv(),
        ),
        notifier=notifier,
        max_output_lines=settings.pipeline.max_output_lines,
    )
    manager = TaskManager(
        directories=directories,
        runtime=runtime,
        snapshot=TaskSnapshot(settings.snapshot_path),
        max_parallel_tasks=settings.queue.max_parallel_tasks,
        cleanup_tasks_after_minutes=settings.queue.cleanup_tasks_after_minutes,
        cleanup_uploads_after_minutes=settings.queue.cleanup_uploads_after_minutes,
        snapshot_interval_seconds=settings.queue.snapshot_interval_seconds,
        maintenance_interval_seconds=settings.queue.maintenance_interval_seconds,
    )
    intake = TaskIntake(
        manager=manager,
        validator=validator,
        directories=directories,
        max_images=settings.server.max_images,
    )
    return Node(
        settings=settings,
        manager=manager,
        validator=validator,
        intake=intake,
        notifier=notifier,
    )
