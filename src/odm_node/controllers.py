"""Controllers for node CLI commands."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TypeVar

from odm_node.config import Settings
from odm_node.taskqueue.errors import PersistenceError
from odm_node.taskqueue.models import TaskStatus
from odm_node.taskqueue.options import OptionValidator
from odm_node.taskqueue.snapshot import TaskSnapshot

T = TypeVar("T")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class ServeCommand:
    """CLI overrides for the serve command; ``None`` keeps the environment value."""

    port: int | None = None
    data_dir: Path | None = None
    max_parallel_tasks: int | None = None
    max_images: int | None = None
    cleanup_tasks_after: int | None = None
    odm_command: str | None = None
    log_level: str | None = None
    test_mode: bool | None = None
    powercycle: bool | None = None


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for listing tasks from the on-disk snapshot."""

    data_dir: Path | None
    status: str | None = None


@dataclass(slots=True)
class OptionsCommand:
    """CLI input for printing the pipeline option schema."""

    schema_path: Path | None


class NodeCliController:
    """Settings resolution and offline inspection commands."""

    def resolve_settings(self, command: ServeCommand) -> Settings:
        """Environment settings with CLI overrides applied; raises ``ValueError``."""

        settings = Settings.from_env()
        if command.data_dir is not None:
            settings.data_dir = command.data_dir
        settings.server = replace(
            settings.server,
            port=_pick(command.port, settings.server.port),
            max_images=_pick(command.max_images, settings.server.max_images),
            log_level=_pick(command.log_level, settings.server.log_level).upper(),
            powercycle=_pick(command.powercycle, settings.server.powercycle),
        )
        settings.queue = replace(
            settings.queue,
            max_parallel_tasks=_pick(command.max_parallel_tasks, settings.queue.max_parallel_tasks),
            cleanup_tasks_after_minutes=_pick(
                command.cleanup_tasks_after,
                settings.queue.cleanup_tasks_after_minutes,
            ),
        )
        settings.pipeline = replace(
            settings.pipeline,
            odm_command=_pick(command.odm_command, settings.pipeline.odm_command),
            test_mode=_pick(command.test_mode, settings.pipeline.test_mode),
        )
        settings.validate()
        return settings

    def configure_logging(self, settings: Settings) -> None:
        logging.basicConfig(level=settings.server.log_level, format=LOG_FORMAT)

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env()
        data_dir = command.data_dir or settings.data_dir
        status_filter = _parse_status(command.status)
        try:
            entries = TaskSnapshot(data_dir / "tasks.json").read()
        except PersistenceError as error:
            return [f"Snapshot unreadable: {error}"]

        lines: list[str] = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            try:
                status = TaskStatus(int(entry.get("status", 0)))
            except ValueError:
                continue
            if status_filter is not None and status != status_filter:
                continue
            lines.append(
                f"  {entry.get('uuid')} status={status.name.lower()} "
                f"images={entry.get('images_count', 0)} name={entry.get('name')!r}",
            )
        return [f"Tasks: {len(lines)}", *lines]

    def options(self, command: OptionsCommand) -> list[str]:
        settings = Settings.from_env()
        schema_path = command.schema_path or settings.options_schema_path
        if schema_path is None:
            return ["No option schema configured: any option name is accepted."]
        validator = OptionValidator.from_schema_file(schema_path)
        lines = [f"Options: {len(validator.get_options())}"]
        for spec in validator.get_options():
            domain = f" domain={spec['domain']}" if spec.get("domain") else ""
            lines.append(f"  --{spec['name']} type={spec['type']} default={spec['value']!r}{domain}")
            if spec.get("help"):
                lines.append(f"      {spec['help']}")
        return lines


def _pick(override: T | None, current: T) -> T:
    return current if override is None else override


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    try:
        return TaskStatus[value.strip().upper()]
    except KeyError as error:
        allowed = ", ".join(status.name.lower() for status in TaskStatus)
        raise ValueError(f"Unknown status {value!r}; expected one of {allowed}.") from error
