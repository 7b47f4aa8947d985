"""CLI entrypoint for odm-node."""

import logging
from pathlib import Path

import rich_click as click
import uvicorn

from odm_node import __version__
from odm_node.api.app import create_app
from odm_node.controllers import (
    NodeCliController,
    OptionsCommand,
    ServeCommand,
    TaskListCommand,
)
from odm_node.node import build_node

click.rich_click.USE_MARKDOWN = True
CONTROLLER = NodeCliController()
logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version=__version__, prog_name="odm-node")
def odm_node() -> None:
    """Photogrammetry processing node."""


@odm_node.command("serve")
@click.option("--port", type=click.IntRange(min=1, max=65_535), default=None, help="HTTP port.")
@click.option(
    "--data-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory holding task folders and the task snapshot.",
)
@click.option(
    "--parallel-queue-processing",
    "max_parallel_tasks",
    type=int,
    default=None,
    help="How many tasks run at once. `0` or less means no limit.",
)
@click.option(
    "--max-images",
    type=click.IntRange(min=0),
    default=None,
    help="Reject tasks with more images than this. `0` means no limit.",
)
@click.option(
    "--cleanup-tasks-after",
    type=click.IntRange(min=0),
    default=None,
    help="Minutes after which finished tasks are removed. `0` disables cleanup.",
)
@click.option(
    "--odm-command",
    default=None,
    help="Command line of the processing pipeline, options and project path are appended.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default=None,
    help="Logging verbosity.",
)
@click.option(
    "--test/--no-test",
    "test_mode",
    default=None,
    help="Run the built-in fake pipeline instead of the real one.",
)
@click.option(
    "--powercycle",
    is_flag=True,
    default=None,
    help="Start, restore state, snapshot and exit immediately.",
)
def serve(  # noqa: PLR0913
    port: int | None,
    data_dir: Path | None,
    max_parallel_tasks: int | None,
    max_images: int | None,
    cleanup_tasks_after: int | None,
    odm_command: str | None,
    log_level: str | None,
    test_mode: bool | None,
    powercycle: bool | None,
) -> None:
    """Run the HTTP node until interrupted."""

    try:
        settings = CONTROLLER.resolve_settings(
            ServeCommand(
                port=port,
                data_dir=data_dir,
                max_parallel_tasks=max_parallel_tasks,
                max_images=max_images,
                cleanup_tasks_after=cleanup_tasks_after,
                odm_command=odm_command,
                log_level=log_level,
                test_mode=test_mode,
                powercycle=powercycle or None,
            ),
        )
        CONTROLLER.configure_logging(settings)
        node = build_node(settings)
    except (OSError, ValueError, TypeError) as error:
        raise click.ClickException(f"Cannot start node: {error}") from error

    if settings.pipeline.test_mode:
        logger.warning("Running in test mode: tasks use the fake pipeline")

    if settings.server.powercycle:
        node.manager.start()
        node.manager.shutdown()
        node.close()
        _emit_lines(["Power cycling is set, application shut down."])
        return

    uvicorn.run(
        create_app(node),
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.server.log_level.lower(),
    )


@odm_node.group()
def tasks() -> None:
    """Offline task inspection."""


@tasks.command("list")
@click.option(
    "--data-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory holding the task snapshot.",
)
@click.option(
    "--status",
    type=click.Choice(["queued", "running", "failed", "completed", "canceled"]),
    default=None,
    help="Only list tasks in this state.",
)
def tasks_list(data_dir: Path | None, status: str | None) -> None:
    """List tasks recorded in the last snapshot."""

    _emit_lines(CONTROLLER.list_tasks(TaskListCommand(data_dir=data_dir, status=status)))


@odm_node.command("options")
@click.option(
    "--schema",
    "schema_path",
    type=click.Path(path_type=Path, dir_okay=False, exists=True),
    default=None,
    help="Option schema JSON file. Defaults to `ODM_NODE_OPTIONS_SCHEMA_PATH`.",
)
def options(schema_path: Path | None) -> None:
    """Print the processing options this node accepts."""

    try:
        lines = CONTROLLER.options(OptionsCommand(schema_path=schema_path))
    except (OSError, ValueError, TypeError) as error:
        raise click.ClickException(f"Cannot read option schema: {error}") from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    odm_node()
