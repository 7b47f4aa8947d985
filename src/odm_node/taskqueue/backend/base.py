"""Command-line rendering for the external processing pipeline."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from odm_node.taskqueue.models import TaskOption


@dataclass(slots=True)
class PipelineCommand:
    """Builds the argv for one task's pipeline run and optional post-processing."""

    odm_argv: tuple[str, ...]
    data_dir: Path
    postprocess_argv: tuple[str, ...] = ()

    def build_process_args(self, task_id: str, options: Iterable[TaskOption]) -> list[str]:
        args = list(self.odm_argv)
        args.extend(render_options(options))
        args.extend(["--project-path", str(self.data_dir.resolve()), task_id])
        return args

    def build_postprocess_args(self, task_id: str) -> list[str] | None:
        if not self.postprocess_argv:
            return None
        return [*self.postprocess_argv, str((self.data_dir / task_id).resolve())]


def render_options(options: Iterable[TaskOption]) -> list[str]:
    """Render options as ``--name value``; ``True`` becomes a bare flag, ``False``/``None`` drop."""

    rendered: list[str] = []
    for option in options:
        flag = f"--{option.name}"
        if option.value is True:
            rendered.append(flag)
        elif option.value is False or option.value is None:
            continue
        else:
            rendered.extend([flag, str(option.value)])
    return rendered
