"""Processing pipeline backend."""

from odm_node.taskqueue.backend.base import PipelineCommand, render_options
from odm_node.taskqueue.backend.process_runner import ProcessRunner, RunningProcess

__all__ = [
    "PipelineCommand",
    "ProcessRunner",
    "RunningProcess",
    "render_options",
]
