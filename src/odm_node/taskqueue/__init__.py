"""In-process task queue for photogrammetry pipeline runs.

Why not Celery / RQ?
~~~~~~~~~~~~~~~~~~~~
A node runs on one host and drives one external pipeline binary per task.
What matters is the boundary with that binary: spawning it with rendered
options, streaming its console into the task log, reaping its whole process
tree on cancel, and packaging the output directory afterwards. A broker
would add an operational dependency while all of that would still live in
custom worker code. A single lock around the task map and FIFO queue, plus
one thread per running attempt and a JSON snapshot on shutdown, is the
right trade-off for this scope.
"""

from odm_node.taskqueue.errors import (
    IllegalTransition,
    LaunchError,
    PersistenceError,
    RuntimeFailure,
    TaskError,
    UUIDNotFound,
    ValidationError,
)
from odm_node.taskqueue.manager import TaskManager
from odm_node.taskqueue.models import OperationResult, TaskOption, TaskStatus
from odm_node.taskqueue.task import PipelineRuntime, Task

__all__ = [
    "IllegalTransition",
    "LaunchError",
    "OperationResult",
    "PersistenceError",
    "PipelineRuntime",
    "RuntimeFailure",
    "Task",
    "TaskError",
    "TaskManager",
    "TaskOption",
    "TaskStatus",
    "UUIDNotFound",
    "ValidationError",
]
