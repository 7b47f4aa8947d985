"""Runtime configuration for the processing node."""

from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path

FAKE_PIPELINE_MODULE = "odm_node.taskqueue.backend.fake_odm"
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(slots=True)
class ServerSettings:
    """HTTP listener settings."""

    host: str = "0.0.0.0"  # noqa: S104
    port: int = 3000
    max_images: int = 0
    log_level: str = "INFO"
    powercycle: bool = False


@dataclass(slots=True)
class QueueSettings:
    """Task queue capacity and housekeeping settings."""

    max_parallel_tasks: int = 2
    cleanup_tasks_after_minutes: int = 2_880
    cleanup_uploads_after_minutes: int = 1_440
    snapshot_interval_seconds: int = 60
    maintenance_interval_seconds: int = 60


@dataclass(slots=True)
class PipelineSettings:
    """External processing pipeline settings."""

    odm_command: str = "python3 /code/run.py"
    postprocess_command: str = ""
    kill_grace_seconds: float = 5.0
    max_output_lines: int = 0
    test_mode: bool = False

    def odm_argv(self) -> tuple[str, ...]:
        if self.test_mode:
            return (sys.executable, "-m", FAKE_PIPELINE_MODULE)
        return tuple(shlex.split(self.odm_command))

    def postprocess_argv(self) -> tuple[str, ...]:
        return tuple(shlex.split(self.postprocess_command))


@dataclass(slots=True)
class WebhookSettings:
    """Outgoing completion notification settings."""

    timeout_seconds: float = 10.0
    max_retries: int = 2


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    data_dir: Path = Path("data")
    tmp_dir: Path = Path("tmp")
    options_schema_path: Path | None = None
    server: ServerSettings = field(default_factory=ServerSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    webhook: WebhookSettings = field(default_factory=WebhookSettings)

    @property
    def snapshot_path(self) -> Path:
        return self.data_dir / "tasks.json"

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults suitable for a local node."""

        schema_path = os.getenv("ODM_NODE_OPTIONS_SCHEMA_PATH", "").strip()
        return cls(
            data_dir=Path(os.getenv("ODM_NODE_DATA_DIR", "data")),
            tmp_dir=Path(os.getenv("ODM_NODE_TMP_DIR", "tmp")),
            options_schema_path=Path(schema_path) if schema_path else None,
            server=ServerSettings(
                host=os.getenv("ODM_NODE_HOST", "0.0.0.0"),  # noqa: S104
                port=int(os.getenv("ODM_NODE_PORT", "3000")),
                max_images=int(os.getenv("ODM_NODE_MAX_IMAGES", "0")),
                log_level=os.getenv("ODM_NODE_LOG_LEVEL", "INFO").strip().upper(),
                powercycle=_env_bool("ODM_NODE_POWERCYCLE", default=False),
            ),
            queue=QueueSettings(
                max_parallel_tasks=int(os.getenv("ODM_NODE_MAX_PARALLEL_TASKS", "2")),
                cleanup_tasks_after_minutes=int(
                    os.getenv("ODM_NODE_CLEANUP_TASKS_AFTER_MINUTES", "2880"),
                ),
                cleanup_uploads_after_minutes=int(
                    os.getenv("ODM_NODE_CLEANUP_UPLOADS_AFTER_MINUTES", "1440"),
                ),
                snapshot_interval_seconds=int(
                    os.getenv("ODM_NODE_SNAPSHOT_INTERVAL_SECONDS", "60"),
                ),
                maintenance_interval_seconds=int(
                    os.getenv("ODM_NODE_MAINTENANCE_INTERVAL_SECONDS", "60"),
                ),
            ),
            pipeline=PipelineSettings(
                odm_command=os.getenv("ODM_NODE_ODM_COMMAND", "python3 /code/run.py"),
                postprocess_command=os.getenv("ODM_NODE_POSTPROCESS_COMMAND", ""),
                kill_grace_seconds=float(os.getenv("ODM_NODE_KILL_GRACE_SECONDS", "5.0")),
                max_output_lines=int(os.getenv("ODM_NODE_MAX_OUTPUT_LINES", "0")),
                test_mode=_env_bool("ODM_NODE_TEST_MODE", default=False),
            ),
            webhook=WebhookSettings(
                timeout_seconds=float(os.getenv("ODM_NODE_WEBHOOK_TIMEOUT_SECONDS", "10.0")),
                max_retries=int(os.getenv("ODM_NODE_WEBHOOK_MAX_RETRIES", "2")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the node cannot run with."""

        if not 0 < self.server.port < 65_536:  # noqa: PLR2004
            raise ValueError(f"ODM_NODE_PORT must be in 1..65535, got {self.server.port}.")
        if self.server.max_images < 0:
            raise ValueError("ODM_NODE_MAX_IMAGES must be >= 0.")
        if self.server.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"ODM_NODE_LOG_LEVEL must be one of {', '.join(sorted(_LOG_LEVELS))}, "
                f"got {self.server.log_level!r}.",
            )
        if self.queue.cleanup_tasks_after_minutes < 0:
            raise ValueError("ODM_NODE_CLEANUP_TASKS_AFTER_MINUTES must be >= 0.")
        if self.queue.cleanup_uploads_after_minutes < 0:
            raise ValueError("ODM_NODE_CLEANUP_UPLOADS_AFTER_MINUTES must be >= 0.")
        if self.queue.snapshot_interval_seconds < 0:
            raise ValueError("ODM_NODE_SNAPSHOT_INTERVAL_SECONDS must be >= 0.")
        if self.queue.maintenance_interval_seconds <= 0:
            raise ValueError("ODM_NODE_MAINTENANCE_INTERVAL_SECONDS must be > 0.")
        if self.pipeline.kill_grace_seconds <= 0:
            raise ValueError("ODM_NODE_KILL_GRACE_SECONDS must be > 0.")
        if self.pipeline.max_output_lines < 0:
            raise ValueError("ODM_NODE_MAX_OUTPUT_LINES must be >= 0.")
        if not self.pipeline.odm_argv():
            raise ValueError("ODM_NODE_ODM_COMMAND must not be empty.")
        if self.webhook.max_retries < 0:
            raise ValueError("ODM_NODE_WEBHOOK_MAX_RETRIES must be >= 0.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
