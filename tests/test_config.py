from __future__ import annotations

import sys
from pathlib import Path

import allure
import pytest

from odm_node.config import (
    FAKE_PIPELINE_MODULE,
    PipelineSettings,
    QueueSettings,
    ServerSettings,
    Settings,
)

pytestmark = [
    allure.epic("Node Runtime"),
    allure.feature("Configuration"),
]


def test_defaults_are_valid() -> None:
    settings = Settings()

    settings.validate()
    assert settings.server.port == 3000
    assert settings.queue.max_parallel_tasks == 2
    assert settings.snapshot_path == Path("data") / "tasks.json"


def test_from_env_reads_prefixed_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ODM_NODE_PORT", "3100")
    monkeypatch.setenv("ODM_NODE_DATA_DIR", "/srv/odm/data")
    monkeypatch.setenv("ODM_NODE_MAX_PARALLEL_TASKS", "4")
    monkeypatch.setenv("ODM_NODE_ODM_COMMAND", "python3 /opt/odm/run.py --verbose")
    monkeypatch.setenv("ODM_NODE_TEST_MODE", "no")
    monkeypatch.setenv("ODM_NODE_LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.server.port == 3100
    assert settings.data_dir == Path("/srv/odm/data")
    assert settings.queue.max_parallel_tasks == 4
    assert settings.pipeline.odm_argv() == ("python3", "/opt/odm/run.py", "--verbose")
    assert settings.pipeline.test_mode is False
    assert settings.server.log_level == "DEBUG"


def test_invalid_boolean_env_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ODM_NODE_POWERCYCLE", "sometimes")

    with pytest.raises(ValueError, match="ODM_NODE_POWERCYCLE"):
        Settings.from_env()


def test_test_mode_replaces_pipeline_with_fake_module() -> None:
    pipeline = PipelineSettings(odm_command="odm", test_mode=True)

    assert pipeline.odm_argv() == (sys.executable, "-m", FAKE_PIPELINE_MODULE)


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(server=ServerSettings(port=0)), "ODM_NODE_PORT"),
        (Settings(server=ServerSettings(max_images=-1)), "ODM_NODE_MAX_IMAGES"),
        (Settings(server=ServerSettings(log_level="LOUD")), "ODM_NODE_LOG_LEVEL"),
        (
            Settings(queue=QueueSettings(cleanup_tasks_after_minutes=-5)),
            "ODM_NODE_CLEANUP_TASKS_AFTER_MINUTES",
        ),
        (
            Settings(queue=QueueSettings(maintenance_interval_seconds=0)),
            "ODM_NODE_MAINTENANCE_INTERVAL_SECONDS",
        ),
        (Settings(pipeline=PipelineSettings(odm_command="  ")), "ODM_NODE_ODM_COMMAND"),
        (Settings(pipeline=PipelineSettings(kill_grace_seconds=0)), "ODM_NODE_KILL_GRACE_SECONDS"),
    ],
)
def test_validate_rejects_unusable_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()
