from __future__ import annotations

import json

import allure
import pytest

from odm_node.taskqueue.errors import PersistenceError
from odm_node.taskqueue.snapshot import TaskSnapshot

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Persistence"),
]


def test_read_missing_snapshot_returns_empty_list(tmp_path) -> None:
    assert TaskSnapshot(tmp_path / "tasks.json").read() == []


def test_write_then_read_preserves_entries(tmp_path) -> None:
    snapshot = TaskSnapshot(tmp_path / "nested" / "tasks.json")
    entries = [{"uuid": "a", "status": 40}, {"uuid": "b", "status": 10}]

    snapshot.write(entries)

    assert snapshot.read() == entries
    payload = json.loads(snapshot.path.read_text("utf-8"))
    assert payload["version"] == 1
    assert not (tmp_path / "nested" / "tasks.json.partial").exists()


@pytest.mark.parametrize("content", ["{broken", "[]", '{"tasks": {}}'])
def test_read_rejects_unreadable_content(tmp_path, content: str) -> None:
    path = tmp_path / "tasks.json"
    path.write_text(content, "utf-8")

    with pytest.raises(PersistenceError):
        TaskSnapshot(path).read()


def test_write_rejects_unserializable_entries(tmp_path) -> None:
    snapshot = TaskSnapshot(tmp_path / "tasks.json")

    with pytest.raises(PersistenceError, match="Cannot write"):
        snapshot.write([{"uuid": object()}])
    assert not snapshot.path.exists()
