from __future__ import annotations

import allure

from odm_node.taskqueue.workdir import TaskDirectories

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Task Directories"),
]


def test_layout_is_derived_from_task_id(tmp_path) -> None:
    directories = TaskDirectories(tmp_path / "data", tmp_path / "tmp")

    assert directories.task_dir("abc") == tmp_path / "data" / "abc"
    assert directories.images_dir("abc") == tmp_path / "data" / "abc" / "images"
    assert directories.gcp_dir("abc") == tmp_path / "data" / "abc" / "gcp"
    assert directories.upload_dir("abc") == tmp_path / "tmp" / "abc"


def test_count_images_ignores_hidden_files_and_folders(directories, seed_images) -> None:
    seed_images("abc", count=4)
    images_dir = directories.images_dir("abc")
    (images_dir / ".thumbs").write_bytes(b"")
    (images_dir / "nested").mkdir()

    assert directories.count_images("abc") == 4
    assert directories.count_images("missing") == 0


def test_remove_is_idempotent(directories, seed_images) -> None:
    seed_images("abc")

    directories.remove("abc")
    directories.remove("abc")

    assert not directories.task_dir("abc").exists()
