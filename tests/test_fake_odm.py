from __future__ import annotations

import allure

from odm_node.taskqueue.backend import fake_odm

pytestmark = [
    allure.epic("Pipeline Runtime"),
    allure.feature("Fake Pipeline"),
]


def test_fake_pipeline_writes_outputs(tmp_path, capsys) -> None:
    (tmp_path / "job" / "images").mkdir(parents=True)
    (tmp_path / "job" / "images" / "a.jpg").write_bytes(b"x")

    exit_code = fake_odm.main(["--fake-steps", "2", "--project-path", str(tmp_path), "job"])

    assert exit_code == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines == [
        "[INFO] Processing job with 1 images",
        "[INFO] Running step 1/2",
        "[INFO] Running step 2/2",
        "[INFO] ODM app finished",
    ]
    for relative in fake_odm.FAKE_OUTPUTS:
        assert (tmp_path / "job" / relative).is_file()


def test_fake_pipeline_failure_skips_outputs(tmp_path, capsys) -> None:
    (tmp_path / "job").mkdir()

    exit_code = fake_odm.main(
        ["--fake-exit-code", "5", "--dsm", "--project-path", str(tmp_path), "job"],
    )

    assert exit_code == 5
    captured = capsys.readouterr()
    assert "[INFO] Extra arguments: --dsm" in captured.out
    assert "[ERROR] Failing with exit code 5" in captured.err
    assert not (tmp_path / "job" / "odm_report").exists()
