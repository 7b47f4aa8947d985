from __future__ import annotations

import io
import uuid
import zipfile

import allure
import httpx
import pytest

from odm_node.api.intake import IntakeRequest, TaskIntake, UploadedFile
from odm_node.taskqueue.errors import ValidationError
from odm_node.taskqueue.models import TaskOption, TaskStatus
from odm_node.taskqueue.options import OptionSpec, OptionValidator

pytestmark = [
    allure.epic("Task Intake"),
    allure.feature("Upload Pipeline"),
]


def _image(name: str) -> UploadedFile:
    return UploadedFile(filename=name, stream=io.BytesIO(b"\xff\xd8fake-jpeg"))


def _zip_bytes(names: list[str]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as bundle:
        for name in names:
            bundle.writestr(name, b"data")
    return buffer.getvalue()


@pytest.fixture()
def make_intake(directories, make_manager):
    created: list[TaskIntake] = []

    def _make(*, max_images: int = 0, validator=None, http_client=None, max_parallel_tasks=2):
        intake = TaskIntake(
            manager=make_manager(max_parallel_tasks=max_parallel_tasks),
            validator=validator or OptionValidator(),
            directories=directories,
            max_images=max_images,
            http_client=http_client,
        )
        created.append(intake)
        return intake

    yield _make

    for intake in created:
        intake.close()


def test_submit_materializes_images_and_gcp_files(directories, make_intake, wait_for) -> None:
    intake = make_intake()

    task = intake.submit(
        IntakeRequest(
            files=[_image("a.JPG"), _image("b.JPG"), _image("gcp_list.txt")],
            name="Field A",
            options='[{"name": "fake-steps", "value": 1}]',
        ),
    )

    assert intake.manager.find(task.id) is task
    assert task.name == "Field A"
    assert task.images_count == 2
    assert task.options == [TaskOption(name="fake-steps", value=1)]
    assert sorted(p.name for p in directories.images_dir(task.id).iterdir()) == ["a.JPG", "b.JPG"]
    assert (directories.gcp_dir(task.id) / "gcp_list.txt").is_file()
    assert not directories.upload_dir(task.id).exists()
    wait_for(lambda: task.status == TaskStatus.COMPLETED)


def test_submit_extracts_uploaded_zip(directories, make_intake) -> None:
    intake = make_intake()
    archive = UploadedFile(
        filename="images.zip",
        stream=io.BytesIO(_zip_bytes(["set/IMG_1.JPG", "set/IMG_2.JPG", "__MACOSX/.junk"])),
    )

    task = intake.submit(IntakeRequest(files=[archive]))

    names = sorted(p.name for p in directories.images_dir(task.id).iterdir())
    assert names == ["IMG_1.JPG", "IMG_2.JPG"]
    assert task.images_count == 2


def test_submit_downloads_zip_url(directories, make_intake) -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        assert request.url == "https://files.test/set.zip"
        return httpx.Response(200, content=_zip_bytes(["one.jpg", "two.jpg", "three.jpg"]))

    intake = make_intake(http_client=httpx.Client(transport=httpx.MockTransport(_handler)))

    task = intake.submit(IntakeRequest(zip_url="https://files.test/set.zip"))

    assert task.images_count == 3


def test_failed_zip_url_download_leaves_nothing_behind(directories, make_intake) -> None:
    intake = make_intake(
        http_client=httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(404))),
    )
    set_uuid = str(uuid.uuid4())

    with pytest.raises(ValidationError, match="Cannot download"):
        intake.submit(IntakeRequest(zip_url="https://files.test/missing.zip", set_uuid=set_uuid))

    assert not directories.task_dir(set_uuid).exists()
    assert not directories.upload_dir(set_uuid).exists()
    assert intake.manager.list_tasks() == []


def test_submit_requires_files_or_zip_url(make_intake) -> None:
    with pytest.raises(ValidationError, match="Need at least 1 file or a zip file url."):
        make_intake().submit(IntakeRequest())


def test_submit_enforces_max_images(make_intake) -> None:
    intake = make_intake(max_images=1)

    with pytest.raises(ValidationError, match="only process up to 1"):
        intake.submit(IntakeRequest(files=[_image("a.jpg"), _image("b.jpg")]))


def test_zip_content_counts_against_max_images(directories, make_intake) -> None:
    intake = make_intake(max_images=2)
    set_uuid = str(uuid.uuid4())
    archive = UploadedFile(filename="big.zip", stream=io.BytesIO(_zip_bytes(["1.jpg", "2.jpg", "3.jpg"])))

    with pytest.raises(ValidationError, match="only process up to 2"):
        intake.submit(IntakeRequest(files=[archive], set_uuid=set_uuid))

    assert not directories.task_dir(set_uuid).exists()


def test_corrupt_zip_is_rejected(directories, make_intake) -> None:
    archive = UploadedFile(filename="broken.zip", stream=io.BytesIO(b"not a zip"))

    with pytest.raises(ValidationError, match="Extract error"):
        make_intake().submit(IntakeRequest(files=[archive]))


def test_set_uuid_is_honoured(make_intake) -> None:
    set_uuid = str(uuid.uuid4())

    task = make_intake().submit(IntakeRequest(files=[_image("a.jpg")], set_uuid=set_uuid))

    assert task.id == set_uuid


@pytest.mark.parametrize("set_uuid", ["not-a-uuid", "00000000-0000-0000-0000-000000000000"])
def test_invalid_set_uuid_is_rejected(make_intake, set_uuid: str) -> None:
    with pytest.raises(ValidationError, match="Invalid set-uuid"):
        make_intake().submit(IntakeRequest(files=[_image("a.jpg")], set_uuid=set_uuid))


def test_set_uuid_already_in_use_is_rejected(make_intake) -> None:
    intake = make_intake()
    set_uuid = str(uuid.uuid4())
    intake.submit(IntakeRequest(files=[_image("a.jpg")], set_uuid=set_uuid))

    with pytest.raises(ValidationError, match="Invalid set-uuid"):
        intake.submit(IntakeRequest(files=[_image("b.jpg")], set_uuid=set_uuid))


def test_invalid_options_abort_before_any_directory_exists(directories, make_intake) -> None:
    intake = make_intake(validator=OptionValidator([OptionSpec(name="dsm", type="bool")]))
    set_uuid = str(uuid.uuid4())

    with pytest.raises(ValidationError, match="Unknown option"):
        intake.submit(
            IntakeRequest(
                files=[_image("a.jpg")],
                options='[{"name": "orthophoto-resolution", "value": 2}]',
                set_uuid=set_uuid,
            ),
        )

    assert not directories.task_dir(set_uuid).exists()
    assert not directories.upload_dir(set_uuid).exists()


def test_only_gcp_files_means_no_images(directories, make_intake) -> None:
    set_uuid = str(uuid.uuid4())

    with pytest.raises(ValidationError, match="No images found"):
        make_intake().submit(IntakeRequest(files=[_image("gcp.txt")], set_uuid=set_uuid))

    assert not directories.task_dir(set_uuid).exists()
