"""HTTP surface of the node."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, File, Form, Header, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse

from odm_node import __version__
from odm_node.api.intake import IntakeRequest, UploadedFile
from odm_node.node import Node
from odm_node.taskqueue.assets import ARCHIVE_NAME, AssetPackager
from odm_node.taskqueue.errors import TaskError, UUIDNotFound
from odm_node.taskqueue.models import OperationResult
from odm_node.taskqueue.task import Task

logger = logging.getLogger(__name__)

UUID_MISSING = "uuid param missing"


def create_app(node: Node) -> FastAPI:
    """Build the app; the lifespan starts and stops the task manager."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        node.manager.start()
        try:
            yield
        finally:
            node.manager.shutdown()
            node.close()

    app = FastAPI(title="odm-node", version=__version__, lifespan=lifespan)
    app.state.node = node

    @app.exception_handler(TaskError)
    async def task_error_handler(request: Request, exc: TaskError) -> JSONResponse:
        return _error(str(exc))

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse({"error": str(exc)}, status_code=500)

    @app.post("/task/new")
    def task_new(  # noqa: PLR0913
        images: list[UploadFile] | None = File(None),  # noqa: B008
        name: str | None = Form(None),
        options: str | None = Form(None),
        webhook: str | None = Form(None),
        skip_post_processing: str | None = Form(None, alias="skipPostProcessing"),
        zipurl: str | None = Form(None),
        set_uuid: str | None = Header(None, alias="set-uuid"),
    ) -> dict[str, Any]:
        request = IntakeRequest(
            files=[UploadedFile(filename=upload.filename or "", stream=upload.file) for upload in images or []],
            name=name,
            options=options,
            webhook=webhook or None,
            skip_post_processing=_form_bool(skip_post_processing),
            zip_url=zipurl or None,
            set_uuid=set_uuid,
        )
        task = node.intake.submit(request)
        return {"uuid": task.id}

    @app.get("/task/list")
    def task_list() -> list[dict[str, str]]:
        return [{"uuid": task.id} for task in node.manager.list_tasks()]

    @app.get("/task/{task_id}/info")
    def task_info(task_id: str) -> dict[str, Any]:
        return _require_task(node, task_id).get_info()

    @app.get("/task/{task_id}/output")
    def task_output(task_id: str, line: str | None = None) -> list[str]:
        return _require_task(node, task_id).get_output(_parse_line(line))

    @app.get("/task/{task_id}/download/{asset}", response_model=None)
    def task_download(task_id: str, asset: str) -> FileResponse | JSONResponse:
        task = _require_task(node, task_id)
        if not AssetPackager.is_known_asset(asset):
            return _error("Invalid asset")
        path = task.get_assets_archive_path(asset)
        if path is None:
            return _error("Asset not ready")
        media_type = "application/zip" if asset == ARCHIVE_NAME else None
        return FileResponse(path, filename=asset, media_type=media_type)

    @app.post("/task/cancel")
    def task_cancel(uuid: str | None = Form(None)) -> dict[str, Any]:
        if not uuid:
            return {"error": UUID_MISSING}
        return node.manager.cancel(uuid).to_dict()

    @app.post("/task/remove")
    def task_remove(uuid: str | None = Form(None)) -> dict[str, Any]:
        if not uuid:
            return {"error": UUID_MISSING}
        return node.manager.remove(uuid).to_dict()

    @app.post("/task/restart")
    def task_restart(
        uuid: str | None = Form(None),
        options: str | None = Form(None),
    ) -> dict[str, Any]:
        if not uuid:
            return {"error": UUID_MISSING}
        new_options = node.validator.filter_options(options) if options else None
        result: OperationResult = node.manager.restart(uuid, new_options)
        return result.to_dict()

    @app.get("/options")
    def options() -> list[dict[str, Any]]:
        return node.validator.get_options()

    @app.get("/info")
    def info() -> dict[str, Any]:
        settings = node.settings
        return {
            "version": __version__,
            "taskQueueCount": node.manager.get_queue_count(),
            "maxImages": settings.server.max_images or None,
            "maxParallelTasks": settings.queue.max_parallel_tasks,
        }

    return app


def _require_task(node: Node, task_id: str) -> Task:
    task = node.manager.find(task_id)
    if task is None:
        raise UUIDNotFound(task_id)
    return task


def _error(message: str) -> JSONResponse:
    return JSONResponse({"error": message})


def _form_bool(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_line(value: str | None) -> int:
    """Output offset from the query string; anything unparsable means the start."""

    if value is None:
        return 0
    try:
        return int(value)
    except ValueError:
        return 0
