"""文件树条目路由：列表、新建文件夹/上传、下载、删除、移动/重命名、路径查询。

所有业务校验都在 ``ItemService`` 中完成，这里只负责协议转换：解析请求、
调用服务、把结果与异常映射为 HTTP 响应。
"""

from __future__ import annotations

from typing import Any, Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from app.packages.filemanager.api.v1.schemas.items import (
    ErrorResponse,
    FolderCreateBody,
    ItemListResponse,
    ItemResponse,
    ItemUpdateBody,
    PartialUploadResponse,
    serialize_item,
)
from app.packages.filemanager.core import constants
from app.packages.filemanager.core.dependencies import get_db, get_item_service
from app.packages.filemanager.core.exceptions import InvalidInputError, UploadFailedError
from app.packages.filemanager.services.item_service import UNSET, FilePayload, ItemService, UploadResult

router = APIRouter(tags=["items"])

_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    constants.HTTP_STATUS_BAD_REQUEST: {"model": ErrorResponse},
    constants.HTTP_STATUS_NOT_FOUND: {"model": ErrorResponse},
    constants.HTTP_STATUS_CONFLICT: {"model": ErrorResponse},
}


def _content_disposition(filename: str) -> str:
    # 非 ASCII 文件名按 RFC 5987 编码，同时给出 ASCII 兜底
    fallback = filename.encode("ascii", "ignore").decode("ascii").replace('"', "") or "download"
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


def _form_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, UploadFile):
        return None
    return str(value)


def _upload_response(result: UploadResult) -> JSONResponse:
    successful = [serialize_item(item) for item in result.successful]
    failed = [failure.to_dict() for failure in result.failed]
    outcome = result.outcome
    if outcome == constants.UPLOAD_OUTCOME_FAILED:
        raise UploadFailedError(data={"errors": failed})
    if outcome == constants.UPLOAD_OUTCOME_PARTIAL:
        return JSONResponse(
            status_code=constants.HTTP_STATUS_MULTI_STATUS,
            content={
                "code": constants.PARTIAL_SUCCESS_CODE,
                "message": f"{len(successful)} 个文件上传成功，{len(failed)} 个文件上传失败",
                "successful": successful,
                "failed": failed,
            },
        )
    return JSONResponse(status_code=constants.HTTP_STATUS_CREATED, content={"items": successful})


@router.get("/items", response_model=ItemListResponse, response_model_exclude_unset=True)
def list_items(
    parent_id: Optional[str] = Query(None, alias="parentId"),
    db: Session = Depends(get_db),
    service: ItemService = Depends(get_item_service),
):
    items = service.list_items(db, parent_id=parent_id)
    return {"items": [serialize_item(item) for item in items]}


@router.post(
    "/items",
    status_code=constants.HTTP_STATUS_CREATED,
    responses={
        constants.HTTP_STATUS_MULTI_STATUS: {"model": PartialUploadResponse},
        **_ERROR_RESPONSES,
    },
)
async def create_items(
    request: Request,
    db: Session = Depends(get_db),
    service: ItemService = Depends(get_item_service),
):
    """multipart 携带 ``files`` 时按批量上传处理，否则按新建文件夹处理（JSON 或表单）。"""
    content_type = request.headers.get("content-type", "").lower()

    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        uploads = [f for f in [*form.getlist("files"), *form.getlist("files[]")] if isinstance(f, UploadFile)]
        if uploads or form.get("name") is None:
            payloads = [
                FilePayload(filename=up.filename, content=await up.read(), content_type=up.content_type)
                for up in uploads
            ]
            result = await run_in_threadpool(
                service.upload_files, db, files=payloads, parent_id=_form_text(form.get("parentId"))
            )
            return _upload_response(result)
        raw: Any = {key: _form_text(form.get(key)) for key in ("name", "folder", "parentId") if key in form}
    elif content_type.startswith("application/json"):
        try:
            raw = await request.json()
        except ValueError as exc:
            raise InvalidInputError("请求体不是合法的 JSON") from exc
    else:
        form = await request.form()
        raw = {key: _form_text(value) for key, value in form.items()}

    if not isinstance(raw, dict):
        raise InvalidInputError("请求体必须是对象")
    try:
        body = FolderCreateBody.model_validate(raw)
    except ValidationError as exc:
        raise RequestValidationError(exc.errors()) from exc
    if not body.folder:
        raise InvalidInputError("创建文件请使用 multipart 上传")
    if body.name is None:
        raise InvalidInputError("缺少名称 name")

    item = await run_in_threadpool(service.create_folder, db, name=body.name, parent_id=body.parentId)
    return JSONResponse(status_code=constants.HTTP_STATUS_CREATED, content={"item": serialize_item(item)})


@router.get("/items/{item_id}", response_class=StreamingResponse, responses=_ERROR_RESPONSES)
def download_item(
    item_id: str,
    db: Session = Depends(get_db),
    service: ItemService = Depends(get_item_service),
):
    handle = service.download_file(db, item_id)
    headers = {"Content-Disposition": _content_disposition(handle.name)}
    if handle.size is not None:
        headers["Content-Length"] = str(handle.size)
    return StreamingResponse(handle.chunks, media_type=handle.mime_type, headers=headers)


@router.delete(
    "/items/{item_id}",
    status_code=constants.HTTP_STATUS_NO_CONTENT,
    response_class=Response,
    responses=_ERROR_RESPONSES,
)
def delete_item(
    item_id: str,
    db: Session = Depends(get_db),
    service: ItemService = Depends(get_item_service),
):
    service.delete_item(db, item_id)
    return Response(status_code=constants.HTTP_STATUS_NO_CONTENT)


@router.patch(
    "/items/{item_id}",
    response_model=ItemResponse,
    response_model_exclude_unset=True,
    responses=_ERROR_RESPONSES,
)
def update_item(
    item_id: str,
    body: ItemUpdateBody,
    db: Session = Depends(get_db),
    service: ItemService = Depends(get_item_service),
):
    """移动和/或重命名；请求体中显式给出 ``parentId: null`` 表示移动到根级。"""
    parent_id = body.parentId if "parentId" in body.model_fields_set else UNSET
    item = service.move_or_rename(db, item_id, parent_id=parent_id, name=body.name)
    return {"item": serialize_item(item)}


@router.get(
    "/items/{item_id}/path",
    response_model=ItemListResponse,
    response_model_exclude_unset=True,
    responses=_ERROR_RESPONSES,
)
def get_item_path(
    item_id: str,
    db: Session = Depends(get_db),
    service: ItemService = Depends(get_item_service),
):
    items = service.get_path(db, item_id)
    return {"items": [serialize_item(item) for item in items]}
