"""异常处理模块：定义文件树的业务异常与统一的错误响应格式。

所有业务异常均继承 ``AppException``（``HTTPException`` 的子类），携带对外错误码
``error_code``；全局处理器负责把它们渲染为 ``{"code", "desc", ...}`` 结构。
"""

from typing import Any, Optional

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.packages.filemanager.core import constants
from app.packages.filemanager.core.logger import logger
from app.packages.filemanager.core.responses import create_error_response


class AppException(HTTPException):
    """携带统一错误码的业务异常，方便在全局处理中转换响应体。"""

    error_code: str = constants.ERROR_SERVER
    status: int = constants.HTTP_STATUS_INTERNAL_SERVER_ERROR
    default_msg: str = "服务器内部错误"

    def __init__(self, msg: Optional[str] = None, *, data: Optional[dict[str, Any]] = None) -> None:
        super().__init__(status_code=self.status, detail=msg or self.default_msg)
        self.data = data


class InvalidInputError(AppException):
    error_code = constants.ERROR_INVALID_INPUT
    status = constants.HTTP_STATUS_BAD_REQUEST
    default_msg = "请求参数不完整或不合法"


class InvalidNameError(AppException):
    error_code = constants.ERROR_INVALID_NAME
    status = constants.HTTP_STATUS_BAD_REQUEST
    default_msg = "名称不能为空"


class ItemNotFoundError(AppException):
    error_code = constants.ERROR_NOT_FOUND
    status = constants.HTTP_STATUS_NOT_FOUND
    default_msg = "条目不存在"


class ParentNotFoundError(AppException):
    error_code = constants.ERROR_PARENT_NOT_FOUND
    status = constants.HTTP_STATUS_NOT_FOUND
    default_msg = "父文件夹不存在"


class InvalidParentError(AppException):
    error_code = constants.ERROR_INVALID_PARENT
    status = constants.HTTP_STATUS_BAD_REQUEST
    default_msg = "不能将条目移动到自身或其子文件夹中"


class DuplicateFolderError(AppException):
    error_code = constants.ERROR_DUPLICATE_FOLDER
    status = constants.HTTP_STATUS_CONFLICT
    default_msg = "当前位置已存在同名文件夹"


class DuplicateNameError(AppException):
    error_code = constants.ERROR_DUPLICATE_NAME
    status = constants.HTTP_STATUS_CONFLICT
    default_msg = "当前位置已存在同名条目"


class DuplicateIdError(AppException):
    error_code = constants.ERROR_DUPLICATE_ID
    status = constants.HTTP_STATUS_CONFLICT
    default_msg = "条目 ID 已存在"


class IsFolderError(AppException):
    error_code = constants.ERROR_IS_FOLDER
    status = constants.HTTP_STATUS_BAD_REQUEST
    default_msg = "文件夹不支持下载"


class FolderNotEmptyError(AppException):
    error_code = constants.ERROR_FOLDER_NOT_EMPTY
    status = constants.HTTP_STATUS_BAD_REQUEST
    default_msg = "文件夹不为空，无法删除"


class BlobMissingError(AppException):
    """条目引用的文件内容在存储中已不存在（数据完整性问题）。"""

    error_code = constants.ERROR_BLOB_MISSING
    status = constants.HTTP_STATUS_NOT_FOUND
    default_msg = "文件内容在存储中不存在"


class UploadFailedError(AppException):
    error_code = constants.ERROR_UPLOAD_FAILED
    status = constants.HTTP_STATUS_BAD_REQUEST
    default_msg = "所有文件均上传失败"


class TreeIntegrityError(AppException):
    """父链出现环路或悬挂引用，说明数据已损坏，只报告不修复。"""

    error_code = constants.ERROR_INTEGRITY
    status = constants.HTTP_STATUS_INTERNAL_SERVER_ERROR
    default_msg = "文件树数据完整性错误"


class BlobStoreError(AppException):
    error_code = constants.ERROR_STORAGE
    status = constants.HTTP_STATUS_INTERNAL_SERVER_ERROR
    default_msg = "文件存储操作失败"


_STATUS_FALLBACK_CODES = {
    constants.HTTP_STATUS_BAD_REQUEST: constants.ERROR_INVALID_INPUT,
    constants.HTTP_STATUS_NOT_FOUND: constants.ERROR_NOT_FOUND,
    constants.HTTP_STATUS_CONFLICT: constants.ERROR_CONFLICT,
}


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """将 ``HTTPException``（含业务异常）转换为统一错误结构。"""
    code = getattr(exc, "error_code", None) or _STATUS_FALLBACK_CODES.get(exc.status_code, constants.ERROR_SERVER)
    payload = create_error_response(code, str(exc.detail), **(getattr(exc, "data", None) or {}))
    return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """统一处理请求体验证失败的场景。"""

    def _serialize(obj: Any) -> Any:
        if isinstance(obj, Exception):
            return str(obj)
        if isinstance(obj, dict):
            return {key: _serialize(value) for key, value in obj.items()}
        if isinstance(obj, (list, tuple)):
            return [_serialize(item) for item in obj]
        return obj

    payload = create_error_response(constants.ERROR_VALIDATION, "请求参数验证失败", errors=_serialize(exc.errors()))
    return JSONResponse(status_code=constants.HTTP_STATUS_UNPROCESSABLE_ENTITY, content=payload)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """兜底处理：记录未捕获异常并转换为标准的 500 响应结构。"""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    payload = create_error_response(constants.ERROR_SERVER, "服务器内部错误")
    return JSONResponse(status_code=constants.HTTP_STATUS_INTERNAL_SERVER_ERROR, content=payload)
