"""常量定义：集中维护 HTTP 状态码、错误码与文件树相关的限制。"""

from typing import Final

HTTP_STATUS_OK: Final = 200
HTTP_STATUS_CREATED: Final = 201
HTTP_STATUS_NO_CONTENT: Final = 204
HTTP_STATUS_MULTI_STATUS: Final = 207
HTTP_STATUS_BAD_REQUEST: Final = 400
HTTP_STATUS_NOT_FOUND: Final = 404
HTTP_STATUS_CONFLICT: Final = 409
HTTP_STATUS_UNPROCESSABLE_ENTITY: Final = 422
HTTP_STATUS_INTERNAL_SERVER_ERROR: Final = 500

# 对外暴露的错误码（响应体 ``code`` 字段）
ERROR_INVALID_INPUT: Final = "INVALID_INPUT"
ERROR_INVALID_NAME: Final = "INVALID_NAME"
ERROR_NOT_FOUND: Final = "NOT_FOUND"
ERROR_PARENT_NOT_FOUND: Final = "PARENT_NOT_FOUND"
ERROR_INVALID_PARENT: Final = "INVALID_PARENT"
ERROR_DUPLICATE_FOLDER: Final = "DUPLICATE_FOLDER"
ERROR_DUPLICATE_NAME: Final = "DUPLICATE_NAME"
ERROR_DUPLICATE_ID: Final = "DUPLICATE_ID"
ERROR_CONFLICT: Final = "CONFLICT"
ERROR_IS_FOLDER: Final = "IS_FOLDER"
ERROR_FOLDER_NOT_EMPTY: Final = "FOLDER_NOT_EMPTY"
ERROR_BLOB_MISSING: Final = "BLOB_MISSING"
ERROR_UPLOAD_FAILED: Final = "UPLOAD_FAILED"
ERROR_INTEGRITY: Final = "INTEGRITY_ERROR"
ERROR_STORAGE: Final = "STORAGE_ERROR"
ERROR_VALIDATION: Final = "VALIDATION_ERROR"
ERROR_SERVER: Final = "SERVER_ERROR"

# 批量上传中单个文件的失败原因
UPLOAD_ERROR_DUPLICATE: Final = "DUPLICATE"
UPLOAD_ERROR_INVALID_NAME: Final = "INVALID_NAME"
UPLOAD_ERROR_TOO_LARGE: Final = "FILE_TOO_LARGE"
UPLOAD_ERROR_PROCESSING: Final = "PROCESSING_ERROR"

# 批量上传的汇总结果
UPLOAD_OUTCOME_SUCCESS: Final = "success"
UPLOAD_OUTCOME_PARTIAL: Final = "partial"
UPLOAD_OUTCOME_FAILED: Final = "failed"
PARTIAL_SUCCESS_CODE: Final = "PARTIAL_SUCCESS"

# 名称规则
MAX_NAME_LENGTH: Final = 255
INVALID_NAME_CHARS: Final = frozenset('<>:"/\\|?*')
RESERVED_NAMES: Final = frozenset({".", ".."})

DEFAULT_MIME_TYPE: Final = "application/octet-stream"
BLOB_READ_CHUNK_SIZE: Final = 64 * 1024
