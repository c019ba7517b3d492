"""文件树条目的请求/响应模型。"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.packages.filemanager.core.timezone import format_iso
from app.packages.filemanager.models.item import Item


class ItemOut(BaseModel):
    """对外的条目结构；文件夹不返回 filePath/size/mimeType。"""

    id: str
    parentId: Optional[str] = None
    name: str
    folder: bool
    creation: Optional[str] = None
    modification: Optional[str] = None
    filePath: Optional[str] = None
    size: Optional[int] = None
    mimeType: Optional[str] = None


def serialize_item(item: Item) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": item.id,
        "parentId": item.parent_id,
        "name": item.name,
        "folder": item.is_folder,
        "creation": format_iso(item.created_at),
        "modification": format_iso(item.modified_at),
    }
    if not item.is_folder:
        data["filePath"] = item.blob_ref
        data["size"] = item.size_bytes
        data["mimeType"] = item.mime_type
    return data


class FolderCreateBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    folder: bool = True
    parentId: Optional[str] = None


class ItemUpdateBody(BaseModel):
    """移动/重命名请求；``parentId`` 是否出现在请求体中需通过 ``model_fields_set`` 判断。"""

    model_config = ConfigDict(extra="ignore")

    parentId: Optional[str] = None
    name: Optional[str] = None


class UploadFailureOut(BaseModel):
    filename: str
    error: str
    message: str


class ItemResponse(BaseModel):
    item: ItemOut


class ItemListResponse(BaseModel):
    items: list[ItemOut] = Field(default_factory=list)


class PartialUploadResponse(BaseModel):
    code: str
    message: str
    successful: list[ItemOut]
    failed: list[UploadFailureOut]


class ErrorResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    code: str
    desc: str
