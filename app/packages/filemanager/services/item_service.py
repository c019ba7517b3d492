"""文件树变更引擎：唯一了解树结构约束的组件。

职责：
- 列表、新建文件夹、批量上传、下载、删除、移动/重命名、路径查询；
- 维护不变量：父链无环、父节点必须是已存在的文件夹、同级同类名称唯一、
  非空文件夹不可删除、删除文件时释放其内容；
- 所有写操作在进程级写锁内串行执行，跨进程的并发由数据库唯一索引兜底。
"""

from __future__ import annotations

import mimetypes
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional, Sequence

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.packages.filemanager.core import constants
from app.packages.filemanager.core.config import get_settings
from app.packages.filemanager.core.exceptions import (
    AppException,
    BlobMissingError,
    BlobStoreError,
    DuplicateFolderError,
    DuplicateNameError,
    FolderNotEmptyError,
    InvalidInputError,
    InvalidParentError,
    IsFolderError,
    ItemNotFoundError,
    ParentNotFoundError,
    TreeIntegrityError,
)
from app.packages.filemanager.core.logger import logger
from app.packages.filemanager.core.timezone import now
from app.packages.filemanager.crud.item import item_crud
from app.packages.filemanager.models.item import Item
from app.packages.filemanager.services.blob_store import BlobStore
from app.packages.filemanager.utils.name_utils import name_problem, normalize_name, upload_basename

# 单进程内的写锁；可重入以便内部辅助方法嵌套调用
_write_lock = threading.RLock()


class _Unset:
    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return "UNSET"


# 区分"未提供 parentId"与"parentId 为 null（移动到根级）"
UNSET: Any = _Unset()


def new_item_id() -> str:
    return str(uuid.uuid4())


@dataclass
class FilePayload:
    """一次上传中的单个文件。"""

    filename: Optional[str]
    content: bytes
    content_type: Optional[str] = None


@dataclass
class UploadFailure:
    filename: str
    error: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"filename": self.filename, "error": self.error, "message": self.message}


@dataclass
class UploadResult:
    successful: list[Item] = field(default_factory=list)
    failed: list[UploadFailure] = field(default_factory=list)

    @property
    def outcome(self) -> str:
        if not self.failed:
            return constants.UPLOAD_OUTCOME_SUCCESS
        if not self.successful:
            return constants.UPLOAD_OUTCOME_FAILED
        return constants.UPLOAD_OUTCOME_PARTIAL


@dataclass
class DownloadHandle:
    name: str
    mime_type: str
    size: Optional[int]
    chunks: Iterator[bytes]


def _sort_key(item: Item) -> tuple:
    # 文件夹在前，其次按名称（忽略大小写），最后按 id 保证稳定
    return (not item.is_folder, item.name.casefold(), item.id)


def guess_mime_type(filename: str, content_type: Optional[str]) -> str:
    declared = (content_type or "").split(";", 1)[0].strip()
    if declared:
        return declared
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or constants.DEFAULT_MIME_TYPE


class ItemService:
    def __init__(
        self,
        blob_store: BlobStore,
        *,
        max_upload_files: Optional[int] = None,
        max_upload_size: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self.blob_store = blob_store
        self.max_upload_files = max_upload_files or settings.max_upload_files
        self.max_upload_size = max_upload_size or settings.max_upload_size

    # ----------------------------
    # 查询
    # ----------------------------
    def list_items(self, db: Session, *, parent_id: Optional[str] = None) -> list[Item]:
        """返回 ``parent_id`` 的直接子项；未提供时返回全部条目。不存在的父节点得到空列表。"""
        if parent_id:
            items = item_crud.list_children(db, parent_id)
        else:
            items = item_crud.list_all(db)
        return sorted(items, key=_sort_key)

    def get_item(self, db: Session, item_id: str) -> Item:
        item = item_crud.get(db, item_id)
        if item is None:
            raise ItemNotFoundError()
        return item

    def get_path(self, db: Session, item_id: str) -> list[Item]:
        """沿父链向上走到根，按 根 → 条目自身 的顺序返回。

        步数以条目总数为上限；超过上限、重复访问同一节点或父节点缺失都说明数据已损坏。
        """
        item = self.get_item(db, item_id)
        bound = item_crud.count(db)
        chain = [item]
        seen = {item.id}
        current = item
        while current.parent_id is not None:
            parent_id = current.parent_id
            if parent_id in seen or len(chain) >= bound:
                logger.error("Cycle detected in parent chain of item %s at %s", item_id, parent_id)
                raise TreeIntegrityError("检测到父链存在环")
            parent = item_crud.get(db, parent_id)
            if parent is None:
                logger.error("Dangling parent reference in chain of item %s: %s", item_id, parent_id)
                raise TreeIntegrityError("父链引用了不存在的条目")
            chain.append(parent)
            seen.add(parent.id)
            current = parent
        chain.reverse()
        return chain

    # ----------------------------
    # 新建文件夹
    # ----------------------------
    def create_folder(self, db: Session, *, name: Optional[str], parent_id: Optional[str] = None) -> Item:
        folder_name = normalize_name(name)
        parent_id = parent_id or None
        with _write_lock:
            self._require_folder(db, parent_id)
            if item_crud.find_sibling(db, parent_id=parent_id, name=folder_name, is_folder=True):
                logger.warning("Duplicate folder rejected: %r under %s", folder_name, parent_id)
                raise DuplicateFolderError()
            timestamp = now()
            item = Item(
                id=new_item_id(),
                parent_id=parent_id,
                name=folder_name,
                is_folder=True,
                created_at=timestamp,
                modified_at=timestamp,
            )
            try:
                item = item_crud.insert(db, item)
            except IntegrityError as exc:
                raise self._conflict(
                    db, parent_id=parent_id, name=folder_name, is_folder=True, duplicate=DuplicateFolderError
                ) from exc
        logger.info("Folder created: %s %r parent=%s", item.id, item.name, item.parent_id)
        return item

    # ----------------------------
    # 批量上传
    # ----------------------------
    def upload_files(
        self,
        db: Session,
        *,
        files: Sequence[FilePayload],
        parent_id: Optional[str] = None,
    ) -> UploadResult:
        """逐个处理上传文件，单个文件失败不影响其余文件。

        对每个文件先持久化写入内容，再写入元数据；元数据写入失败时回滚已写入的内容。
        """
        if not files:
            raise InvalidInputError("未选择任何文件")
        if len(files) > self.max_upload_files:
            raise InvalidInputError(f"单次最多上传 {self.max_upload_files} 个文件")
        parent_id = parent_id or None

        result = UploadResult()
        with _write_lock:
            self._require_folder(db, parent_id)
            for payload in files:
                outcome = self._upload_one(db, payload, parent_id)
                if isinstance(outcome, UploadFailure):
                    result.failed.append(outcome)
                else:
                    result.successful.append(outcome)

        logger.info(
            "Upload finished under %s: %d succeeded, %d failed",
            parent_id,
            len(result.successful),
            len(result.failed),
        )
        return result

    def _upload_one(self, db: Session, payload: FilePayload, parent_id: Optional[str]) -> Item | UploadFailure:
        raw_name = upload_basename(payload.filename)
        filename = raw_name.strip()
        label = filename or (payload.filename or "")

        problem = name_problem(filename)
        if problem:
            return UploadFailure(label, constants.UPLOAD_ERROR_INVALID_NAME, problem)
        if len(payload.content) > self.max_upload_size:
            return UploadFailure(
                label,
                constants.UPLOAD_ERROR_TOO_LARGE,
                f"文件大小超过限制（最大 {self.max_upload_size} 字节）",
            )
        if item_crud.find_sibling(db, parent_id=parent_id, name=filename, is_folder=False):
            return UploadFailure(label, constants.UPLOAD_ERROR_DUPLICATE, "当前位置已存在同名文件")

        try:
            blob_ref = self.blob_store.write(payload.content)
        except BlobStoreError as exc:
            return UploadFailure(label, constants.UPLOAD_ERROR_PROCESSING, exc.detail)

        timestamp = now()
        item = Item(
            id=new_item_id(),
            parent_id=parent_id,
            name=filename,
            is_folder=False,
            blob_ref=blob_ref,
            size_bytes=len(payload.content),
            mime_type=guess_mime_type(filename, payload.content_type),
            created_at=timestamp,
            modified_at=timestamp,
        )
        try:
            item = item_crud.insert(db, item)
        except IntegrityError:
            self.blob_store.rollback_write(blob_ref)
            if item_crud.find_sibling(db, parent_id=parent_id, name=filename, is_folder=False):
                return UploadFailure(label, constants.UPLOAD_ERROR_DUPLICATE, "当前位置已存在同名文件")
            logger.exception("Failed to record uploaded file %r", filename)
            return UploadFailure(label, constants.UPLOAD_ERROR_PROCESSING, "文件记录写入失败")
        except (SQLAlchemyError, AppException) as exc:
            self.blob_store.rollback_write(blob_ref)
            logger.exception("Failed to record uploaded file %r", filename)
            message = exc.detail if isinstance(exc, AppException) else "文件记录写入失败"
            return UploadFailure(label, constants.UPLOAD_ERROR_PROCESSING, message)

        logger.info("File uploaded: %s %r (%d bytes) parent=%s", item.id, item.name, item.size_bytes, parent_id)
        return item

    # ----------------------------
    # 下载
    # ----------------------------
    def download_file(self, db: Session, item_id: str) -> DownloadHandle:
        item = self.get_item(db, item_id)
        if item.is_folder:
            raise IsFolderError()
        if not item.blob_ref:
            raise BlobMissingError()
        chunks = self.blob_store.open(item.blob_ref)
        return DownloadHandle(
            name=item.name,
            mime_type=item.mime_type or constants.DEFAULT_MIME_TYPE,
            size=item.size_bytes,
            chunks=chunks,
        )

    # ----------------------------
    # 删除
    # ----------------------------
    def delete_item(self, db: Session, item_id: str) -> None:
        with _write_lock:
            item = self.get_item(db, item_id)
            if item.is_folder:
                if item_crud.has_children(db, item.id):
                    logger.warning("Refusing to delete non-empty folder %s", item.id)
                    raise FolderNotEmptyError()
            elif item.blob_ref:
                # 内容删除失败时直接抛出，元数据保持不变
                if not self.blob_store.delete(item.blob_ref):
                    logger.warning("Blob already missing for item %s: %s", item.id, item.blob_ref)
            try:
                item_crud.remove(db, item.id)
            except IntegrityError as exc:
                # 检查之后其他进程在该文件夹下写入了子项，由外键约束拦截
                if item.is_folder and item_crud.has_children(db, item.id):
                    logger.warning("Folder %s gained children before delete committed", item.id)
                    raise FolderNotEmptyError() from exc
                logger.error("Unexpected integrity violation deleting item %s", item.id)
                raise TreeIntegrityError("数据完整性校验失败") from exc
        logger.info("Item deleted: %s %r", item.id, item.name)

    # ----------------------------
    # 移动 / 重命名
    # ----------------------------
    def move_or_rename(
        self,
        db: Session,
        item_id: str,
        *,
        parent_id: Any = UNSET,
        name: Optional[str] = None,
    ) -> Item:
        """移动和/或重命名条目。

        ``parent_id`` 保持 ``UNSET`` 表示不移动，传入 ``None`` 表示移动到根级。
        即使位置与名称都未变化，也会刷新修改时间。
        """
        if parent_id is UNSET and name is None:
            raise InvalidInputError("至少需要提供 parentId 或 name 之一")

        with _write_lock:
            item = self.get_item(db, item_id)

            target_parent = item.parent_id
            if parent_id is not UNSET:
                target_parent = parent_id or None
                if target_parent is not None:
                    if target_parent == item.id:
                        raise InvalidParentError("不能将条目移动到自身")
                    self._require_folder(db, target_parent)
                    self._ensure_not_descendant(db, item.id, target_parent)

            target_name = item.name if name is None else normalize_name(name)

            if (target_parent, target_name) != (item.parent_id, item.name):
                clash = item_crud.find_sibling(
                    db,
                    parent_id=target_parent,
                    name=target_name,
                    is_folder=item.is_folder,
                    exclude_id=item.id,
                )
                if clash is not None:
                    logger.warning("Name clash moving %s to %r under %s", item.id, target_name, target_parent)
                    raise DuplicateNameError()

            try:
                item = item_crud.update(
                    db,
                    item.id,
                    {"parent_id": target_parent, "name": target_name, "modified_at": now()},
                )
            except IntegrityError as exc:
                raise self._conflict(
                    db,
                    parent_id=target_parent,
                    name=target_name,
                    is_folder=item.is_folder,
                    duplicate=DuplicateNameError,
                ) from exc
        logger.info("Item updated: %s %r parent=%s", item.id, item.name, item.parent_id)
        return item

    # ----------------------------
    # 内部辅助
    # ----------------------------
    def _require_folder(self, db: Session, parent_id: Optional[str]) -> Optional[Item]:
        if parent_id is None:
            return None
        parent = item_crud.get(db, parent_id)
        if parent is None or not parent.is_folder:
            raise ParentNotFoundError()
        return parent

    def _ensure_not_descendant(self, db: Session, item_id: str, target_id: str) -> None:
        """从目标文件夹向上走到根，途经 ``item_id`` 说明目标是条目自身的后代。"""
        bound = item_crud.count(db)
        steps = 0
        current: Optional[str] = target_id
        while current is not None:
            if current == item_id:
                logger.warning("Move of %s under its descendant %s rejected", item_id, target_id)
                raise InvalidParentError()
            steps += 1
            if steps > bound:
                logger.error("Ancestor walk from %s exceeded %d steps", target_id, bound)
                raise TreeIntegrityError("检测到父链存在环")
            node = item_crud.get(db, current)
            if node is None:
                logger.error("Dangling parent reference while walking from %s: %s", target_id, current)
                raise TreeIntegrityError("父链引用了不存在的条目")
            current = node.parent_id

    def _conflict(
        self,
        db: Session,
        *,
        parent_id: Optional[str],
        name: str,
        is_folder: bool,
        duplicate: type[AppException],
    ) -> AppException:
        """把提交时的约束冲突翻译为业务异常。"""
        if item_crud.find_sibling(db, parent_id=parent_id, name=name, is_folder=is_folder):
            return duplicate()
        if parent_id is not None and item_crud.get(db, parent_id) is None:
            return ParentNotFoundError()
        logger.error("Unexpected integrity violation for %r under %s", name, parent_id)
        return TreeIntegrityError("数据完整性校验失败")
