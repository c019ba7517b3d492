"""文件内容存储抽象与实现：统一封装本地目录与 S3 的字节读写。

存储只认识不透明的 blob 引用（随机生成的文件名/对象 key），与条目名称、
所在文件夹完全解耦，因此重命名与移动永远不会触达这里。
"""

from __future__ import annotations

import os
import uuid
from pathlib import Path
from typing import BinaryIO, Iterator, Optional

from app.packages.filemanager.core.config import Settings
from app.packages.filemanager.core.constants import BLOB_READ_CHUNK_SIZE
from app.packages.filemanager.core.exceptions import BlobMissingError, BlobStoreError, InvalidInputError
from app.packages.filemanager.core.logger import logger


def new_blob_ref() -> str:
    return uuid.uuid4().hex


def _iter_file(fh: BinaryIO, chunk_size: int) -> Iterator[bytes]:
    try:
        while True:
            chunk = fh.read(chunk_size)
            if not chunk:
                break
            yield chunk
    finally:
        fh.close()


class BlobStore:
    """文件内容存储接口。"""

    def write(self, content: bytes) -> str:
        """持久化写入内容并返回新的 blob 引用；返回前必须已落盘。"""
        raise NotImplementedError

    def open(self, blob_ref: str) -> Iterator[bytes]:
        """按块读取内容；引用不存在时抛出 ``BlobMissingError``。"""
        raise NotImplementedError

    def exists(self, blob_ref: str) -> bool:
        raise NotImplementedError

    def delete(self, blob_ref: str) -> bool:
        """删除内容，返回是否确实删除了对象；失败时抛出 ``BlobStoreError``。"""
        raise NotImplementedError

    def rollback_write(self, blob_ref: str) -> None:
        """数据库写入失败后撤销已写入的内容，尽力而为，失败只记录日志。"""
        try:
            logger.warning("Rolling back blob write: %s", blob_ref)
            self.delete(blob_ref)
        except BlobStoreError:
            logger.exception("Failed to roll back blob write, orphaned blob: %s", blob_ref)


# ------------------------------------------
# 本地文件系统实现
# ------------------------------------------


class LocalBlobStore(BlobStore):
    def __init__(self, root: str | os.PathLike[str], *, chunk_size: int = BLOB_READ_CHUNK_SIZE):
        self.root = Path(root).resolve()
        self.chunk_size = chunk_size
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:  # pragma: no cover - 极端情况下可能失败
            raise BlobStoreError(f"无法创建本地存储目录: {exc}") from exc

    # 统一的安全路径拼接，防止路径遍历
    def _resolve(self, blob_ref: str) -> Path:
        ref = (blob_ref or "").strip()
        if not ref or "/" in ref or "\\" in ref or ref in {".", ".."}:
            raise InvalidInputError("非法的文件内容引用")
        candidate = (self.root / ref).resolve()
        if candidate.parent != self.root:
            raise InvalidInputError("非法的文件内容引用")
        return candidate

    def write(self, content: bytes) -> str:
        blob_ref = new_blob_ref()
        target = self._resolve(blob_ref)
        tmp = target.with_name(f".{blob_ref}.tmp")
        try:
            with open(tmp, "wb") as fh:
                fh.write(content)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, target)
        except OSError as exc:
            logger.exception("Local blob write failed: %s", blob_ref)
            tmp.unlink(missing_ok=True)
            raise BlobStoreError("文件内容写入失败") from exc
        logger.debug("Blob written: %s (%d bytes)", blob_ref, len(content))
        return blob_ref

    def open(self, blob_ref: str) -> Iterator[bytes]:
        path = self._resolve(blob_ref)
        try:
            fh = open(path, "rb")
        except FileNotFoundError as exc:
            raise BlobMissingError() from exc
        except OSError as exc:
            raise BlobStoreError("文件内容读取失败") from exc
        return _iter_file(fh, self.chunk_size)

    def exists(self, blob_ref: str) -> bool:
        return self._resolve(blob_ref).is_file()

    def delete(self, blob_ref: str) -> bool:
        path = self._resolve(blob_ref)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.exception("Local blob delete failed: %s", blob_ref)
            raise BlobStoreError("文件内容删除失败") from exc
        logger.debug("Blob deleted: %s", blob_ref)
        return True


# ------------------------------------------
# S3 实现（boto3）
# ------------------------------------------


class S3BlobStore(BlobStore):
    def __init__(
        self,
        *,
        bucket: str,
        region: Optional[str] = None,
        prefix: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        client=None,
    ):
        try:
            import boto3  # type: ignore
            from botocore.exceptions import BotoCoreError, ClientError  # type: ignore
        except ImportError as exc:
            raise BlobStoreError("S3 功能不可用：缺少依赖 boto3，请在后端安装后重试") from exc

        self._client_errors = (BotoCoreError, ClientError)
        self._client_error_type = ClientError
        self.bucket = bucket
        self.prefix = (prefix or "").strip("/")
        self._client = client or boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
        )

    # 拼接基于 prefix 的对象 key
    def _key(self, blob_ref: str) -> str:
        ref = (blob_ref or "").strip()
        if not ref or "/" in ref:
            raise InvalidInputError("非法的文件内容引用")
        return f"{self.prefix}/{ref}" if self.prefix else ref

    def _is_missing(self, exc: Exception) -> bool:
        if not isinstance(exc, self._client_error_type):
            return False
        code = str(exc.response.get("Error", {}).get("Code", ""))
        return code in {"404", "NoSuchKey", "NotFound"}

    def write(self, content: bytes) -> str:
        blob_ref = new_blob_ref()
        try:
            self._client.put_object(Bucket=self.bucket, Key=self._key(blob_ref), Body=content)
        except self._client_errors as exc:
            logger.exception("S3 blob write failed: %s", blob_ref)
            raise BlobStoreError("文件内容写入失败") from exc
        return blob_ref

    def open(self, blob_ref: str) -> Iterator[bytes]:
        try:
            resp = self._client.get_object(Bucket=self.bucket, Key=self._key(blob_ref))
        except self._client_errors as exc:
            if self._is_missing(exc):
                raise BlobMissingError() from exc
            raise BlobStoreError("文件内容读取失败") from exc
        return resp["Body"].iter_chunks(chunk_size=BLOB_READ_CHUNK_SIZE)

    def exists(self, blob_ref: str) -> bool:
        try:
            self._client.head_object(Bucket=self.bucket, Key=self._key(blob_ref))
        except self._client_errors as exc:
            if self._is_missing(exc):
                return False
            raise BlobStoreError("文件内容状态查询失败") from exc
        return True

    def delete(self, blob_ref: str) -> bool:
        # S3 的 delete_object 对不存在的 key 同样返回成功，先探测以便区分
        if not self.exists(blob_ref):
            return False
        try:
            self._client.delete_object(Bucket=self.bucket, Key=self._key(blob_ref))
        except self._client_errors as exc:
            logger.exception("S3 blob delete failed: %s", blob_ref)
            raise BlobStoreError("文件内容删除失败") from exc
        return True


def build_blob_store(settings: Settings) -> BlobStore:
    backend = (settings.blob_backend or "").upper()
    if backend == "LOCAL":
        return LocalBlobStore(settings.blob_directory)
    if backend == "S3":
        if not settings.s3_bucket:
            raise BlobStoreError("S3 配置不完整：缺少 S3_BUCKET")
        return S3BlobStore(
            bucket=settings.s3_bucket,
            region=settings.s3_region,
            prefix=settings.s3_prefix,
            endpoint_url=settings.s3_endpoint_url,
            access_key_id=settings.s3_access_key_id,
            secret_access_key=settings.s3_secret_access_key,
        )
    raise BlobStoreError(f"不支持的存储类型: {settings.blob_backend}")
