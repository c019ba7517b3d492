"""依赖注入模块：封装 FastAPI 中复用度高的依赖函数。"""

from collections.abc import Generator
from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from app.packages.filemanager.core.config import get_settings
from app.packages.filemanager.db import session as db_session
from app.packages.filemanager.services.blob_store import BlobStore, build_blob_store
from app.packages.filemanager.services.item_service import ItemService


def get_db() -> Generator[Session, None, None]:
    """生成一个数据库会话，并在请求结束后自动关闭。"""
    db = db_session.SessionLocal()
    try:
        yield db
    finally:
        db.close()


@lru_cache
def get_blob_store() -> BlobStore:
    """按配置构建文件内容存储，进程内复用同一实例。"""
    return build_blob_store(get_settings())


def get_item_service(blob_store: BlobStore = Depends(get_blob_store)) -> ItemService:
    return ItemService(blob_store)
