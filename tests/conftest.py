"""测试夹具：为 pytest 提供数据库、文件存储与客户端的共享配置。"""

from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.main import app
from app.packages.filemanager.core.dependencies import get_blob_store, get_db
from app.packages.filemanager.db import session as db_session
from app.packages.filemanager.models.base import Base
from app.packages.filemanager.services.blob_store import LocalBlobStore
from app.packages.filemanager.services.item_service import ItemService


@pytest.fixture(autouse=True)
def isolated_database(tmp_path, monkeypatch) -> Generator[Engine, None, None]:
    """每个用例使用独立的 SQLite 数据库文件，避免用例之间相互影响。"""
    engine = db_session.build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

    monkeypatch.setattr(db_session, "engine", engine)
    monkeypatch.setattr(db_session, "SessionLocal", TestingSessionLocal)

    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def db_session_fixture() -> Generator[Session, None, None]:
    """提供给测试用例使用的数据库会话。"""
    session = db_session.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def blob_store(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture()
def item_service(blob_store) -> ItemService:
    return ItemService(blob_store)


@pytest.fixture()
def client(blob_store) -> Generator[TestClient, None, None]:
    """构建 FastAPI TestClient，并注入测试专用的数据库与存储依赖。"""
    def override_get_db() -> Generator[Session, None, None]:
        session = db_session.SessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_blob_store] = lambda: blob_store

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
