"""文件树变更引擎测试：覆盖各操作的正常路径、错误分支与树结构不变量。"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import SQLAlchemyError

from app.packages.filemanager.core import constants
from app.packages.filemanager.core.exceptions import (
    BlobMissingError,
    BlobStoreError,
    DuplicateFolderError,
    DuplicateNameError,
    FolderNotEmptyError,
    InvalidInputError,
    InvalidNameError,
    InvalidParentError,
    IsFolderError,
    ItemNotFoundError,
    ParentNotFoundError,
    TreeIntegrityError,
)
from app.packages.filemanager.crud.item import item_crud
from app.packages.filemanager.db import session as db_session
from app.packages.filemanager.models.item import Item
from app.packages.filemanager.services import item_service as item_service_module
from app.packages.filemanager.services.item_service import FilePayload, ItemService


def _payload(name: str, content: bytes = b"data", content_type: str | None = "text/plain") -> FilePayload:
    return FilePayload(filename=name, content=content, content_type=content_type)


def _upload_one(service: ItemService, db, name: str, parent_id=None, content: bytes = b"data"):
    result = service.upload_files(db, files=[_payload(name, content)], parent_id=parent_id)
    assert result.outcome == constants.UPLOAD_OUTCOME_SUCCESS
    return result.successful[0]


def _blob_names(blob_store) -> list[str]:
    return sorted(p.name for p in blob_store.root.iterdir())


# ----------------------------
# 新建文件夹
# ----------------------------


def test_create_folder_twice_fails_with_duplicate(item_service, db_session_fixture):
    first = item_service.create_folder(db_session_fixture, name="Docs", parent_id=None)
    assert first.is_folder is True
    assert first.parent_id is None
    assert first.created_at == first.modified_at

    with pytest.raises(DuplicateFolderError):
        item_service.create_folder(db_session_fixture, name="Docs", parent_id=None)
    assert item_crud.count(db_session_fixture) == 1


def test_create_folder_trims_name_and_validates(item_service, db_session_fixture):
    folder = item_service.create_folder(db_session_fixture, name="  Reports  ")
    assert folder.name == "Reports"

    with pytest.raises(InvalidNameError):
        item_service.create_folder(db_session_fixture, name="   ")
    with pytest.raises(InvalidNameError):
        item_service.create_folder(db_session_fixture, name="a/b")


def test_create_folder_requires_existing_folder_parent(item_service, db_session_fixture):
    db = db_session_fixture
    with pytest.raises(ParentNotFoundError):
        item_service.create_folder(db, name="X", parent_id="missing")

    file_item = _upload_one(item_service, db, "a.txt")
    with pytest.raises(ParentNotFoundError):
        item_service.create_folder(db, name="X", parent_id=file_item.id)


def test_same_name_allowed_under_different_parents(item_service, db_session_fixture):
    db = db_session_fixture
    a = item_service.create_folder(db, name="A")
    b = item_service.create_folder(db, name="B")
    item_service.create_folder(db, name="Docs", parent_id=a.id)
    item_service.create_folder(db, name="Docs", parent_id=b.id)
    assert item_crud.count(db) == 4


def test_unique_index_race_is_reported_as_duplicate(item_service, db_session_fixture, monkeypatch):
    """预检查漏掉的重复由唯一索引拦截，并翻译为同样的业务异常。"""
    db = db_session_fixture
    item_service.create_folder(db, name="Docs")

    real_find_sibling = item_crud.find_sibling
    calls = {"n": 0}

    def flaky_find_sibling(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return real_find_sibling(*args, **kwargs)

    monkeypatch.setattr(item_crud, "find_sibling", flaky_find_sibling)
    with pytest.raises(DuplicateFolderError):
        item_service.create_folder(db, name="Docs")
    assert item_crud.count(db) == 1


# ----------------------------
# 列表
# ----------------------------


def test_list_items_sorted_folders_first(item_service, db_session_fixture):
    db = db_session_fixture
    _upload_one(item_service, db, "b.txt")
    item_service.create_folder(db, name="zeta")
    item_service.create_folder(db, name="Alpha")
    _upload_one(item_service, db, "A.txt")

    names = [i.name for i in item_service.list_items(db)]
    assert names == ["Alpha", "zeta", "A.txt", "b.txt"]


def test_list_items_scoped_and_unscoped(item_service, db_session_fixture):
    db = db_session_fixture
    root = item_service.create_folder(db, name="root")
    child = item_service.create_folder(db, name="child", parent_id=root.id)
    _upload_one(item_service, db, "leaf.txt", parent_id=child.id)

    assert [i.name for i in item_service.list_items(db, parent_id=root.id)] == ["child"]
    assert len(item_service.list_items(db)) == 3
    assert item_service.list_items(db, parent_id="does-not-exist") == []


# ----------------------------
# 上传
# ----------------------------


def test_upload_records_metadata_and_blob(item_service, db_session_fixture, blob_store):
    item = _upload_one(item_service, db_session_fixture, "hello.txt", content=b"hello world")
    assert item.is_folder is False
    assert item.size_bytes == 11
    assert item.mime_type == "text/plain"
    assert item.blob_ref in _blob_names(blob_store)
    assert b"".join(blob_store.open(item.blob_ref)) == b"hello world"


def test_upload_mime_type_fallbacks(item_service, db_session_fixture):
    result = item_service.upload_files(
        db_session_fixture,
        files=[
            FilePayload(filename="photo.png", content=b"\x89PNG", content_type=None),
            FilePayload(filename="blob.unknownext", content=b"??", content_type=""),
        ],
    )
    by_name = {i.name: i for i in result.successful}
    assert by_name["photo.png"].mime_type == "image/png"
    assert by_name["blob.unknownext"].mime_type == constants.DEFAULT_MIME_TYPE


def test_upload_partial_success_on_duplicate(item_service, db_session_fixture):
    db = db_session_fixture
    _upload_one(item_service, db, "x.txt")

    result = item_service.upload_files(db, files=[_payload("x.txt"), _payload("y.txt")])
    assert result.outcome == constants.UPLOAD_OUTCOME_PARTIAL
    assert [i.name for i in result.successful] == ["y.txt"]
    assert [(f.filename, f.error) for f in result.failed] == [("x.txt", constants.UPLOAD_ERROR_DUPLICATE)]


def test_upload_three_files_one_collision(item_service, db_session_fixture):
    db = db_session_fixture
    _upload_one(item_service, db, "b.txt")
    result = item_service.upload_files(db, files=[_payload("a.txt"), _payload("b.txt"), _payload("c.txt")])
    assert len(result.successful) == 2
    assert len(result.failed) == 1
    assert result.failed[0].error == constants.UPLOAD_ERROR_DUPLICATE


def test_upload_duplicate_within_same_batch(item_service, db_session_fixture, blob_store):
    result = item_service.upload_files(db_session_fixture, files=[_payload("same.txt"), _payload("same.txt")])
    assert len(result.successful) == 1
    assert result.failed[0].error == constants.UPLOAD_ERROR_DUPLICATE
    assert len(_blob_names(blob_store)) == 1


def test_upload_file_and_folder_may_share_name(item_service, db_session_fixture):
    db = db_session_fixture
    item_service.create_folder(db, name="notes")
    item = _upload_one(item_service, db, "notes")
    assert item.name == "notes"


def test_upload_all_failed_outcome(item_service, db_session_fixture, blob_store):
    result = item_service.upload_files(db_session_fixture, files=[_payload("bad?.txt"), _payload("  ")])
    assert result.outcome == constants.UPLOAD_OUTCOME_FAILED
    assert {f.error for f in result.failed} == {constants.UPLOAD_ERROR_INVALID_NAME}
    assert _blob_names(blob_store) == []


def test_upload_rejects_oversized_file(blob_store, db_session_fixture):
    service = ItemService(blob_store, max_upload_size=4)
    result = service.upload_files(db_session_fixture, files=[_payload("big.bin", b"12345"), _payload("ok.bin", b"1234")])
    assert [i.name for i in result.successful] == ["ok.bin"]
    assert result.failed[0].error == constants.UPLOAD_ERROR_TOO_LARGE


def test_upload_batch_limits(blob_store, db_session_fixture):
    service = ItemService(blob_store, max_upload_files=2)
    with pytest.raises(InvalidInputError):
        service.upload_files(db_session_fixture, files=[])
    with pytest.raises(InvalidInputError):
        service.upload_files(db_session_fixture, files=[_payload("a"), _payload("b"), _payload("c")])


def test_upload_into_missing_parent_fails_whole_batch(item_service, db_session_fixture, blob_store):
    with pytest.raises(ParentNotFoundError):
        item_service.upload_files(db_session_fixture, files=[_payload("a.txt")], parent_id="missing")
    assert _blob_names(blob_store) == []


def test_upload_rolls_back_blob_when_record_fails(item_service, db_session_fixture, blob_store, monkeypatch):
    def broken_insert(db, item):
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(item_crud, "insert", broken_insert)
    result = item_service.upload_files(db_session_fixture, files=[_payload("a.txt")])
    assert result.outcome == constants.UPLOAD_OUTCOME_FAILED
    assert result.failed[0].error == constants.UPLOAD_ERROR_PROCESSING
    assert _blob_names(blob_store) == []


def test_upload_reports_blob_write_failure(item_service, db_session_fixture, blob_store, monkeypatch):
    def broken_write(content):
        raise BlobStoreError("文件内容写入失败")

    monkeypatch.setattr(blob_store, "write", broken_write)
    result = item_service.upload_files(db_session_fixture, files=[_payload("a.txt")])
    assert result.failed[0].error == constants.UPLOAD_ERROR_PROCESSING
    assert item_crud.count(db_session_fixture) == 0


# ----------------------------
# 下载
# ----------------------------


def test_download_returns_content_and_metadata(item_service, db_session_fixture):
    item = _upload_one(item_service, db_session_fixture, "報告.txt", content=b"abc")
    handle = item_service.download_file(db_session_fixture, item.id)
    assert handle.name == "報告.txt"
    assert handle.mime_type == "text/plain"
    assert handle.size == 3
    assert b"".join(handle.chunks) == b"abc"


def test_download_errors(item_service, db_session_fixture, blob_store):
    db = db_session_fixture
    with pytest.raises(ItemNotFoundError):
        item_service.download_file(db, "missing")

    folder = item_service.create_folder(db, name="Docs")
    with pytest.raises(IsFolderError):
        item_service.download_file(db, folder.id)

    item = _upload_one(item_service, db, "gone.txt")
    (blob_store.root / item.blob_ref).unlink()
    with pytest.raises(BlobMissingError):
        item_service.download_file(db, item.id)


# ----------------------------
# 删除
# ----------------------------


def test_delete_non_empty_folder_then_children_first(item_service, db_session_fixture):
    db = db_session_fixture
    folder = item_service.create_folder(db, name="Docs")
    child = _upload_one(item_service, db, "a.txt", parent_id=folder.id)

    with pytest.raises(FolderNotEmptyError):
        item_service.delete_item(db, folder.id)
    assert item_crud.get(db, folder.id) is not None

    item_service.delete_item(db, child.id)
    item_service.delete_item(db, folder.id)
    assert item_crud.count(db) == 0


def test_delete_file_releases_blob(item_service, db_session_fixture, blob_store):
    db = db_session_fixture
    item = _upload_one(item_service, db, "a.txt")
    item_service.delete_item(db, item.id)

    assert _blob_names(blob_store) == []
    with pytest.raises(ItemNotFoundError):
        item_service.download_file(db, item.id)
    with pytest.raises(ItemNotFoundError):
        item_service.delete_item(db, item.id)


def test_delete_file_with_missing_blob_still_removes_row(item_service, db_session_fixture, blob_store):
    db = db_session_fixture
    item = _upload_one(item_service, db, "a.txt")
    (blob_store.root / item.blob_ref).unlink()
    item_service.delete_item(db, item.id)
    assert item_crud.get(db, item.id) is None


def test_delete_aborts_when_blob_delete_fails(item_service, db_session_fixture, blob_store, monkeypatch):
    db = db_session_fixture
    item = _upload_one(item_service, db, "a.txt")

    def broken_delete(blob_ref):
        raise BlobStoreError("文件内容删除失败")

    monkeypatch.setattr(blob_store, "delete", broken_delete)
    with pytest.raises(BlobStoreError):
        item_service.delete_item(db, item.id)
    assert item_crud.get(db, item.id) is not None


# ----------------------------
# 移动 / 重命名
# ----------------------------


def test_move_under_own_descendant_fails(item_service, db_session_fixture):
    db = db_session_fixture
    a = item_service.create_folder(db, name="A")
    b = item_service.create_folder(db, name="B", parent_id=a.id)
    c = item_service.create_folder(db, name="C", parent_id=b.id)

    with pytest.raises(InvalidParentError):
        item_service.move_or_rename(db, a.id, parent_id=b.id)
    with pytest.raises(InvalidParentError):
        item_service.move_or_rename(db, a.id, parent_id=c.id)
    with pytest.raises(InvalidParentError):
        item_service.move_or_rename(db, a.id, parent_id=a.id)

    assert item_crud.get(db, a.id).parent_id is None
    assert item_crud.get(db, b.id).parent_id == a.id


def test_rename_to_empty_name_fails(item_service, db_session_fixture):
    folder = item_service.create_folder(db_session_fixture, name="Docs")
    with pytest.raises(InvalidNameError):
        item_service.move_or_rename(db_session_fixture, folder.id, name="")
    assert item_crud.get(db_session_fixture, folder.id).name == "Docs"


def test_move_or_rename_requires_a_change(item_service, db_session_fixture):
    folder = item_service.create_folder(db_session_fixture, name="Docs")
    with pytest.raises(InvalidInputError):
        item_service.move_or_rename(db_session_fixture, folder.id)


def test_move_or_rename_missing_item_and_parent(item_service, db_session_fixture):
    db = db_session_fixture
    with pytest.raises(ItemNotFoundError):
        item_service.move_or_rename(db, "missing", name="x")

    folder = item_service.create_folder(db, name="Docs")
    file_item = _upload_one(item_service, db, "a.txt")
    with pytest.raises(ParentNotFoundError):
        item_service.move_or_rename(db, folder.id, parent_id="missing")
    with pytest.raises(ParentNotFoundError):
        item_service.move_or_rename(db, folder.id, parent_id=file_item.id)


def test_rename_and_move_update_modified_at(item_service, db_session_fixture, monkeypatch):
    db = db_session_fixture
    base = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)
    monkeypatch.setattr(item_service_module, "now", lambda: base)
    target = item_service.create_folder(db, name="Target")
    item = _upload_one(item_service, db, "draft.txt")

    later = base + timedelta(minutes=5)
    monkeypatch.setattr(item_service_module, "now", lambda: later)
    moved = item_service.move_or_rename(db, item.id, parent_id=target.id, name="final.txt")

    assert moved.parent_id == target.id
    assert moved.name == "final.txt"
    assert moved.modified_at.replace(tzinfo=timezone.utc) == later
    assert moved.created_at.replace(tzinfo=timezone.utc) == base
    assert moved.blob_ref == item.blob_ref


def test_move_to_root_with_explicit_none(item_service, db_session_fixture):
    db = db_session_fixture
    parent = item_service.create_folder(db, name="P")
    child = item_service.create_folder(db, name="C", parent_id=parent.id)

    moved = item_service.move_or_rename(db, child.id, parent_id=None)
    assert moved.parent_id is None


def test_rename_conflicts_with_same_kind_sibling(item_service, db_session_fixture):
    db = db_session_fixture
    item_service.create_folder(db, name="A")
    b = item_service.create_folder(db, name="B")
    _upload_one(item_service, db, "C")

    with pytest.raises(DuplicateNameError):
        item_service.move_or_rename(db, b.id, name="A")
    # 文件与文件夹允许同名
    renamed = item_service.move_or_rename(db, b.id, name="C")
    assert renamed.name == "C"


def test_move_conflicts_in_target_folder(item_service, db_session_fixture):
    db = db_session_fixture
    target = item_service.create_folder(db, name="Target")
    _upload_one(item_service, db, "a.txt", parent_id=target.id)
    loose = _upload_one(item_service, db, "a.txt")

    with pytest.raises(DuplicateNameError):
        item_service.move_or_rename(db, loose.id, parent_id=target.id)
    assert item_crud.get(db, loose.id).parent_id is None


def test_noop_update_refreshes_modified_at(item_service, db_session_fixture, monkeypatch):
    db = db_session_fixture
    base = datetime(2024, 5, 1, tzinfo=timezone.utc)
    monkeypatch.setattr(item_service_module, "now", lambda: base)
    folder = item_service.create_folder(db, name="Docs")

    later = base + timedelta(hours=1)
    monkeypatch.setattr(item_service_module, "now", lambda: later)
    same = item_service.move_or_rename(db, folder.id, name="Docs")
    assert same.name == "Docs"
    assert same.modified_at.replace(tzinfo=timezone.utc) == later


# ----------------------------
# 路径
# ----------------------------


def test_get_path_three_levels_deep(item_service, db_session_fixture):
    db = db_session_fixture
    a = item_service.create_folder(db, name="A")
    b = item_service.create_folder(db, name="B", parent_id=a.id)
    c = item_service.create_folder(db, name="C", parent_id=b.id)
    leaf = _upload_one(item_service, db, "leaf.txt", parent_id=c.id)

    path = item_service.get_path(db, leaf.id)
    assert [i.id for i in path] == [a.id, b.id, c.id, leaf.id]

    # 反转路径应当与逐级向上查找父节点的结果一致
    walk = []
    current = item_crud.get(db, leaf.id)
    while current is not None:
        walk.append(current.id)
        current = item_crud.get(db, current.parent_id) if current.parent_id else None
    assert [i.id for i in reversed(path)] == walk


def test_get_path_of_root_item(item_service, db_session_fixture):
    folder = item_service.create_folder(db_session_fixture, name="Solo")
    assert [i.id for i in item_service.get_path(db_session_fixture, folder.id)] == [folder.id]
    with pytest.raises(ItemNotFoundError):
        item_service.get_path(db_session_fixture, "missing")


def test_get_path_detects_cycle(item_service, db_session_fixture):
    db = db_session_fixture
    a = item_service.create_folder(db, name="A")
    b = item_service.create_folder(db, name="B", parent_id=a.id)
    # 绕过引擎直接写入，制造 A <-> B 的环
    item_crud.update(db, a.id, {"parent_id": b.id})

    with pytest.raises(TreeIntegrityError):
        item_service.get_path(db, b.id)
    with pytest.raises(TreeIntegrityError):
        item_service.move_or_rename(db, item_service.create_folder(db, name="X").id, parent_id=a.id)


def test_delete_folder_that_gains_child_before_commit(item_service, db_session_fixture, monkeypatch):
    """空目录检查之后另一个会话写入了子项，删除应报告目录非空而不是数据库错误。"""
    db = db_session_fixture
    folder = item_service.create_folder(db, name="Docs")

    real_has_children = item_crud.has_children
    calls = {"n": 0}

    def has_children_then_insert(session, item_id):
        calls["n"] += 1
        result = real_has_children(session, item_id)
        if calls["n"] == 1:
            stamp = datetime(2024, 1, 1, tzinfo=timezone.utc)
            with db_session.SessionLocal() as other:
                item_crud.insert(
                    other,
                    Item(
                        id="late-child",
                        parent_id=item_id,
                        name="late",
                        is_folder=True,
                        created_at=stamp,
                        modified_at=stamp,
                    ),
                )
        return result

    monkeypatch.setattr(item_crud, "has_children", has_children_then_insert)
    with pytest.raises(FolderNotEmptyError):
        item_service.delete_item(db, folder.id)

    monkeypatch.setattr(item_crud, "has_children", real_has_children)
    assert item_crud.get(db, folder.id) is not None
    assert item_crud.get(db, "late-child").parent_id == folder.id
