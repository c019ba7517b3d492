"""Item CRUD：文件树条目的持久化存储。

按 ``parent_id`` 建有索引，"列出某节点的直接子项" 无需全表扫描；
同级同类名称唯一由数据库唯一索引兜底。这里只负责存取，不感知树的业务规则。
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.packages.filemanager.core.exceptions import DuplicateIdError, ItemNotFoundError
from app.packages.filemanager.crud.base import CRUDBase
from app.packages.filemanager.models.item import Item

# 允许通过 update 修改的字段；id/is_folder/文件元数据创建后不可变
_MUTABLE_FIELDS = frozenset({"name", "parent_id", "modified_at"})


class CRUDItem(CRUDBase[Item]):
    def list_children(self, db: Session, parent_id: Optional[str]) -> list[Item]:
        query = self.query(db)
        if parent_id is None:
            query = query.filter(Item.parent_id.is_(None))
        else:
            query = query.filter(Item.parent_id == parent_id)
        return query.all()

    def list_all(self, db: Session) -> list[Item]:
        return self.query(db).all()

    def count(self, db: Session) -> int:
        return self.query(db).count()

    def has_children(self, db: Session, item_id: str) -> bool:
        return db.query(Item.id).filter(Item.parent_id == item_id).limit(1).first() is not None

    def find_sibling(
        self,
        db: Session,
        *,
        parent_id: Optional[str],
        name: str,
        is_folder: bool,
        exclude_id: Optional[str] = None,
    ) -> Item | None:
        """查找同一父节点下同名同类的条目，可排除条目自身。"""
        query = (
            self.query(db)
            .filter(func.coalesce(Item.parent_id, "") == (parent_id or ""))
            .filter(Item.name == name)
            .filter(Item.is_folder.is_(is_folder))
        )
        if exclude_id is not None:
            query = query.filter(Item.id != exclude_id)
        return query.first()

    def insert(self, db: Session, item: Item) -> Item:
        if self.get(db, item.id) is not None:
            raise DuplicateIdError(f"条目 ID 已存在: {item.id}")
        return self.save(db, item)

    def update(self, db: Session, item_id: str, fields: Mapping[str, Any]) -> Item:
        item = self.get(db, item_id)
        if item is None:
            raise ItemNotFoundError()
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Immutable item fields: {', '.join(sorted(unknown))}")
        for key, value in fields.items():
            setattr(item, key, value)
        return self.save(db, item)

    def remove(self, db: Session, item_id: str) -> Item:
        item = self.get(db, item_id)
        if item is None:
            raise ItemNotFoundError()
        self.hard_delete(db, item)
        return item


item_crud = CRUDItem(Item)
