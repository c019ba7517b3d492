"""CRUD 基类：为各实体提供通用的数据访问方法。"""

from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from sqlalchemy.orm import Query, Session

from app.packages.filemanager.models.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class CRUDBase(Generic[ModelType]):
    """封装常见的查询、创建与保存逻辑，减少重复代码。

    所有写操作默认在返回前提交事务；提交失败时回滚会话并继续抛出异常。
    """

    def __init__(self, model: Type[ModelType]):
        self.model = model

    def get(self, db: Session, id: Any) -> Optional[ModelType]:
        return db.get(self.model, id)

    def get_multi(self, db: Session, *, skip: int = 0, limit: int = 100) -> List[ModelType]:
        query = self.query(db)
        return query.offset(skip).limit(limit).all()

    def create(self, db: Session, obj_in: Dict[str, Any], *, auto_commit: bool = True) -> ModelType:
        db_obj = self.model(**obj_in)
        return self.save(db, db_obj, auto_commit=auto_commit)

    def save(self, db: Session, db_obj: ModelType, *, auto_commit: bool = True) -> ModelType:
        db.add(db_obj)
        if auto_commit:
            self._commit(db)
            db.refresh(db_obj)
        return db_obj

    def hard_delete(self, db: Session, db_obj: ModelType, *, auto_commit: bool = True) -> None:
        """物理删除行，并提交事务。"""
        db.delete(db_obj)
        if auto_commit:
            self._commit(db)

    def query(self, db: Session) -> Query:
        return db.query(self.model)

    @staticmethod
    def _commit(db: Session) -> None:
        try:
            db.commit()
        except Exception:
            db.rollback()
            raise
