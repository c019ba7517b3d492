"""模型基类：统一声明式基类与通用时间戳字段。

本模块集中提供：
- Base：SQLAlchemy 声明式基类，带统一命名约定；
- TimestampMixin：`created_at`、`modified_at`，由业务层显式写入，
  以保证“仅重命名/移动才刷新修改时间”的语义。
"""

from datetime import datetime

from sqlalchemy import DateTime, MetaData
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata_obj = MetaData(naming_convention=convention)


class Base(DeclarativeBase):
    """全局声明式基类，附带一致的命名约定，便于迁移与调试。"""

    metadata = metadata_obj


class TimestampMixin:
    """通用时间戳字段，为记录新增、变更提供审计能力。"""

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    modified_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
