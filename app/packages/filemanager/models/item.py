"""统一的文件树条目模型（文件与文件夹合并）。

存储规则：
- parent_id：为空表示根级条目，否则必须引用一个已存在的文件夹；
- name：当前条目名（不含路径分隔符），同一父节点下同类（文件/文件夹）唯一；
- is_folder：文件夹为 True，创建后不可变；
- 对于文件：blob_ref/size_bytes/mime_type 有意义；文件夹三者均为 NULL。
"""

from typing import Optional

from sqlalchemy import BigInteger, Boolean, CheckConstraint, ForeignKey, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from app.packages.filemanager.models.base import Base, TimestampMixin


class Item(TimestampMixin, Base):
    """文件树节点，采用邻接表模型：通过 `parent_id` 形成森林。"""

    __tablename__ = "items"
    __table_args__ = (
        # 防止自引用
        CheckConstraint("parent_id IS NULL OR parent_id <> id", name="no_self_parent"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    # 自引用外键：删除父节点前必须先清空子节点
    parent_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("items.id"), nullable=True, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_folder: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # 文件内容在存储中的不透明引用，与条目名称解耦
    blob_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    size_bytes: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    mime_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        kind = "folder" if self.is_folder else "file"
        return f"<Item {self.id} {kind} {self.name!r} parent={self.parent_id}>"


# 同一父节点下同类条目名称唯一；根级条目的 parent_id 为 NULL，
# 借助 coalesce 让 NULL 参与唯一性比较。
Index(
    "uq_items_parent_name_kind",
    func.coalesce(Item.__table__.c.parent_id, ""),
    Item.__table__.c.name,
    Item.__table__.c.is_folder,
    unique=True,
)
