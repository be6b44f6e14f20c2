"""文件夹模型：按用户唯一的逻辑路径。"""

from typing import Optional

from sqlalchemy import ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from app.packages.trove.models.base import Base, SoftDeleteMixin, TimestampMixin


class Folder(TimestampMixin, SoftDeleteMixin, Base):
    __tablename__ = "folders"
    __table_args__ = (
        # 仅约束未删除的文件夹，回收站中的同名路径不影响重新创建
        Index(
            "uq_folders_user_path_live",
            "user_id",
            "folder_path",
            unique=True,
            sqlite_where=text("deleted_at IS NULL"),
            postgresql_where=text("deleted_at IS NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    folder_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    original_folder_path: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
