"""文件记录模型。

``storage_path`` 是后端分配的不透明存储键，去重时多条记录可共享同一个键；
``logical_path`` 是用户可见的所在文件夹，与存储键无关。
``counts_toward_quota`` 标记该记录的大小当前是否计入所属用户的已用空间。
"""

from typing import Optional

from sqlalchemy import BigInteger, Boolean, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import expression

from app.packages.trove.core.constants import UPLOAD_STATUS_PENDING
from app.packages.trove.models.base import Base, SoftDeleteMixin, TimestampMixin


class FileRecord(TimestampMixin, SoftDeleteMixin, Base):
    __tablename__ = "files"
    __table_args__ = (
        Index(
            "uq_files_user_folder_name_live",
            "user_id",
            "logical_path",
            "filename",
            unique=True,
            sqlite_where=text("deleted_at IS NULL AND upload_status = 'completed'"),
            postgresql_where=text("deleted_at IS NULL AND upload_status = 'completed'"),
        ),
        Index("ix_files_user_digest", "user_id", "digest"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    storage_path: Mapped[str] = mapped_column(String(1024), nullable=False, index=True)
    logical_path: Mapped[str] = mapped_column(String(1024), nullable=False, default="/", server_default="/", index=True)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    mime_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    digest: Mapped[str] = mapped_column(String(64), nullable=False, default="", index=True)
    upload_status: Mapped[str] = mapped_column(String(16), nullable=False, default=UPLOAD_STATUS_PENDING, index=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    counts_toward_quota: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=expression.false()
    )
    original_logical_path: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
