"""用户模型：配额与已用空间均以字节计。"""

from typing import Optional

from sqlalchemy import BigInteger, Boolean, CheckConstraint, Integer, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import expression

from app.packages.trove.models.base import Base, SoftDeleteMixin, TimestampMixin


class User(TimestampMixin, SoftDeleteMixin, Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("storage_used >= 0", name="storage_used_non_negative"),
        CheckConstraint("storage_quota >= 0", name="storage_quota_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    username: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_quota: Mapped[int] = mapped_column(BigInteger, nullable=False, default=10 * 1024**3)
    storage_used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=expression.false())
    # 为空时使用系统级 DELETED_RETENTION_DAYS
    deleted_retention_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    @property
    def storage_available(self) -> int:
        return max(self.storage_quota - self.storage_used, 0)
