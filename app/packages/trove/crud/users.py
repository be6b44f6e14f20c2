"""用户 CRUD：配额相关的更新全部使用带条件的原子 UPDATE。"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import case, update
from sqlalchemy.orm import Session

from app.packages.trove.crud.base import CRUDBase
from app.packages.trove.models.user import User


class CRUDUser(CRUDBase[User]):
    def get_by_username(self, db: Session, username: str) -> Optional[User]:
        return self.query(db).filter(User.username == username).first()

    def get_by_email(self, db: Session, email: str) -> Optional[User]:
        return self.query(db).filter(User.email == email).first()

    def try_increase_used(self, db: Session, user_id: int, delta: int) -> bool:
        """``storage_used + delta <= storage_quota`` 成立时原子地增加已用空间。

        不提交事务；返回 ``False`` 表示配额不足（或用户不存在）。
        """
        if delta < 0:
            raise ValueError("delta must be non-negative")
        result = db.execute(
            update(User)
            .where(User.id == user_id, User.storage_used + delta <= User.storage_quota)
            .values(storage_used=User.storage_used + delta)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def decrease_used(self, db: Session, user_id: int, delta: int) -> None:
        """原子地减少已用空间，结果不低于 0。不提交事务。"""
        if delta <= 0:
            return
        db.execute(
            update(User)
            .where(User.id == user_id)
            .values(storage_used=case((User.storage_used >= delta, User.storage_used - delta), else_=0))
            .execution_options(synchronize_session=False)
        )

    def current_usage(self, db: Session, user_id: int) -> tuple[int, int]:
        """直接从数据库读取 ``(storage_used, storage_quota)``，绕过会话缓存。"""
        row = db.query(User.storage_used, User.storage_quota).filter(User.id == user_id).one()
        return int(row[0]), int(row[1])

    def iter_batches(self, db: Session, *, batch_size: int):
        """按 id 升序分批产出用户，供后台清理任务使用。"""
        last_id = 0
        while True:
            batch = (
                self.query(db)
                .filter(User.id > last_id)
                .order_by(User.id)
                .limit(batch_size)
                .all()
            )
            if not batch:
                return
            yield batch
            last_id = batch[-1].id


user_crud = CRUDUser(User)
