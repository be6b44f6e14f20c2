"""文件记录 CRUD：去重查找、引用计数与回收站相关查询。"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session

from app.packages.trove.core.constants import (
    UPLOAD_STATUS_COMPLETED,
    UPLOAD_STATUS_FAILED,
    UPLOAD_STATUS_PENDING,
    UPLOAD_STATUS_UPLOADING,
)
from app.packages.trove.crud.base import CRUDBase
from app.packages.trove.models.file_record import FileRecord


class CRUDFileRecord(CRUDBase[FileRecord]):
    def get_completed(self, db: Session, file_id: int, *, include_deleted: bool = False) -> Optional[FileRecord]:
        return (
            self.query(db, include_deleted=include_deleted)
            .filter(FileRecord.id == file_id, FileRecord.upload_status == UPLOAD_STATUS_COMPLETED)
            .first()
        )

    def find_by_digest(
        self,
        db: Session,
        user_id: Optional[int],
        digest: str,
    ) -> Optional[FileRecord]:
        """查找可复用存储键的已完成记录；``user_id`` 为 ``None`` 时跨用户查找。

        回收站中的记录同样持有存储对象，优先返回未删除的记录。
        """
        query = self.query(db, include_deleted=True).filter(
            FileRecord.digest == digest,
            FileRecord.upload_status == UPLOAD_STATUS_COMPLETED,
            FileRecord.storage_path != "",
        )
        if user_id is not None:
            query = query.filter(FileRecord.user_id == user_id)
        return query.order_by(FileRecord.deleted_at.isnot(None), FileRecord.id).first()

    def lock_key_holders(self, db: Session, storage_key: str) -> List[int]:
        """在当前事务内锁定引用 ``storage_key`` 的已完成记录并返回其 id。"""
        rows = (
            db.query(FileRecord.id)
            .filter(FileRecord.storage_path == storage_key, FileRecord.upload_status == UPLOAD_STATUS_COMPLETED)
            .with_for_update()
            .all()
        )
        return [row[0] for row in rows]

    def count_references_to_key(self, db: Session, storage_key: str, *, include_deleted: bool = False) -> int:
        """统计引用存储键的非失败记录数；``include_deleted`` 决定是否计入回收站中的记录。"""
        query = db.query(func.count(FileRecord.id)).filter(
            FileRecord.storage_path == storage_key,
            FileRecord.upload_status != UPLOAD_STATUS_FAILED,
        )
        if not include_deleted:
            query = query.filter(FileRecord.deleted_at.is_(None))
        return int(query.scalar() or 0)

    def name_exists(self, db: Session, user_id: int, logical_path: str, filename: str, *, exclude_id: Optional[int] = None) -> bool:
        query = self.query(db).filter(
            FileRecord.user_id == user_id,
            FileRecord.logical_path == logical_path,
            FileRecord.filename == filename,
            FileRecord.upload_status == UPLOAD_STATUS_COMPLETED,
        )
        if exclude_id is not None:
            query = query.filter(FileRecord.id != exclude_id)
        return db.query(query.exists()).scalar()

    def list_in_folder(self, db: Session, user_id: int, logical_path: str) -> List[FileRecord]:
        return (
            self.query(db)
            .filter(
                FileRecord.user_id == user_id,
                FileRecord.logical_path == logical_path,
                FileRecord.upload_status == UPLOAD_STATUS_COMPLETED,
            )
            .order_by(FileRecord.filename)
            .all()
        )

    def list_in_subtree(self, db: Session, user_id: int, root: str) -> List[FileRecord]:
        """``root`` 文件夹及其所有后代中的未删除记录。"""
        escaped = root.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        return (
            self.query(db)
            .filter(
                FileRecord.user_id == user_id,
                or_(FileRecord.logical_path == root, FileRecord.logical_path.like(escaped + "/%", escape="\\")),
            )
            .all()
        )

    def list_deleted(self, db: Session, user_id: int) -> List[FileRecord]:
        return (
            self.query(db, include_deleted=True)
            .filter(FileRecord.user_id == user_id, FileRecord.deleted_at.isnot(None))
            .order_by(FileRecord.deleted_at.desc())
            .all()
        )

    def list_expired_deleted_ids(self, db: Session, user_id: int, cutoff: datetime) -> List[int]:
        rows = (
            db.query(FileRecord.id)
            .filter(
                FileRecord.user_id == user_id,
                FileRecord.deleted_at.isnot(None),
                FileRecord.deleted_at < cutoff,
            )
            .order_by(FileRecord.id)
            .all()
        )
        return [row[0] for row in rows]

    def mark_stale_uploads_failed(self, db: Session, cutoff: datetime, message: str) -> int:
        """把 ``cutoff`` 之后再无进展（``update_time`` 未刷新）的 pending/uploading 记录标记为失败。不提交事务。"""
        result = db.execute(
            update(FileRecord)
            .where(
                FileRecord.upload_status.in_([UPLOAD_STATUS_PENDING, UPLOAD_STATUS_UPLOADING]),
                FileRecord.update_time < cutoff,
            )
            .values(upload_status=UPLOAD_STATUS_FAILED, error_message=message)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    def list_failed(self, db: Session, user_id: int) -> List[FileRecord]:
        return (
            self.query(db)
            .filter(FileRecord.user_id == user_id, FileRecord.upload_status == UPLOAD_STATUS_FAILED)
            .order_by(FileRecord.update_time.desc(), FileRecord.id.desc())
            .all()
        )

    def list_failed_before_ids(self, db: Session, cutoff: datetime) -> List[int]:
        rows = (
            db.query(FileRecord.id)
            .filter(FileRecord.upload_status == UPLOAD_STATUS_FAILED, FileRecord.update_time < cutoff)
            .order_by(FileRecord.id)
            .all()
        )
        return [row[0] for row in rows]

    def touch(self, db: Session, file_id: int) -> None:
        """刷新进行中上传的 ``update_time``，后台回收据此判断上传是否仍在进行。"""
        db.execute(
            update(FileRecord)
            .where(FileRecord.id == file_id, FileRecord.upload_status == UPLOAD_STATUS_UPLOADING)
            .values(update_time=func.now())
            .execution_options(synchronize_session=False)
        )
        db.commit()

    def update_status(self, db: Session, file_id: int, status: str, error: Optional[str] = None) -> bool:
        result = db.execute(
            update(FileRecord)
            .where(FileRecord.id == file_id)
            .values(upload_status=status, error_message=error)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return (result.rowcount or 0) == 1


file_record_crud = CRUDFileRecord(FileRecord)
