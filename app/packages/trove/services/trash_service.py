"""回收站与垃圾回收。

文件记录通过 ``storage_path`` 引用存储对象，多条记录可以共享同一个键。
清除（purge）一条记录后，只有当不再有任何记录（包括回收站中的记录）引用该键时，
才会调用后端删除存储对象。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.packages.trove.core.cancel import CancelToken, check
from app.packages.trove.core.config import get_settings
from app.packages.trove.core.constants import (
    HTTP_STATUS_BAD_REQUEST,
    RETENTION_USER_BATCH_SIZE,
    ROOT_FOLDER,
    UPLOAD_STATUS_FAILED,
)
from app.packages.trove.core.exceptions import AppException, ConflictError, NotFoundError, StorageError
from app.packages.trove.core.logger import logger
from app.packages.trove.core.timezone import as_utc, utcnow
from app.packages.trove.crud.file_record import file_record_crud
from app.packages.trove.crud.folders import folder_crud
from app.packages.trove.crud.users import user_crud
from app.packages.trove.db import session as db_session
from app.packages.trove.models.file_record import FileRecord
from app.packages.trove.models.folder import Folder
from app.packages.trove.models.user import User
from app.packages.trove.services.file_service import file_service, unique_filename
from app.packages.trove.services.storage_backends import StorageBackend, get_backend


@dataclass
class TrashListing:
    folders: List[Folder]
    files: List[FileRecord]


@dataclass
class SweepReport:
    users: int = 0
    files_purged: int = 0
    folders_purged: int = 0
    errors: List[str] = field(default_factory=list)


class TrashService:
    def __init__(self, backend_provider: Callable[[], StorageBackend] = get_backend) -> None:
        self._backend_provider = backend_provider

    @property
    def backend(self) -> StorageBackend:
        return self._backend_provider()

    # ------------------------------------------
    # 软删除 / 恢复
    # ------------------------------------------

    def soft_delete_file(self, db: Session, user: User, file_id: int) -> FileRecord:
        record = file_service.get_owned_file(db, user, file_id)
        record.original_logical_path = record.logical_path
        record.deleted_at = utcnow()
        if not get_settings().deleted_counts_toward_quota and record.counts_toward_quota:
            user_crud.decrease_used(db, user.id, record.file_size)
            record.counts_toward_quota = False
        db.commit()
        db.refresh(record)
        logger.info("File moved to trash user_id=%s file_id=%s", user.id, record.id)
        return record

    def list_deleted(self, db: Session, user: User) -> TrashListing:
        return TrashListing(
            folders=folder_crud.list_deleted(db, user.id),
            files=file_record_crud.list_deleted(db, user.id),
        )

    def _get_deleted_file(self, db: Session, user: User, file_id: int) -> FileRecord:
        record = file_service.get_owned_file(db, user, file_id, include_deleted=True)
        if record.deleted_at is None:
            raise NotFoundError("回收站中不存在该文件")
        return record

    def restore_file(self, db: Session, user: User, file_id: int) -> FileRecord:
        """恢复到原文件夹（不存在时自动创建），重名时追加序号。"""
        record = self._get_deleted_file(db, user, file_id)
        target = record.original_logical_path or record.logical_path or ROOT_FOLDER
        file_service.charge_restore(db, record)
        file_service.ensure_folder(db, user.id, target)
        self._restore_record(db, record, target)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise ConflictError("同名文件已存在") from exc
        db.refresh(record)
        logger.info("File restored user_id=%s file_id=%s folder=%s", user.id, record.id, target)
        return record

    @staticmethod
    def _restore_record(db: Session, record: FileRecord, target: str) -> None:
        record.filename = unique_filename(db, record.user_id, target, record.filename, exclude_id=record.id)
        record.logical_path = target
        record.deleted_at = None
        record.original_logical_path = None

    def restore_folder(self, db: Session, user: User, folder_id: int) -> Folder:
        """恢复文件夹及与它同一次删除的子文件夹和文件。"""
        folder = folder_crud.get(db, folder_id, include_deleted=True)
        if folder is None or folder.user_id != user.id or folder.deleted_at is None:
            raise NotFoundError("回收站中不存在该文件夹")
        path = folder.original_folder_path or folder.folder_path
        if folder_crud.get_by_path(db, user.id, path) is not None:
            raise ConflictError("同名文件夹已存在")

        stamp = folder.deleted_at
        restored_folders = [
            item for item in folder_crud.list_subtree(db, user.id, path, include_deleted=True) if item.deleted_at == stamp
        ]
        records = [
            item
            for item in file_record_crud.list_deleted(db, user.id)
            if item.deleted_at == stamp and _within(item.original_logical_path or item.logical_path, path)
        ]
        for record in records:
            file_service.charge_restore(db, record)
        for item in restored_folders:
            if item.folder_path != path and folder_crud.get_by_path(db, user.id, item.folder_path) is not None:
                # 该路径已有未删除的文件夹
                db.delete(item)
                continue
            item.deleted_at = None
            item.original_folder_path = None
        db.flush()
        file_service.ensure_folder(db, user.id, path)
        for record in records:
            self._restore_record(db, record, record.original_logical_path or record.logical_path)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise ConflictError("恢复时发生名称冲突") from exc
        logger.info("Folder restored user_id=%s path=%s files=%s", user.id, path, len(records))
        restored = folder_crud.get_by_path(db, user.id, path)
        if restored is None:
            raise NotFoundError("文件夹不存在")
        return restored

    # ------------------------------------------
    # 清除与垃圾回收
    # ------------------------------------------

    def purge_file(self, db: Session, file_id: int, *, user_id: Optional[int] = None) -> bool:
        """物理删除记录；已清除的 id 再次调用直接返回 ``False``。"""
        record = file_record_crud.get(db, file_id, include_deleted=True)
        if record is None or (user_id is not None and record.user_id != user_id):
            return False
        key = record.storage_path
        if record.counts_toward_quota:
            user_crud.decrease_used(db, record.user_id, record.file_size)
        db.delete(record)
        db.commit()
        logger.info("File purged user_id=%s file_id=%s key=%s", record.user_id, file_id, key)
        if key:
            self.collect_blob(db, key)
        return True

    def purge_deleted_file(self, db: Session, user: User, file_id: int) -> None:
        self._get_deleted_file(db, user, file_id)
        self.purge_file(db, file_id, user_id=user.id)

    def dismiss_failed_upload(self, db: Session, user: User, file_id: int) -> None:
        """移除一条失败的上传记录，连同其占用的配额与无引用的存储对象。"""
        record = file_record_crud.get(db, file_id, include_deleted=True)
        if record is None or record.user_id != user.id:
            raise NotFoundError("文件不存在")
        if record.upload_status != UPLOAD_STATUS_FAILED:
            raise AppException("只能移除失败的上传", HTTP_STATUS_BAD_REQUEST)
        self.purge_file(db, file_id, user_id=user.id)

    def collect_blob(self, db: Session, key: str) -> bool:
        """没有任何记录引用 ``key`` 时删除存储对象，删除失败只记录日志。"""
        if file_record_crud.count_references_to_key(db, key, include_deleted=True) > 0:
            return False
        try:
            self.backend.delete(key)
        except StorageError:
            logger.error("Failed to delete unreferenced blob key=%s", key, exc_info=True)
            return False
        logger.info("Blob collected key=%s", key)
        return True

    def empty_trash(self, db: Session, user: User) -> int:
        ids = [record.id for record in file_record_crud.list_deleted(db, user.id)]
        purged = sum(1 for file_id in ids if self.purge_file(db, file_id, user_id=user.id))
        for folder in folder_crud.list_deleted(db, user.id):
            db.delete(folder)
        db.commit()
        logger.info("Trash emptied user_id=%s files=%s", user.id, purged)
        return purged

    # ------------------------------------------
    # 定期清理
    # ------------------------------------------

    def run_retention_sweep(self, *, now: Optional[datetime] = None, ctx: Optional[CancelToken] = None) -> SweepReport:
        """按保留期清除回收站中的过期记录，可重复执行。"""
        settings = get_settings()
        now = as_utc(now) if now is not None else utcnow()
        report = SweepReport()
        db = db_session.SessionLocal()
        try:
            for batch in user_crud.iter_batches(db, batch_size=RETENTION_USER_BATCH_SIZE):
                user_ids = [(user.id, user.deleted_retention_days) for user in batch]
                for user_id, override in user_ids:
                    check(ctx)
                    retention = override if override is not None else settings.deleted_retention_days
                    if retention <= 0:
                        continue
                    report.users += 1
                    self._sweep_user(db, user_id, now - timedelta(days=retention), report)
        finally:
            db.close()
        if report.files_purged or report.folders_purged or report.errors:
            logger.info(
                "Retention sweep finished users=%s files=%s folders=%s errors=%s",
                report.users,
                report.files_purged,
                report.folders_purged,
                len(report.errors),
            )
        return report

    def _sweep_user(self, db: Session, user_id: int, cutoff: datetime, report: SweepReport) -> None:
        for file_id in file_record_crud.list_expired_deleted_ids(db, user_id, cutoff):
            try:
                if self.purge_file(db, file_id, user_id=user_id):
                    report.files_purged += 1
            except SQLAlchemyError as exc:
                db.rollback()
                report.errors.append(f"file:{file_id}")
                logger.error("Failed to purge expired file file_id=%s error=%s", file_id, exc)
        try:
            for folder in folder_crud.list_expired_deleted(db, user_id, cutoff):
                db.delete(folder)
                report.folders_purged += 1
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            report.errors.append(f"folders:{user_id}")
            logger.error("Failed to purge expired folders user_id=%s error=%s", user_id, exc)


def _within(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip("/") + "/")


trash_service = TrashService()
