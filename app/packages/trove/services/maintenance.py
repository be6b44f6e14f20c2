"""启动清理与后台定期任务。"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from app.packages.trove.core.cancel import CancelToken
from app.packages.trove.core.config import get_settings
from app.packages.trove.core.constants import SPOOL_PREFIX
from app.packages.trove.core.logger import logger, request_id_scope
from app.packages.trove.core.session import purge_expired_sessions
from app.packages.trove.core.timezone import as_utc, utcnow
from app.packages.trove.crud.file_record import file_record_crud
from app.packages.trove.db import session as db_session
from app.packages.trove.services.trash_service import trash_service

STALE_UPLOAD_MESSAGE = "upload interrupted before completion"


def sweep_spool_dir(directory: Optional[Path] = None, *, max_age_minutes: Optional[int] = None, now: Optional[float] = None) -> int:
    """删除暂存目录中超过指定时长的上传暂存文件，只处理带固定前缀的普通文件。"""
    settings = get_settings()
    directory = Path(directory) if directory is not None else settings.temp_directory
    age = max_age_minutes if max_age_minutes is not None else settings.temp_sweep_age_min
    if not directory.is_dir():
        return 0
    threshold = (now if now is not None else time.time()) - age * 60
    removed = 0
    for entry in directory.iterdir():
        if not entry.name.startswith(SPOOL_PREFIX):
            continue
        try:
            info = entry.lstat()
            if not entry.is_file() or entry.is_symlink() or info.st_mtime > threshold:
                continue
            entry.unlink()
            removed += 1
        except FileNotFoundError:
            continue
        except OSError:
            logger.error("Failed to remove stale spool file path=%s", entry, exc_info=True)
    if removed:
        logger.info("Swept stale spool files dir=%s removed=%s", directory, removed)
    return removed


def reap_stale_uploads(*, now: Optional[datetime] = None) -> int:
    """把超过存活时间仍未完成的上传记录标记为 ``failed``。"""
    settings = get_settings()
    cutoff = (as_utc(now) if now is not None else utcnow()) - timedelta(minutes=settings.pending_upload_ttl_min)
    db = db_session.SessionLocal()
    try:
        count = file_record_crud.mark_stale_uploads_failed(db, cutoff, STALE_UPLOAD_MESSAGE)
        db.commit()
    finally:
        db.close()
    if count:
        logger.info("Marked stale uploads as failed count=%s", count)
    return count


def purge_failed_uploads(*, now: Optional[datetime] = None) -> int:
    """清除超过保留时间的 ``failed`` 记录，并回收已无引用的存储对象。"""
    settings = get_settings()
    cutoff = (as_utc(now) if now is not None else utcnow()) - timedelta(hours=settings.failed_upload_retention_hours)
    db = db_session.SessionLocal()
    purged = 0
    try:
        for file_id in file_record_crud.list_failed_before_ids(db, cutoff):
            try:
                if trash_service.purge_file(db, file_id):
                    purged += 1
            except SQLAlchemyError:
                db.rollback()
                logger.error("Failed to purge failed upload file_id=%s", file_id, exc_info=True)
    finally:
        db.close()
    if purged:
        logger.info("Purged failed uploads count=%s", purged)
    return purged


def cleanup_expired_sessions() -> int:
    db = db_session.SessionLocal()
    try:
        removed = purge_expired_sessions(db)
    finally:
        db.close()
    if removed:
        logger.info("Removed expired sessions count=%s", removed)
    return removed


def run_startup_recovery() -> None:
    """进程启动时的恢复步骤：清理暂存目录并回收中断的上传。"""
    sweep_spool_dir()
    reap_stale_uploads()
    purge_failed_uploads()


class CleanupWorker(threading.Thread):
    """按 ``DELETED_CLEANUP_INTERVAL_MIN`` 周期执行回收站清理、失败上传回收与会话清理。"""

    def __init__(self, interval_seconds: Optional[float] = None) -> None:
        super().__init__(name="trove-cleanup", daemon=True)
        if interval_seconds is None:
            interval_seconds = get_settings().deleted_cleanup_interval_min * 60
        self.interval_seconds = interval_seconds
        self._stop_token = CancelToken()

    def run(self) -> None:
        logger.info("Cleanup worker started interval=%ss", self.interval_seconds)
        while not self._stop_token.wait(self.interval_seconds):
            self.run_once()
        logger.info("Cleanup worker stopped")

    def run_once(self) -> None:
        tasks = (
            ("retention sweep", lambda: trash_service.run_retention_sweep(ctx=self._stop_token)),
            ("stale upload reaper", reap_stale_uploads),
            ("failed upload purge", purge_failed_uploads),
            ("session cleanup", cleanup_expired_sessions),
        )
        with request_id_scope("cleanup"):
            for name, task in tasks:
                if self._stop_token.cancelled:
                    return
                try:
                    task()
                except Exception:
                    logger.exception("Cleanup task failed task=%s", name)

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        self._stop_token.cancel("shutdown")
        if self.is_alive():
            self.join(timeout)
