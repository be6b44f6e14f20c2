"""上传流水线。

一次上传的步骤严格按顺序执行：

1. 预检：声明大小超过系统上限直接拒绝；``已用 + min(声明大小, 上限)`` 超出配额同样拒绝。
2. 写入一条 ``pending`` 记录（不计入配额，列表中不可见），进程中途退出时由后台任务回收。
3. 客户端流经 ``BoundedReader -> HashingReader`` 写入暂存文件，超限立即中止。
4. 用真实大小复查配额，再按摘要查找可复用的存储键。
5. 命中时复用已有存储键并丢弃暂存文件；未命中时把暂存文件交给存储后端。
6. 在同一个事务中原子地增加已用空间并把记录提升为 ``completed``。

任一步骤失败都会删除暂存文件、删除本次新写入的存储对象以及 ``pending`` 记录。
"""

from __future__ import annotations

import functools
import mimetypes
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.packages.trove.core.cancel import CancelToken, check
from app.packages.trove.core.config import Settings, get_settings
from app.packages.trove.core.constants import (
    SPOOL_PREFIX,
    UPLOAD_STATUS_COMPLETED,
    UPLOAD_STATUS_FAILED,
    UPLOAD_STATUS_PENDING,
    UPLOAD_STATUS_UPLOADING,
)
from app.packages.trove.core.exceptions import (
    BackendUnavailableError,
    ConflictError,
    FileTooLargeError,
    QuotaExceededError,
    StorageError,
)
from app.packages.trove.core.logger import logger
from app.packages.trove.crud.file_record import file_record_crud
from app.packages.trove.crud.users import user_crud
from app.packages.trove.models.file_record import FileRecord
from app.packages.trove.services.file_service import file_service, parse_folder, unique_filename
from app.packages.trove.services.storage_backends import SaveOptions, StorageBackend, get_backend
from app.packages.trove.services.streams import BoundedReader, ByteSource, CancellableReader, HashingReader, copy_stream
from app.packages.trove.utils.path_utils import sanitize_filename

_COMMIT_ATTEMPTS = 5
_KEEPALIVE_MAX_SECONDS = 30.0
_DEFAULT_MIME_TYPE = "application/octet-stream"


@dataclass
class UploadRequest:
    user_id: int
    stream: ByteSource
    filename: Optional[str]
    folder_path: Optional[str] = "/"
    content_type: Optional[str] = None
    declared_size: Optional[int] = None


@dataclass
class UploadResult:
    record: FileRecord
    deduplicated: bool


@dataclass
class _Spool:
    path: str
    digest: str
    size: int


def guess_mime_type(filename: str, hint: Optional[str] = None) -> str:
    if hint and hint.strip() and hint.strip().lower() != _DEFAULT_MIME_TYPE:
        return hint.strip()
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or _DEFAULT_MIME_TYPE


class KeepAliveReader:
    """读取过程中按固定间隔调用 ``touch``，让长时间的上传不被当作中断的上传回收。"""

    def __init__(self, source: ByteSource, touch: Callable[[], None], interval: float) -> None:
        self._source = source
        self._touch = touch
        self._interval = interval
        self._last = time.monotonic()

    def read(self, size: int = -1) -> bytes:
        data = self._source.read(size)
        now = time.monotonic()
        if now - self._last >= self._interval:
            self._touch()
            self._last = now
        return data


def keepalive_interval(settings: Settings) -> float:
    return min(_KEEPALIVE_MAX_SECONDS, max(settings.pending_upload_ttl_min * 60 / 4, 1.0))


def remove_spool(path: Optional[str]) -> None:
    if not path:
        return
    try:
        Path(path).unlink(missing_ok=True)
    except OSError:
        logger.error("Failed to remove spool file path=%s", path, exc_info=True)


class UploadService:
    """把客户端字节流落地为一条已完成的文件记录。"""

    def __init__(self, backend_provider: Callable[[], StorageBackend] = get_backend) -> None:
        self._backend_provider = backend_provider

    @property
    def backend(self) -> StorageBackend:
        return self._backend_provider()

    def upload(self, db: Session, req: UploadRequest, *, ctx: Optional[CancelToken] = None) -> UploadResult:
        settings = get_settings()
        folder = parse_folder(req.folder_path)
        name = sanitize_filename(req.filename)
        self._preflight(db, req, settings)

        record = self._create_pending(db, req, folder, name)
        spool: Optional[_Spool] = None
        new_key: Optional[str] = None
        try:
            file_record_crud.update_status(db, record.id, UPLOAD_STATUS_UPLOADING)
            touch = functools.partial(file_record_crud.touch, db, record.id)
            stream = KeepAliveReader(req.stream, touch, keepalive_interval(settings))
            spool = self._spool(stream, settings, ctx)
            check(ctx)

            if settings.enable_file_deduplication:
                counts = settings.dedup_hits_count_toward_quota
                if counts:
                    self._recheck_quota(db, req.user_id, spool.size)
                result = self._try_dedup(db, record.id, req.user_id, folder, name, spool, counts, settings)
                if result is not None:
                    return result

            self._recheck_quota(db, req.user_id, spool.size)
            new_key = self._persist(spool, name, record.mime_type, ctx)
            committed = self._commit(
                db,
                record.id,
                req.user_id,
                folder,
                name,
                key=new_key,
                digest=spool.digest,
                size=spool.size,
                counts=True,
                verify_key=False,
            )
            logger.info(
                "Upload stored user_id=%s file_id=%s key=%s size=%s digest=%s",
                req.user_id,
                committed.id,
                new_key,
                spool.size,
                spool.digest,
            )
            new_key = None
            return UploadResult(record=committed, deduplicated=False)
        except BaseException as exc:
            db.rollback()
            if new_key is not None:
                self._discard_blob(new_key)
            self._drop_pending(db, record.id, exc)
            raise
        finally:
            remove_spool(spool.path if spool is not None else None)

    # ------------------------------------------
    # 步骤
    # ------------------------------------------

    @staticmethod
    def _preflight(db: Session, req: UploadRequest, settings: Settings) -> None:
        limit = settings.max_upload_size
        declared = req.declared_size
        if declared is not None and declared > limit:
            raise FileTooLargeError(f"文件超出上传大小限制（{limit} 字节）")
        used, quota = user_crud.current_usage(db, req.user_id)
        if used + min(declared or 0, limit) > quota:
            logger.info("Upload rejected before streaming user_id=%s used=%s quota=%s", req.user_id, used, quota)
            raise QuotaExceededError()

    @staticmethod
    def _create_pending(db: Session, req: UploadRequest, folder: str, name: str) -> FileRecord:
        return file_record_crud.create(
            db,
            {
                "user_id": req.user_id,
                "storage_path": "",
                "logical_path": folder,
                "filename": name,
                "original_filename": name,
                "file_size": req.declared_size or 0,
                "mime_type": guess_mime_type(name, req.content_type),
                "digest": "",
                "upload_status": UPLOAD_STATUS_PENDING,
            },
        )

    @staticmethod
    def _spool(stream: ByteSource, settings: Settings, ctx: Optional[CancelToken]) -> _Spool:
        temp_dir = settings.temp_directory
        temp_dir.mkdir(parents=True, exist_ok=True)
        reader = HashingReader(BoundedReader(CancellableReader(stream, ctx), settings.max_upload_size))
        handle = tempfile.NamedTemporaryFile(prefix=SPOOL_PREFIX, dir=temp_dir, delete=False)
        try:
            with handle:
                copy_stream(reader, handle, buffer_size=settings.upload_buffer_size, ctx=ctx)
                handle.flush()
                os.fsync(handle.fileno())
        except BaseException:
            remove_spool(handle.name)
            raise
        return _Spool(path=handle.name, digest=reader.hexdigest, size=reader.bytes_read)

    @staticmethod
    def _recheck_quota(db: Session, user_id: int, size: int) -> None:
        used, quota = user_crud.current_usage(db, user_id)
        db.rollback()
        if used + size > quota:
            logger.info("Upload rejected after streaming user_id=%s size=%s used=%s quota=%s", user_id, size, used, quota)
            raise QuotaExceededError()

    def _try_dedup(
        self,
        db: Session,
        record_id: int,
        user_id: int,
        folder: str,
        name: str,
        spool: _Spool,
        counts: bool,
        settings: Settings,
    ) -> Optional[UploadResult]:
        owner = None if settings.dedup_cross_user else user_id
        existing = file_record_crud.find_by_digest(db, owner, spool.digest)
        if existing is None:
            db.rollback()
            return None
        key = existing.storage_path
        committed = self._commit(
            db,
            record_id,
            user_id,
            folder,
            name,
            key=key,
            digest=spool.digest,
            size=spool.size,
            counts=counts,
            verify_key=True,
        )
        if committed is None:
            # 命中的记录在提交前已被清除，按未命中处理
            logger.info("Dedup candidate vanished before commit user_id=%s key=%s", user_id, key)
            return None
        logger.info(
            "Upload deduplicated user_id=%s file_id=%s key=%s size=%s", user_id, committed.id, key, spool.size
        )
        return UploadResult(record=committed, deduplicated=True)

    def _persist(self, spool: _Spool, name: str, mime_type: Optional[str], ctx: Optional[CancelToken]) -> str:
        opts = SaveOptions(original_filename=name, content_type=mime_type, size_hint=spool.size)
        try:
            result = self.backend.save_file(spool.path, opts, digest=spool.digest, size=spool.size, ctx=ctx)
        except StorageError as exc:
            logger.error("Blob backend rejected upload backend=%s error=%s", self.backend.name, exc.msg)
            raise BackendUnavailableError() from exc
        return result.key

    def _commit(
        self,
        db: Session,
        record_id: int,
        user_id: int,
        folder: str,
        name: str,
        *,
        key: str,
        digest: str,
        size: int,
        counts: bool,
        verify_key: bool,
    ) -> Optional[FileRecord]:
        """配额扣减与记录提升在同一事务内完成；返回 ``None`` 表示复用的存储键已失效。"""
        for attempt in range(1, _COMMIT_ATTEMPTS + 1):
            try:
                # 先执行配额 UPDATE，让本事务最先取得写锁
                if counts and not user_crud.try_increase_used(db, user_id, size):
                    db.rollback()
                    raise QuotaExceededError()
                if verify_key and not file_record_crud.lock_key_holders(db, key):
                    db.rollback()
                    return None
                file_service.ensure_folder(db, user_id, folder)
                record = file_record_crud.get(db, record_id)
                if record is None:
                    db.rollback()
                    raise ConflictError("上传记录已失效")
                record.filename = unique_filename(db, user_id, folder, name, exclude_id=record_id)
                record.storage_path = key
                record.digest = digest
                record.file_size = size
                record.upload_status = UPLOAD_STATUS_COMPLETED
                record.error_message = None
                record.counts_toward_quota = counts
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.warning("Name collision while committing upload user_id=%s attempt=%s", user_id, attempt)
                continue
            db.refresh(record)
            return record
        raise ConflictError("同名文件已存在")

    # ------------------------------------------
    # 失败清理
    # ------------------------------------------

    def _discard_blob(self, key: str) -> None:
        try:
            self.backend.delete(key)
        except StorageError:
            logger.error("Failed to remove orphaned blob key=%s", key, exc_info=True)

    @staticmethod
    def _drop_pending(db: Session, record_id: int, cause: BaseException) -> None:
        """删除失败上传留下的记录；删除失败时退而标记为 ``failed`` 交给后台清理。"""
        try:
            record = file_record_crud.get(db, record_id)
            if record is not None and record.upload_status != UPLOAD_STATUS_COMPLETED:
                file_record_crud.hard_delete(db, record)
            return
        except SQLAlchemyError:
            db.rollback()
            logger.error("Failed to drop pending upload file_id=%s", record_id, exc_info=True)
        try:
            file_record_crud.update_status(db, record_id, UPLOAD_STATUS_FAILED, str(cause)[:1000] or type(cause).__name__)
        except SQLAlchemyError:
            db.rollback()
            logger.error("Failed to mark upload as failed file_id=%s", record_id, exc_info=True)


upload_service = UploadService()
