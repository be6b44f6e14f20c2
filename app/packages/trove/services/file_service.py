"""文件与文件夹服务：浏览、重命名、移动、下载以及文件夹的创建与删除。"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import BinaryIO, Callable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.packages.trove.core.cancel import CancelToken
from app.packages.trove.core.config import get_settings
from app.packages.trove.core.constants import HTTP_STATUS_BAD_REQUEST, ROOT_FOLDER
from app.packages.trove.core.exceptions import (
    AppException,
    ConflictError,
    DeniedError,
    NotFoundError,
    QuotaExceededError,
    StorageNotFound,
)
from app.packages.trove.core.logger import logger
from app.packages.trove.core.timezone import utcnow
from app.packages.trove.crud.file_record import file_record_crud
from app.packages.trove.crud.folders import folder_crud
from app.packages.trove.crud.users import user_crud
from app.packages.trove.models.file_record import FileRecord
from app.packages.trove.models.folder import Folder
from app.packages.trove.models.user import User
from app.packages.trove.services.storage_backends import StorageBackend, get_backend
from app.packages.trove.utils.path_utils import (
    InvalidPathError,
    ancestors,
    join_folder,
    norm_folder_path,
    numbered_name,
    parent_folder,
    validate_name,
)

_MAX_NAME_ATTEMPTS = 10000


@dataclass
class FolderListing:
    current_folder: str
    parent_folder: Optional[str]
    folders: List[Folder]
    files: List[FileRecord]


def parse_folder(raw: Optional[str]) -> str:
    try:
        return norm_folder_path(raw)
    except InvalidPathError as exc:
        raise AppException("文件夹路径不合法", HTTP_STATUS_BAD_REQUEST) from exc


def parse_name(raw: Optional[str]) -> str:
    try:
        return validate_name(raw)
    except InvalidPathError as exc:
        raise AppException(f"名称不合法：{exc}", HTTP_STATUS_BAD_REQUEST) from exc


def unique_filename(db: Session, user_id: int, folder: str, name: str, *, exclude_id: Optional[int] = None) -> str:
    """同一文件夹内重名时依次尝试 ``name (1).ext``、``name (2).ext`` ……"""
    if not file_record_crud.name_exists(db, user_id, folder, name, exclude_id=exclude_id):
        return name
    for counter in range(1, _MAX_NAME_ATTEMPTS + 1):
        candidate = numbered_name(name, counter)
        if not file_record_crud.name_exists(db, user_id, folder, candidate, exclude_id=exclude_id):
            return candidate
    return numbered_name(name, int(uuid.uuid4().hex[:8], 16))


class FileService:
    """面向单个用户的文件/文件夹操作。"""

    def __init__(self, backend_provider: Callable[[], StorageBackend] = get_backend) -> None:
        self._backend_provider = backend_provider

    @property
    def backend(self) -> StorageBackend:
        return self._backend_provider()

    # ------------------------------------------
    # 查询
    # ------------------------------------------

    def get_owned_file(self, db: Session, user: User, file_id: int, *, include_deleted: bool = False) -> FileRecord:
        """返回调用者拥有的已完成记录；他人记录与不存在同样表现为 404。"""
        record = file_record_crud.get_completed(db, file_id, include_deleted=include_deleted)
        if record is None:
            raise NotFoundError("文件不存在")
        if record.user_id != user.id:
            raise DeniedError("文件不存在")
        return record

    def list_folder(self, db: Session, user: User, folder: Optional[str]) -> FolderListing:
        current = parse_folder(folder)
        if current != ROOT_FOLDER and folder_crud.get_by_path(db, user.id, current) is None:
            raise NotFoundError("文件夹不存在")
        return FolderListing(
            current_folder=current,
            parent_folder=None if current == ROOT_FOLDER else parent_folder(current),
            folders=folder_crud.list_children(db, user.id, current),
            files=file_record_crud.list_in_folder(db, user.id, current),
        )

    def list_failed_uploads(self, db: Session, user: User) -> List[FileRecord]:
        """中断后被后台标记为失败、尚未清除的上传，供用户查看原因并移除。"""
        return file_record_crud.list_failed(db, user.id)

    # ------------------------------------------
    # 下载
    # ------------------------------------------

    def open_download(
        self, db: Session, user: User, file_id: int, *, ctx: Optional[CancelToken] = None
    ) -> tuple[FileRecord, BinaryIO]:
        record = self.get_owned_file(db, user, file_id)
        try:
            stream = self.backend.open(record.storage_path, ctx=ctx)
        except StorageNotFound as exc:
            logger.error("Blob missing for completed file file_id=%s key=%s", record.id, record.storage_path)
            raise NotFoundError("文件内容不存在") from exc
        return record, stream

    # ------------------------------------------
    # 重命名 / 移动
    # ------------------------------------------

    def rename_file(self, db: Session, user: User, file_id: int, new_name: str) -> FileRecord:
        record = self.get_owned_file(db, user, file_id)
        name = parse_name(new_name)
        if name == record.filename:
            return record
        if file_record_crud.name_exists(db, user.id, record.logical_path, name, exclude_id=record.id):
            raise ConflictError("同名文件已存在")
        record.filename = name
        return self._commit_record(db, record)

    def move_file(self, db: Session, user: User, file_id: int, destination: str) -> FileRecord:
        record = self.get_owned_file(db, user, file_id)
        target = parse_folder(destination)
        if target == record.logical_path:
            return record
        if target != ROOT_FOLDER and folder_crud.get_by_path(db, user.id, target) is None:
            raise NotFoundError("目标文件夹不存在")
        if file_record_crud.name_exists(db, user.id, target, record.filename, exclude_id=record.id):
            raise ConflictError("目标文件夹中已存在同名文件")
        record.logical_path = target
        return self._commit_record(db, record)

    @staticmethod
    def _commit_record(db: Session, record: FileRecord) -> FileRecord:
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise ConflictError("同名文件已存在") from exc
        db.refresh(record)
        return record

    # ------------------------------------------
    # 文件夹
    # ------------------------------------------

    def ensure_folder(self, db: Session, user_id: int, path: str) -> None:
        """确保 ``path`` 及其所有上级文件夹存在。只 flush 不提交，由调用方控制事务。"""
        for candidate in ancestors(path):
            if folder_crud.get_by_path(db, user_id, candidate) is not None:
                continue
            try:
                with db.begin_nested():
                    db.add(Folder(user_id=user_id, folder_path=candidate))
            except IntegrityError:
                # 并发请求已创建同一路径
                logger.debug("Folder created concurrently user_id=%s path=%s", user_id, candidate)

    def create_folder(self, db: Session, user: User, current_folder: Optional[str], folder_name: str) -> Folder:
        parent = parse_folder(current_folder)
        name = parse_name(folder_name)
        path = join_folder(parent, name)
        if parent != ROOT_FOLDER and folder_crud.get_by_path(db, user.id, parent) is None:
            raise NotFoundError("上级文件夹不存在")
        if folder_crud.get_by_path(db, user.id, path) is not None:
            raise ConflictError("文件夹已存在")
        folder = Folder(user_id=user.id, folder_path=path)
        db.add(folder)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise ConflictError("文件夹已存在") from exc
        db.refresh(folder)
        logger.info("Folder created user_id=%s path=%s", user.id, path)
        return folder

    def delete_folder(self, db: Session, user: User, current_folder: Optional[str], folder_name: str) -> int:
        """把文件夹、其子文件夹及其中所有文件移入回收站，返回受影响的文件数。"""
        path = join_folder(parse_folder(current_folder), parse_name(folder_name))
        folder = folder_crud.get_by_path(db, user.id, path)
        if folder is None:
            raise NotFoundError("文件夹不存在")

        settings = get_settings()
        stamp = utcnow()
        for item in folder_crud.list_subtree(db, user.id, path):
            item.original_folder_path = item.folder_path
            item.deleted_at = stamp
        files = file_record_crud.list_in_subtree(db, user.id, path)
        released = 0
        for record in files:
            record.original_logical_path = record.logical_path
            record.deleted_at = stamp
            if not settings.deleted_counts_toward_quota and record.counts_toward_quota:
                released += record.file_size
                record.counts_toward_quota = False
        user_crud.decrease_used(db, user.id, released)
        db.commit()
        logger.info("Folder moved to trash user_id=%s path=%s files=%s", user.id, path, len(files))
        return len(files)

    def rename_folder(
        self, db: Session, user: User, current_folder: Optional[str], old_name: str, new_name: str
    ) -> Folder:
        parent = parse_folder(current_folder)
        source = join_folder(parent, parse_name(old_name))
        target = join_folder(parent, parse_name(new_name))
        return self._relocate_folder(db, user, source, target)

    def move_folder(
        self, db: Session, user: User, current_folder: Optional[str], folder_name: str, destination: Optional[str]
    ) -> Folder:
        name = parse_name(folder_name)
        source = join_folder(parse_folder(current_folder), name)
        target_parent = parse_folder(destination)
        if target_parent == source or target_parent.startswith(source + "/"):
            logger.info("Rejected circular folder move user_id=%s source=%s destination=%s", user.id, source, target_parent)
            raise AppException("不能把文件夹移动到自身或其子文件夹中", HTTP_STATUS_BAD_REQUEST)
        if target_parent != ROOT_FOLDER and folder_crud.get_by_path(db, user.id, target_parent) is None:
            raise NotFoundError("目标文件夹不存在")
        return self._relocate_folder(db, user, source, join_folder(target_parent, name))

    def _relocate_folder(self, db: Session, user: User, source: str, target: str) -> Folder:
        """把 ``source`` 整棵子树改写到 ``target``，文件夹路径与文件逻辑路径在同一事务中更新。"""
        folder = folder_crud.get_by_path(db, user.id, source)
        if folder is None:
            raise NotFoundError("文件夹不存在")
        if target == source:
            return folder
        if folder_crud.list_subtree(db, user.id, target) or file_record_crud.list_in_subtree(db, user.id, target):
            raise ConflictError("目标位置已存在同名文件夹")

        folders = folder_crud.list_subtree(db, user.id, source)
        files = file_record_crud.list_in_subtree(db, user.id, source)
        for item in folders:
            item.folder_path = target + item.folder_path[len(source):]
        for record in files:
            record.logical_path = target + record.logical_path[len(source):]
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise ConflictError("目标位置已存在同名文件夹") from exc
        db.refresh(folder)
        logger.info(
            "Folder relocated user_id=%s source=%s target=%s folders=%s files=%s",
            user.id,
            source,
            target,
            len(folders),
            len(files),
        )
        return folder

    def charge_restore(self, db: Session, record: FileRecord) -> None:
        """恢复时重新计入配额（仅当删除时已释放）。不提交事务。"""
        if record.counts_toward_quota:
            return
        if not user_crud.try_increase_used(db, record.user_id, record.file_size):
            db.rollback()
            raise QuotaExceededError("存储空间不足，无法恢复文件")
        record.counts_toward_quota = True


file_service = FileService()
