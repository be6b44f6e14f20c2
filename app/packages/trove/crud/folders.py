"""文件夹 CRUD。"""

from __future__ import annotations

from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.packages.trove.crud.base import CRUDBase
from app.packages.trove.models.folder import Folder


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class CRUDFolder(CRUDBase[Folder]):
    def get_by_path(self, db: Session, user_id: int, folder_path: str) -> Optional[Folder]:
        return self.query(db).filter(Folder.user_id == user_id, Folder.folder_path == folder_path).first()

    def list_children(self, db: Session, user_id: int, parent: str) -> List[Folder]:
        """直接子文件夹，按路径排序。"""
        prefix = "/" if parent == "/" else parent + "/"
        candidates = (
            self.query(db)
            .filter(Folder.user_id == user_id, Folder.folder_path.like(_escape_like(prefix) + "%", escape="\\"))
            .order_by(Folder.folder_path)
            .all()
        )
        return [f for f in candidates if f.folder_path != "/" and "/" not in f.folder_path[len(prefix):]]

    def list_subtree(self, db: Session, user_id: int, root: str, *, include_deleted: bool = False) -> List[Folder]:
        """``root`` 本身及其所有后代文件夹。"""
        return (
            self.query(db, include_deleted=include_deleted)
            .filter(
                Folder.user_id == user_id,
                or_(Folder.folder_path == root, Folder.folder_path.like(_escape_like(root) + "/%", escape="\\")),
            )
            .all()
        )

    def list_deleted(self, db: Session, user_id: int) -> List[Folder]:
        return (
            self.query(db, include_deleted=True)
            .filter(Folder.user_id == user_id, Folder.deleted_at.isnot(None))
            .order_by(Folder.deleted_at.desc())
            .all()
        )

    def list_expired_deleted(self, db: Session, user_id: int, cutoff) -> List[Folder]:
        return (
            self.query(db, include_deleted=True)
            .filter(Folder.user_id == user_id, Folder.deleted_at.isnot(None), Folder.deleted_at < cutoff)
            .all()
        )


folder_crud = CRUDFolder(Folder)
