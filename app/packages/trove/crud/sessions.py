"""会话记录 CRUD。"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.orm import Session

from app.packages.trove.crud.base import CRUDBase
from app.packages.trove.models.session import SessionRecord


class CRUDSession(CRUDBase[SessionRecord]):
    def get_by_token(self, db: Session, token: str) -> Optional[SessionRecord]:
        return db.get(SessionRecord, token)

    def delete_by_token(self, db: Session, token: str) -> None:
        db.execute(delete(SessionRecord).where(SessionRecord.token == token))
        db.commit()

    def delete_expired(self, db: Session, now: datetime) -> int:
        result = db.execute(delete(SessionRecord).where(SessionRecord.expires_at < now))
        db.commit()
        return result.rowcount or 0


session_crud = CRUDSession(SessionRecord)
