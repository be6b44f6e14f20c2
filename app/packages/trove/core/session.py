"""会话管理：基于元数据库会话表实现滑动过期的访问会话。"""

from __future__ import annotations

import secrets
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy.orm import Session

from app.packages.trove.core.timezone import as_utc, utcnow
from app.packages.trove.crud.sessions import session_crud
from app.packages.trove.models.session import SessionRecord


def create_session(db: Session, user_id: int, ttl_seconds: int, data: Optional[dict[str, Any]] = None) -> str:
    """创建会话并返回不透明令牌。"""
    token = secrets.token_hex(32)
    session_crud.create(
        db,
        {
            "token": token,
            "user_id": user_id,
            "data": data or {},
            "expires_at": utcnow() + timedelta(seconds=ttl_seconds),
        },
    )
    return token


def touch_session(db: Session, token: str, user_id: int, ttl_seconds: int) -> bool:
    """刷新会话到期时间；会话不存在、已过期或用户不匹配时返回 ``False``。"""
    record: Optional[SessionRecord] = session_crud.get_by_token(db, token)
    if record is None or record.user_id != user_id:
        return False
    now = utcnow()
    if as_utc(record.expires_at) < now:
        session_crud.hard_delete(db, record)
        return False
    record.expires_at = now + timedelta(seconds=ttl_seconds)
    session_crud.save(db, record)
    return True


def delete_session(db: Session, token: str) -> None:
    """删除指定会话，忽略不存在的情况。"""
    session_crud.delete_by_token(db, token)


def purge_expired_sessions(db: Session) -> int:
    return session_crud.delete_expired(db, utcnow())
