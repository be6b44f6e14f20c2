"""Database bootstrapping utilities."""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from app.packages.trove.core.config import get_settings
from app.packages.trove.core.security import get_password_hash
from app.packages.trove.db import session as db_session
from app.packages.trove.db.migrations import run_migrations
from app.packages.trove.models.user import User

logger = logging.getLogger(__name__)


def init_db() -> None:
    """执行数据库迁移，并在配置了管理员账号时写入初始管理员。"""
    run_migrations(db_session.engine)

    session = db_session.SessionLocal()
    try:
        _seed_admin_if_configured(session)
        session.commit()
    except Exception:
        session.rollback()
        logger.exception("Failed to seed default data during database initialization")
        raise
    finally:
        session.close()


def _seed_admin_if_configured(db: Session) -> None:
    """``ADMIN_USERNAME`` 与 ``ADMIN_PASSWORD`` 同时配置时确保该管理员存在（幂等）。"""
    settings = get_settings()
    if not (settings.admin_username and settings.admin_password):
        return
    existing = db.query(User).filter(User.username == settings.admin_username).first()
    if existing is not None:
        if not existing.is_admin:
            existing.is_admin = True
            db.add(existing)
        return
    db.add(
        User(
            username=settings.admin_username,
            email=settings.admin_email or f"{settings.admin_username}@localhost",
            password_hash=get_password_hash(settings.admin_password),
            storage_quota=settings.default_user_quota,
            storage_used=0,
            is_admin=True,
        )
    )
    db.flush()
    logger.info("Seeded administrator account username=%s", settings.admin_username)
