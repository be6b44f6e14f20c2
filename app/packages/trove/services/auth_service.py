"""认证服务：封装注册、登录与退出等核心业务流程。"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.packages.trove.core.config import get_settings
from app.packages.trove.core.constants import (
    HTTP_STATUS_BAD_REQUEST,
    HTTP_STATUS_FORBIDDEN,
    HTTP_STATUS_UNAUTHORIZED,
)
from app.packages.trove.core.exceptions import AppException, ConflictError
from app.packages.trove.core.logger import logger
from app.packages.trove.core.security import create_access_token, get_password_hash, verify_password
from app.packages.trove.core.session import create_session, delete_session
from app.packages.trove.crud.users import user_crud
from app.packages.trove.models.user import User

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+$")
_BCRYPT_MAX_BYTES = 72


@dataclass
class LoginResult:
    user: User
    access_token: str
    session_id: str
    expires_in: int


class AuthService:
    """负责处理用户注册与登录流程，并保持逻辑聚合。"""

    def register_user(self, db: Session, *, username: str, email: str, password: str) -> User:
        """创建新用户，初始配额取 ``DEFAULT_USER_QUOTA``。"""
        settings = get_settings()
        if not settings.enable_registration:
            raise AppException(msg="当前未开放注册", code=HTTP_STATUS_FORBIDDEN)

        username = username.strip()
        email = email.strip().lower()
        if not _EMAIL_RE.match(email):
            raise AppException(msg="邮箱格式不正确", code=HTTP_STATUS_BAD_REQUEST)
        if len(password.encode("utf-8")) > _BCRYPT_MAX_BYTES:
            raise AppException(msg="密码长度不能超过 72 字节", code=HTTP_STATUS_BAD_REQUEST)
        if user_crud.get_by_username(db, username) is not None:
            raise ConflictError("用户名已存在")
        if user_crud.get_by_email(db, email) is not None:
            raise ConflictError("邮箱已被使用")

        try:
            user = user_crud.create(
                db,
                {
                    "username": username,
                    "email": email,
                    "password_hash": get_password_hash(password),
                    "storage_quota": settings.default_user_quota,
                    "storage_used": 0,
                    "is_admin": False,
                },
            )
        except IntegrityError as exc:
            db.rollback()
            raise ConflictError("用户名或邮箱已存在") from exc
        logger.info("User registered user_id=%s username=%s", user.id, user.username)
        return user

    def login(self, db: Session, *, username: str, password: str, client_ip: Optional[str] = None) -> LoginResult:
        """校验用户凭证，创建会话并签发访问令牌。"""
        user = user_crud.get_by_username(db, username.strip())
        if user is None or not verify_password(password, user.password_hash):
            logger.info("Login failed username=%s ip=%s", username, client_ip or "-")
            raise AppException(msg="用户名或密码错误", code=HTTP_STATUS_UNAUTHORIZED)

        ttl_seconds = get_settings().session_duration_seconds
        session_id = create_session(db, user.id, ttl_seconds, {"ip": client_ip})
        access_token = create_access_token({"user_id": user.id, "username": user.username, "sid": session_id})
        logger.info("Login succeeded user_id=%s ip=%s", user.id, client_ip or "-")
        return LoginResult(user=user, access_token=access_token, session_id=session_id, expires_in=ttl_seconds)

    def logout(self, db: Session, session_id: Optional[str]) -> None:
        if session_id:
            delete_session(db, session_id)


auth_service = AuthService()
