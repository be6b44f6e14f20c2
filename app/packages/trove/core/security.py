"""安全模块：提供密码哈希、验证以及会话令牌的签名/解析能力。"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import bcrypt
from jose import JWTError, jwt

from .config import get_settings
from .logger import logger

_MIN_BCRYPT_COST = 4
_MAX_BCRYPT_COST = 31


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """校验明文密码与已存储哈希值是否匹配。"""
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        return False


def get_password_hash(password: str) -> str:
    """按 ``BCRYPT_COST`` 对密码执行 bcrypt 哈希并返回可持久化的字符串。"""
    cost = min(max(get_settings().bcrypt_cost, _MIN_BCRYPT_COST), _MAX_BCRYPT_COST)
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=cost)).decode("utf-8")


def create_access_token(subject: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """根据传入载荷生成带有过期时间、以 ``SESSION_SECRET`` 签名的 JWT。"""
    settings = get_settings()
    expire = datetime.now(timezone.utc) + (
        expires_delta if expires_delta else timedelta(seconds=settings.session_duration_seconds)
    )
    to_encode = subject.copy()
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.session_secret, algorithm=settings.session_algorithm)


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    """解析 JWT 并在合法时返回载荷，否则返回 ``None``。

    过期时间不在此处校验，会话是否有效以数据库中的会话记录为准（滑动续期）。
    """
    settings = get_settings()
    try:
        return jwt.decode(
            token,
            settings.session_secret,
            algorithms=[settings.session_algorithm],
            options={"verify_exp": False},
        )
    except JWTError as exc:
        logger.warning("Failed to decode session token: %s", exc)
        return None
