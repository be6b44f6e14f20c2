"""认证相关路由定义。"""

import ipaddress
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.packages.trove.api.v1.schemas.auth import (
    LoginRequest,
    LogoutResponse,
    ProfileResponse,
    RegisterRequest,
    RegisterResponse,
    TokenResponse,
)
from app.packages.trove.core.config import get_settings
from app.packages.trove.core.constants import ACCESS_TOKEN_TYPE, HTTP_STATUS_CREATED, HTTP_STATUS_OK, SESSION_COOKIE_NAME
from app.packages.trove.core.dependencies import get_current_user, get_db
from app.packages.trove.core.responses import create_response
from app.packages.trove.models.user import User
from app.packages.trove.services.auth_service import auth_service

router = APIRouter(prefix="/auth", tags=["auth"])


def _profile(user: User) -> dict:
    return {
        "user_id": user.id,
        "username": user.username,
        "email": user.email,
        "is_admin": user.is_admin,
        "storage_quota": user.storage_quota,
        "storage_used": user.storage_used,
        "storage_available": user.storage_available,
    }


@router.post("/register", response_model=RegisterResponse, status_code=HTTP_STATUS_CREATED)
def register(payload: RegisterRequest, db: Session = Depends(get_db)) -> dict:
    user = auth_service.register_user(db, username=payload.username, email=payload.email, password=payload.password)
    return create_response("注册成功", _profile(user), HTTP_STATUS_CREATED)


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginRequest, request: Request, db: Session = Depends(get_db)) -> JSONResponse:
    """校验凭证并签发访问令牌，同时写入会话 Cookie 供浏览器使用。"""
    result = auth_service.login(
        db,
        username=payload.username,
        password=payload.password,
        client_ip=extract_client_ip(request),
    )
    body = create_response(
        "登录成功",
        {
            "access_token": result.access_token,
            "token_type": ACCESS_TOKEN_TYPE,
            "expires_in": result.expires_in,
            "user": _profile(result.user),
        },
        HTTP_STATUS_OK,
    )
    response = JSONResponse(content=body)
    response.set_cookie(
        SESSION_COOKIE_NAME,
        result.access_token,
        max_age=result.expires_in,
        httponly=True,
        samesite="lax",
        secure=get_settings().is_production,
    )
    return response


@router.post("/logout", response_model=LogoutResponse)
def logout(request: Request, db: Session = Depends(get_db), _: User = Depends(get_current_user)) -> JSONResponse:
    auth_service.logout(db, getattr(request.state, "session_id", None))
    response = JSONResponse(content=create_response("退出登录成功", None, HTTP_STATUS_OK))
    response.delete_cookie(SESSION_COOKIE_NAME)
    return response


@router.get("/me", response_model=ProfileResponse)
def me(current_user: User = Depends(get_current_user)) -> dict:
    return create_response("获取成功", _profile(current_user), HTTP_STATUS_OK)


def extract_client_ip(request: Request) -> Optional[str]:
    """直连地址位于 ``TRUSTED_PROXY_CIDRS`` 内时才采信转发头部。"""
    peer = request.client.host if request.client else None
    if peer is None or not _is_trusted_proxy(peer):
        return peer
    for key in ("x-forwarded-for", "x-real-ip"):
        raw = request.headers.get(key)
        if raw:
            return raw.split(",")[0].strip()
    return peer


def _is_trusted_proxy(host: str) -> bool:
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    for cidr in get_settings().trusted_proxy_cidrs:
        try:
            if address in ipaddress.ip_network(cidr, strict=False):
                return True
        except ValueError:
            continue
    return False
