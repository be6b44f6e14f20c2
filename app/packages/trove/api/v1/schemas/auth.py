"""认证相关的请求与响应模型。"""

from typing import Literal

from pydantic import BaseModel, Field

from app.packages.trove.api.v1.schemas.common import ResponseEnvelope


class RegisterRequest(BaseModel):
    """用户注册需要的字段。"""

    username: str = Field(..., min_length=3, max_length=50, pattern=r"^[A-Za-z0-9_.-]+$")
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=8, max_length=128)


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=50)
    password: str = Field(..., min_length=1, max_length=128)


class UserProfile(BaseModel):
    """当前用户信息与配额概览。"""

    user_id: int
    username: str
    email: str
    is_admin: bool
    storage_quota: int
    storage_used: int
    storage_available: int


class TokenResponseData(BaseModel):
    """登录成功后签发的令牌信息。"""

    access_token: str
    token_type: Literal["bearer"]
    expires_in: int
    user: UserProfile


RegisterResponse = ResponseEnvelope[UserProfile]
TokenResponse = ResponseEnvelope[TokenResponseData]
ProfileResponse = ResponseEnvelope[UserProfile]
LogoutResponse = ResponseEnvelope[None]
