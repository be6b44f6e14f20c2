"""配置模块：负责加载和缓存基于环境变量的应用设置。"""

import os
import tempfile
from functools import lru_cache
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pydantic import Field, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from app.packages.trove.utils.units import parse_duration, parse_size, split_csv

DEFAULT_SESSION_SECRET = "change_me_in_production"


# 探测项目根目录并加载环境文件，支持通过 ENV_FILE/ENV 定制优先级。
def _detect_base_dir() -> Path:
    """向上遍历目录树，寻找包含 `app` 目录的项目根路径。"""
    current = Path(__file__).resolve()
    for candidate in current.parents:
        if (candidate / "app").is_dir():
            return candidate
    return current.parent


BASE_DIR = _detect_base_dir()


def _load_environment() -> None:
    env_file_override = os.getenv("ENV_FILE")
    if env_file_override:
        candidate = BASE_DIR / env_file_override
        if candidate.exists():
            load_dotenv(candidate, override=True, encoding="utf-8")
        return

    base_env = BASE_DIR / ".env"
    if base_env.exists():
        load_dotenv(base_env, override=False, encoding="utf-8")

    environment = os.getenv("ENV")
    if environment:
        candidate_name = environment if environment.startswith(".env") else f".env.{environment}"
        candidate_path = BASE_DIR / candidate_name
        if candidate_path.exists():
            load_dotenv(candidate_path, override=True, encoding="utf-8")


_load_environment()


class Settings(BaseSettings):
    """
    封装服务运行所需的所有配置项，每个字段都可以通过环境变量重写。
    容量类字段接受 ``10G``、``500M``、``1.5G`` 这类写法，非法值回退到默认值。
    """

    project_name: str = Field(default="Trove", alias="PROJECT_NAME")
    version: str = Field(default="0.1.0", alias="VERSION")
    api_prefix: str = Field(default="", alias="API_PREFIX")
    debug: bool = Field(default=False, alias="DEBUG")

    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8080, alias="PORT")
    env: str = Field(default="development", alias="ENV")

    db_type: str = Field(default="sqlite", alias="DB_TYPE")
    db_host: str = Field(default="localhost", alias="DB_HOST")
    db_port: int = Field(default=5432, alias="DB_PORT")
    db_name: str = Field(default="trove", alias="DB_NAME")
    db_user: str = Field(default="trove", alias="DB_USER")
    db_password: str = Field(default="", alias="DB_PASSWORD")
    db_path: str = Field(default="./data/trove.db", alias="DB_PATH")
    db_echo: bool = Field(default=False, alias="DB_ECHO")

    storage_backend: str = Field(default="disk", alias="STORAGE_BACKEND")
    storage_path: str = Field(default="./data/files", alias="STORAGE_PATH")
    temp_dir: str = Field(default="", alias="TEMP_DIR")
    s3_bucket: str = Field(default="", alias="S3_BUCKET")
    s3_use_path_style: bool = Field(default=False, alias="S3_USE_PATH_STYLE")

    default_user_quota: int = Field(default=10 * 1024**3, alias="DEFAULT_USER_QUOTA")
    max_upload_size: int = Field(default=500 * 1024**2, alias="MAX_UPLOAD_SIZE")
    upload_buffer_size: int = Field(default=8 * 1024**2, alias="UPLOAD_BUFFER_SIZE")

    session_secret: str = Field(default=DEFAULT_SESSION_SECRET, alias="SESSION_SECRET")
    session_duration_raw: str = Field(default="168h", alias="SESSION_DURATION")
    session_algorithm: str = Field(default="HS256", alias="SESSION_ALGORITHM")
    bcrypt_cost: int = Field(default=10, alias="BCRYPT_COST")
    csrf_enabled: bool = Field(default=True, alias="CSRF_ENABLED")

    admin_username: str = Field(default="", alias="ADMIN_USERNAME")
    admin_password: str = Field(default="", alias="ADMIN_PASSWORD")
    admin_email: str = Field(default="", alias="ADMIN_EMAIL")

    enable_registration: bool = Field(default=True, alias="ENABLE_REGISTRATION")
    enable_file_deduplication: bool = Field(default=True, alias="ENABLE_FILE_DEDUPLICATION")
    dedup_cross_user: bool = Field(default=False, alias="DEDUP_CROSS_USER")
    dedup_hits_count_toward_quota: bool = Field(default=True, alias="DEDUP_HITS_COUNT_TOWARD_QUOTA")

    deleted_retention_days: int = Field(default=30, alias="DELETED_RETENTION_DAYS")
    deleted_cleanup_interval_min: int = Field(default=60, alias="DELETED_CLEANUP_INTERVAL_MIN")
    deleted_counts_toward_quota: bool = Field(default=True, alias="DELETED_COUNTS_TOWARD_QUOTA")

    temp_sweep_age_min: int = Field(default=24 * 60, alias="TEMP_SWEEP_AGE_MIN")
    pending_upload_ttl_min: int = Field(default=60, alias="PENDING_UPLOAD_TTL_MIN")
    failed_upload_retention_hours: int = Field(default=24, alias="FAILED_UPLOAD_RETENTION_HOURS")

    trusted_proxy_cidrs_raw: str = Field(default="", alias="TRUSTED_PROXY_CIDRS")
    cors_allowed_origins_raw: str = Field(default="", alias="CORS_ALLOWED_ORIGINS")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_dir: str = Field(default="log", alias="LOG_DIR")
    log_file_name: str = Field(default="trove.log", alias="LOG_FILE_NAME")
    log_json: bool = Field(default=False, alias="LOG_JSON")
    timezone: str = Field(default="UTC", alias="TIMEZONE")

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("default_user_quota", "max_upload_size", "upload_buffer_size", mode="before")
    @classmethod
    def _parse_size_field(cls, value: Any, info: ValidationInfo) -> int:
        try:
            return parse_size(value)
        except ValueError:
            return cls.model_fields[info.field_name].default

    @field_validator("deleted_retention_days", mode="after")
    @classmethod
    def _clamp_retention(cls, value: int) -> int:
        return max(value, 0)

    @field_validator("deleted_cleanup_interval_min", mode="after")
    @classmethod
    def _clamp_interval(cls, value: int) -> int:
        return max(value, 1)

    @field_validator("storage_backend", "db_type", "env", mode="after")
    @classmethod
    def _lower(cls, value: str) -> str:
        return value.strip().lower()

    @model_validator(mode="after")
    def _check_production_secret(self) -> "Settings":
        if self.is_production and self.session_secret.strip() in {"", DEFAULT_SESSION_SECRET}:
            raise ValueError("SESSION_SECRET must be set to a non-default value in production")
        return self

    @property
    def is_production(self) -> bool:
        return self.env == "production"

    @property
    def sql_database_url(self) -> str:
        """根据 ``DB_TYPE`` 拼接 SQLAlchemy 连接串。"""
        if self.db_type == "postgres":
            return (
                f"postgresql+psycopg2://{self.db_user}:{self.db_password}"
                f"@{self.db_host}:{self.db_port}/{self.db_name}"
            )
        if self.db_type != "sqlite":
            raise ValueError(f"unsupported DB_TYPE: {self.db_type}")
        if self.db_path == ":memory:":
            return "sqlite://"
        return f"sqlite:///{self._resolve_path(self.db_path)}"

    def _resolve_path(self, raw: str) -> Path:
        path = Path(raw)
        if not path.is_absolute():
            path = BASE_DIR / path
        return path

    @property
    def storage_directory(self) -> Path:
        return self._resolve_path(self.storage_path)

    @property
    def temp_directory(self) -> Path:
        """上传暂存目录，未配置时使用系统临时目录。"""
        if not self.temp_dir:
            return Path(tempfile.gettempdir())
        return self._resolve_path(self.temp_dir)

    @property
    def session_duration_seconds(self) -> int:
        """会话有效期（秒），解析失败时回退到 168h。"""
        try:
            seconds = parse_duration(self.session_duration_raw)
        except ValueError:
            seconds = 168 * 3600
        return max(int(seconds), 1)

    @property
    def trusted_proxy_cidrs(self) -> list[str]:
        return split_csv(self.trusted_proxy_cidrs_raw)

    @property
    def cors_allowed_origins(self) -> list[str]:
        return split_csv(self.cors_allowed_origins_raw)

    @property
    def log_directory(self) -> Path:
        """返回日志目录的绝对路径，支持相对路径配置。"""
        return self._resolve_path(self.log_dir)

    @property
    def log_file_path(self) -> Path:
        return self.log_directory / self.log_file_name

    @property
    def timezone_info(self) -> ZoneInfo:
        """返回当前配置对应的时区信息，无法解析时回退到 UTC。"""
        try:
            return ZoneInfo(self.timezone)
        except ZoneInfoNotFoundError:
            return ZoneInfo("UTC")


@lru_cache
def get_settings() -> Settings:
    """返回单例化的配置对象，避免重复解析环境变量。"""
    return Settings()
