"""日志配置：控制台彩色输出、按天滚动的文件日志，以及贯穿请求与后台任务的请求 ID。

请求 ID 保存在 ``ContextVar`` 中：HTTP 请求由 ``RequestIdMiddleware`` 写入，
后台清理线程通过 ``request_id_scope`` 为每一轮任务生成独立的 ID。
"""

import json
import logging
import logging.config
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

from .config import Settings, get_settings

LOGGER_NAME = "app"
_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"
_MODULE = __name__
_CAPTURED_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", LOGGER_NAME)

_request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class _TZFormatter(logging.Formatter):
    """按 ``TIMEZONE`` 渲染时间戳，未指定 datefmt 时输出带毫秒的 ISO-8601。"""

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:  # noqa: N802
        dt = datetime.fromtimestamp(record.created, get_settings().timezone_info)
        if datefmt:
            return dt.strftime(datefmt)
        return dt.isoformat(sep=" ", timespec="milliseconds")


class ColorFormatter(_TZFormatter):
    """终端为 TTY 时按级别着色。"""

    RESET = "\033[0m"
    COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[41m",
    }

    def __init__(self, fmt: str, datefmt: Optional[str] = None, use_colors: Optional[bool] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.use_colors = sys.stderr.isatty() if use_colors is None else use_colors

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = self.COLORS.get(record.levelno) if self.use_colors else None
        return f"{color}{message}{self.RESET}" if color else message


class JsonFormatter(_TZFormatter):
    """每条记录一行 JSON，便于日志采集。"""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": self.formatTime(record),
            "logger": record.name,
            "level": record.levelname,
            "msg": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id_ctx.get() or "-"
        return True


def build_logging_config(settings: Settings) -> Dict[str, Any]:
    """根据配置生成 ``dictConfig`` 字典；``LOG_JSON`` 开启时控制台与文件都输出 JSON。"""
    level = settings.log_level.upper()
    handlers = ["default", "file"]
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {"()": f"{_MODULE}.ColorFormatter", "fmt": _FORMAT},
            "plain": {"()": f"{_MODULE}._TZFormatter", "fmt": _FORMAT},
            "json": {"()": f"{_MODULE}.JsonFormatter"},
        },
        "filters": {"request_id": {"()": f"{_MODULE}.RequestIdFilter"}},
        "handlers": {
            "default": {
                "level": level,
                "class": "logging.StreamHandler",
                "formatter": "json" if settings.log_json else "standard",
                "filters": ["request_id"],
            },
            "file": {
                "level": level,
                "class": "logging.handlers.TimedRotatingFileHandler",
                "formatter": "json" if settings.log_json else "plain",
                "filename": str(settings.log_file_path),
                "when": "midnight",
                "backupCount": 14,
                "encoding": "utf-8",
                "delay": True,
                "filters": ["request_id"],
            },
        },
        "loggers": {name: {"handlers": handlers, "level": level, "propagate": False} for name in _CAPTURED_LOGGERS},
        "root": {"handlers": handlers, "level": level},
    }


def setup_logging() -> None:
    settings = get_settings()
    settings.log_directory.mkdir(parents=True, exist_ok=True)
    logging.config.dictConfig(build_logging_config(settings))


logger = logging.getLogger(LOGGER_NAME)


def set_request_id(request_id: Optional[str]) -> None:
    _request_id_ctx.set(request_id)


def get_request_id() -> Optional[str]:
    return _request_id_ctx.get()


@contextmanager
def request_id_scope(prefix: str) -> Iterator[str]:
    """在代码块内使用 ``<prefix>-<8 位随机串>`` 作为请求 ID，退出时恢复原值。"""
    request_id = f"{prefix}-{uuid.uuid4().hex[:8]}"
    token = _request_id_ctx.set(request_id)
    try:
        yield request_id
    finally:
        _request_id_ctx.reset(token)
