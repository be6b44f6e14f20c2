"""健康检查：数据库连通性与存储后端探活。"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.packages.trove.core.cancel import CancelToken
from app.packages.trove.core.config import get_settings
from app.packages.trove.core.exceptions import StorageError
from app.packages.trove.core.logger import logger
from app.packages.trove.db import session as db_session
from app.packages.trove.services.storage_backends import StorageBackend, get_backend
from app.packages.trove.utils.units import format_duration

STATUS_HEALTHY = "healthy"
STATUS_UNHEALTHY = "unhealthy"
_CHECK_TIMEOUT_SECONDS = 2.0

_started_at = time.monotonic()


def _check(status: str, started: float, message: str | None = None) -> Dict[str, Any]:
    result: Dict[str, Any] = {"status": status, "latency": format_duration(time.monotonic() - started)}
    if message:
        result["message"] = message
    return result


class HealthService:
    def __init__(self, backend_provider: Callable[[], StorageBackend] = get_backend) -> None:
        self._backend_provider = backend_provider

    def check_database(self) -> Dict[str, Any]:
        started = time.monotonic()
        try:
            with db_session.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            logger.warning("Database health check failed: %s", exc)
            return _check(STATUS_UNHEALTHY, started, f"database ping failed: {exc.__class__.__name__}")
        return _check(STATUS_HEALTHY, started)

    def check_storage(self) -> Dict[str, Any]:
        started = time.monotonic()
        try:
            self._backend_provider().health(ctx=CancelToken(timeout=_CHECK_TIMEOUT_SECONDS))
        except StorageError as exc:
            logger.warning("Storage health check failed: %s", exc.msg)
            return _check(STATUS_UNHEALTHY, started, f"storage health check failed: {exc.msg}")
        return _check(STATUS_HEALTHY, started)

    def report(self) -> Dict[str, Any]:
        checks = {"database": self.check_database(), "storage": self.check_storage()}
        healthy = all(item["status"] == STATUS_HEALTHY for item in checks.values())
        return {
            "status": STATUS_HEALTHY if healthy else STATUS_UNHEALTHY,
            "version": get_settings().version,
            "uptime": format_duration(time.monotonic() - _started_at),
            "checks": checks,
        }


health_service = HealthService()
