"""健康检查路由，供编排器与监控系统探活。"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from app.packages.trove.core.constants import HTTP_STATUS_OK, HTTP_STATUS_SERVICE_UNAVAILABLE
from app.packages.trove.services.health_service import STATUS_HEALTHY, health_service

router = APIRouter(tags=["health"])


@router.get("/health")
def health() -> JSONResponse:
    report = health_service.report()
    status_code = HTTP_STATUS_OK if report["status"] == STATUS_HEALTHY else HTTP_STATUS_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=status_code, content=report)
