"""Trove 业务包：自托管文件存储的上传、去重、下载与回收站。"""

from app.packages.types import AppPackage

from .api.v1 import api_router
from .core.config import get_settings
from .core.exceptions import generic_exception_handler, http_exception_handler
from .core.logger import logger, setup_logging
from .core.responses import create_response
from .db.init_db import init_db
from .services.maintenance import CleanupWorker, run_startup_recovery
from .services.storage_backends import get_backend

package = AppPackage(
    name="trove",
    api_router=api_router,
    get_settings=get_settings,
    setup_logging=setup_logging,
    logger=logger,
    init_db=init_db,
    create_response=create_response,
    http_exception_handler=http_exception_handler,
    generic_exception_handler=generic_exception_handler,
    validate_storage=lambda: get_backend().validate_access(),
    run_startup_recovery=run_startup_recovery,
    create_worker=CleanupWorker,
)

__all__ = ["package", "api_router", "get_settings"]
