"""API v1 汇总路由：统一挂载所有子路由。"""

from fastapi import APIRouter

from app.packages.trove.api.v1.endpoints import auth, deleted, files, folders, health

api_router = APIRouter()
api_router.include_router(auth.router)
api_router.include_router(files.router)
api_router.include_router(folders.router)
api_router.include_router(deleted.router)
api_router.include_router(health.router)
