"""文件夹创建、删除、重命名与移动路由。"""

from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.packages.trove.api.v1.schemas.files import (
    FolderCreateBody,
    FolderDeleteBody,
    FolderMoveBody,
    FolderRenameBody,
    FolderResponse,
    MutationResponse,
    serialize_folder,
)
from app.packages.trove.core.constants import HTTP_STATUS_CREATED, HTTP_STATUS_OK
from app.packages.trove.core.dependencies import get_current_user, get_db
from app.packages.trove.core.responses import create_response
from app.packages.trove.models.user import User
from app.packages.trove.services.file_service import file_service

router = APIRouter(prefix="/folders", tags=["folders"])


@router.post("/create", response_model=FolderResponse, status_code=HTTP_STATUS_CREATED)
def create_folder(
    payload: FolderCreateBody,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    folder = file_service.create_folder(db, current_user, payload.current_folder, payload.folder_name)
    return JSONResponse(
        status_code=HTTP_STATUS_CREATED,
        content=create_response("文件夹创建成功", serialize_folder(folder), HTTP_STATUS_CREATED),
    )


@router.post("/delete/{name}", response_model=MutationResponse)
def delete_folder(
    name: str,
    payload: Optional[FolderDeleteBody] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """把文件夹及其内容移入回收站。"""
    current_folder = payload.current_folder if payload is not None else "/"
    files = file_service.delete_folder(db, current_user, current_folder, name)
    return create_response("文件夹已移入回收站", {"files": files}, HTTP_STATUS_OK)


@router.post("/rename", response_model=FolderResponse)
def rename_folder(
    payload: FolderRenameBody,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """重命名文件夹；子文件夹与其中文件的路径随之改写。"""
    folder = file_service.rename_folder(db, current_user, payload.current_folder, payload.old_name, payload.new_name)
    return create_response("重命名成功", serialize_folder(folder), HTTP_STATUS_OK)


@router.post("/move", response_model=FolderResponse)
def move_folder(
    payload: FolderMoveBody,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    folder = file_service.move_folder(
        db, current_user, payload.current_folder, payload.folder_name, payload.destination_folder
    )
    return create_response("移动成功", serialize_folder(folder), HTTP_STATUS_OK)
