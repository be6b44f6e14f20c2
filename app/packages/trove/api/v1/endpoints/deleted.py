"""回收站路由：查看、恢复、彻底删除与清空。"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.packages.trove.api.v1.schemas.files import (
    FileResponse,
    FolderResponse,
    MutationResponse,
    TrashListingResponse,
    serialize_file,
    serialize_folder,
)
from app.packages.trove.core.constants import HTTP_STATUS_OK
from app.packages.trove.core.dependencies import get_current_user, get_db
from app.packages.trove.core.responses import create_response
from app.packages.trove.models.user import User
from app.packages.trove.services.trash_service import trash_service

router = APIRouter(prefix="/deleted", tags=["deleted"])


@router.get("", response_model=TrashListingResponse)
def list_deleted(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    listing = trash_service.list_deleted(db, current_user)
    data = {
        "folders": [serialize_folder(item) for item in listing.folders],
        "files": [serialize_file(item) for item in listing.files],
    }
    return create_response("获取成功", data, HTTP_STATUS_OK)


@router.post("/files/{file_id}/restore", response_model=FileResponse)
def restore_file(file_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    record = trash_service.restore_file(db, current_user, file_id)
    return create_response("文件已恢复", serialize_file(record), HTTP_STATUS_OK)


@router.post("/files/{file_id}/purge", response_model=MutationResponse)
def purge_file(file_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    trash_service.purge_deleted_file(db, current_user, file_id)
    return create_response("文件已彻底删除", {"id": file_id}, HTTP_STATUS_OK)


@router.post("/folders/{folder_id}/restore", response_model=FolderResponse)
def restore_folder(folder_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    folder = trash_service.restore_folder(db, current_user, folder_id)
    return create_response("文件夹已恢复", serialize_folder(folder), HTTP_STATUS_OK)


@router.post("/empty", response_model=MutationResponse)
def empty_trash(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    purged = trash_service.empty_trash(db, current_user)
    return create_response("回收站已清空", {"files": purged}, HTTP_STATUS_OK)
