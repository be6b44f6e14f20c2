"""文件、文件夹与回收站的请求/响应模型。"""

from typing import Optional

from pydantic import BaseModel, Field

from app.packages.trove.api.v1.schemas.common import ResponseEnvelope
from app.packages.trove.core.timezone import format_datetime
from app.packages.trove.models.file_record import FileRecord
from app.packages.trove.models.folder import Folder


class FileItem(BaseModel):
    id: int
    filename: str
    original_filename: str
    folder: str
    size: int
    mime_type: Optional[str] = None
    digest: str
    status: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    deleted_at: Optional[str] = None
    original_folder: Optional[str] = None


class FolderItem(BaseModel):
    id: int
    path: str
    name: str
    created_at: Optional[str] = None
    deleted_at: Optional[str] = None
    original_path: Optional[str] = None


class FolderListing(BaseModel):
    current_folder: str
    parent_folder: Optional[str] = None
    folders: list[FolderItem]
    files: list[FileItem]


class TrashListing(BaseModel):
    folders: list[FolderItem]
    files: list[FileItem]


class UploadResult(BaseModel):
    file: FileItem
    deduplicated: bool


class RenameBody(BaseModel):
    new_name: str = Field(..., min_length=1, max_length=255)


class MoveBody(BaseModel):
    destination_folder: str = Field(..., min_length=1)


class FolderCreateBody(BaseModel):
    current_folder: str = "/"
    folder_name: str = Field(..., min_length=1, max_length=255)


class FolderDeleteBody(BaseModel):
    current_folder: str = "/"


class FolderRenameBody(BaseModel):
    current_folder: str = "/"
    old_name: str = Field(..., min_length=1, max_length=255)
    new_name: str = Field(..., min_length=1, max_length=255)


class FolderMoveBody(BaseModel):
    current_folder: str = "/"
    folder_name: str = Field(..., min_length=1, max_length=255)
    destination_folder: str = Field(..., min_length=1)


def serialize_file(record: FileRecord) -> dict:
    return FileItem(
        id=record.id,
        filename=record.filename,
        original_filename=record.original_filename,
        folder=record.logical_path,
        size=record.file_size,
        mime_type=record.mime_type,
        digest=record.digest,
        status=record.upload_status,
        created_at=format_datetime(record.create_time),
        updated_at=format_datetime(record.update_time),
        deleted_at=format_datetime(record.deleted_at),
        original_folder=record.original_logical_path,
    ).model_dump()


def serialize_folder(folder: Folder) -> dict:
    return FolderItem(
        id=folder.id,
        path=folder.folder_path,
        name=folder.folder_path.rsplit("/", 1)[-1] or "/",
        created_at=format_datetime(folder.create_time),
        deleted_at=format_datetime(folder.deleted_at),
        original_path=folder.original_folder_path,
    ).model_dump()


FileResponse = ResponseEnvelope[FileItem]
FolderListingResponse = ResponseEnvelope[FolderListing]
TrashListingResponse = ResponseEnvelope[TrashListing]
FailedUploadsResponse = ResponseEnvelope[list[FileItem]]
UploadResponse = ResponseEnvelope[UploadResult]
FolderResponse = ResponseEnvelope[FolderItem]
MutationResponse = ResponseEnvelope[dict]
