"""文件上传、下载、删除与浏览路由。

上传接口直接从请求体流式读取文件分段，不经过 ``UploadFile`` 的整包缓冲；
浏览器表单提交返回 303 跳转，``Accept: application/json`` 的客户端得到 JSON。
"""

from __future__ import annotations

from typing import BinaryIO, Iterator, Optional
from urllib.parse import quote

import anyio.to_thread
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response, StreamingResponse
from sqlalchemy.orm import Session

from app.packages.trove.api.v1.schemas.files import (
    FailedUploadsResponse,
    FileResponse,
    FolderListingResponse,
    MoveBody,
    MutationResponse,
    RenameBody,
    UploadResponse,
    serialize_file,
    serialize_folder,
)
from app.packages.trove.core.cancel import CancelToken
from app.packages.trove.core.config import get_settings
from app.packages.trove.core.constants import (
    HTTP_STATUS_BAD_REQUEST,
    HTTP_STATUS_CREATED,
    HTTP_STATUS_NO_CONTENT,
    HTTP_STATUS_OK,
    HTTP_STATUS_SEE_OTHER,
)
from app.packages.trove.core.dependencies import get_current_user, get_db
from app.packages.trove.core.exceptions import AppException, FileTooLargeError
from app.packages.trove.core.logger import logger
from app.packages.trove.core.responses import create_response
from app.packages.trove.models.user import User
from app.packages.trove.services.file_service import file_service
from app.packages.trove.services.trash_service import trash_service
from app.packages.trove.services.upload_service import UploadRequest, upload_service
from app.packages.trove.utils.multipart_stream import MultipartUploadReader

router = APIRouter(tags=["files"])

_DOWNLOAD_CHUNK_SIZE = 64 * 1024


def wants_json(request: Request) -> bool:
    return "application/json" in request.headers.get("accept", "").lower()


def folder_url(folder: str) -> str:
    return f"{get_settings().api_prefix}/files?folder={quote(folder, safe='/')}"


def _int_header(request: Request, name: str) -> Optional[int]:
    raw = request.headers.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise AppException(f"请求头 {name} 不合法", HTTP_STATUS_BAD_REQUEST) from exc
    if value < 0:
        raise AppException(f"请求头 {name} 不合法", HTTP_STATUS_BAD_REQUEST)
    return value


def content_disposition(filename: str, disposition: str = "attachment") -> str:
    """同时给出 ASCII 回退名与 RFC 5987 编码的 UTF-8 文件名。"""
    fallback = filename.encode("ascii", "ignore").decode("ascii")
    fallback = "".join(ch for ch in fallback if ch >= " " and ch not in '"\\').strip() or "download"
    return f"{disposition}; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


# ------------------------------------------
# 上传
# ------------------------------------------


@router.post("/upload", response_model=UploadResponse, status_code=HTTP_STATUS_CREATED)
async def upload(
    request: Request,
    folder_path: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """单请求流式上传：表单字段 ``folder_path``（默认 ``/``）、可选 ``filename`` 与一个文件分段。"""
    settings = get_settings()
    content_length = _int_header(request, "content-length")
    if content_length is not None and content_length > settings.max_upload_size:
        raise FileTooLargeError(f"文件超出上传大小限制（{settings.max_upload_size} 字节）")
    declared_size = _int_header(request, "x-file-size")

    reader = MultipartUploadReader(request.headers.get("content-type"), request.stream())
    ctx = CancelToken()
    user_id = current_user.id

    def _run():
        reader.prepare()
        folder = reader.fields.get("folder_path") or reader.fields.get("folder") or folder_path or "/"
        upload_request = UploadRequest(
            user_id=user_id,
            stream=reader,
            filename=reader.fields.get("filename") or reader.filename,
            folder_path=folder,
            content_type=reader.content_type,
            declared_size=declared_size,
        )
        return upload_service.upload(db, upload_request, ctx=ctx)

    try:
        result = await anyio.to_thread.run_sync(_run)
    except BaseException:
        ctx.cancel("request aborted")
        raise

    record = result.record
    if not wants_json(request):
        return RedirectResponse(folder_url(record.logical_path), status_code=HTTP_STATUS_SEE_OTHER)
    payload = {"file": serialize_file(record), "deduplicated": result.deduplicated}
    return JSONResponse(status_code=HTTP_STATUS_CREATED, content=create_response("上传成功", payload, HTTP_STATUS_CREATED))


# ------------------------------------------
# 下载 / 删除
# ------------------------------------------


def _iter_blob(stream: BinaryIO) -> Iterator[bytes]:
    try:
        while True:
            chunk = stream.read(_DOWNLOAD_CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    finally:
        stream.close()


@router.get("/download/{file_id}")
def download(file_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    record, stream = file_service.open_download(db, current_user, file_id)
    logger.info("Download started user_id=%s file_id=%s size=%s", current_user.id, record.id, record.file_size)
    headers = {
        "Content-Disposition": content_disposition(record.filename),
        "Content-Length": str(record.file_size),
    }
    return StreamingResponse(
        _iter_blob(stream),
        media_type=record.mime_type or "application/octet-stream",
        headers=headers,
    )


_PREVIEW_CSP = "default-src 'none'; style-src 'unsafe-inline'; media-src 'self'; img-src 'self'; script-src 'none';"


@router.get("/preview/{file_id}")
def preview(file_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    """内联返回文件内容供浏览器预览，禁止脚本执行与类型嗅探。"""
    record, stream = file_service.open_download(db, current_user, file_id)
    headers = {
        "Content-Disposition": content_disposition(record.filename, "inline"),
        "Content-Length": str(record.file_size),
        "X-Content-Type-Options": "nosniff",
        "Content-Security-Policy": _PREVIEW_CSP,
    }
    return StreamingResponse(
        _iter_blob(stream),
        media_type=record.mime_type or "application/octet-stream",
        headers=headers,
    )


@router.post("/delete/{file_id}")
def delete(
    file_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """移入回收站；JSON 客户端得到 204，浏览器跳回所在文件夹。"""
    record = trash_service.soft_delete_file(db, current_user, file_id)
    if wants_json(request):
        return Response(status_code=HTTP_STATUS_NO_CONTENT)
    return RedirectResponse(folder_url(record.original_logical_path or "/"), status_code=HTTP_STATUS_SEE_OTHER)


# ------------------------------------------
# 浏览 / 重命名 / 移动
# ------------------------------------------


@router.get("/files", response_model=FolderListingResponse)
def list_files(
    folder: Optional[str] = Query("/"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    listing = file_service.list_folder(db, current_user, folder)
    data = {
        "current_folder": listing.current_folder,
        "parent_folder": listing.parent_folder,
        "folders": [serialize_folder(item) for item in listing.folders],
        "files": [serialize_file(item) for item in listing.files],
    }
    return create_response("获取成功", data, HTTP_STATUS_OK)


@router.get("/files/failed", response_model=FailedUploadsResponse)
def list_failed_uploads(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    records = file_service.list_failed_uploads(db, current_user)
    return create_response("获取成功", [serialize_file(item) for item in records], HTTP_STATUS_OK)


@router.post("/files/{file_id}/dismiss", response_model=MutationResponse)
def dismiss_failed_upload(file_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    trash_service.dismiss_failed_upload(db, current_user, file_id)
    return create_response("失败的上传已移除", {"id": file_id}, HTTP_STATUS_OK)


@router.get("/files/{file_id}", response_model=FileResponse)
def get_file(file_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    record = file_service.get_owned_file(db, current_user, file_id)
    return create_response("获取成功", serialize_file(record), HTTP_STATUS_OK)


@router.post("/files/{file_id}/rename", response_model=FileResponse)
def rename_file(
    file_id: int,
    payload: RenameBody,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    record = file_service.rename_file(db, current_user, file_id, payload.new_name)
    return create_response("重命名成功", serialize_file(record), HTTP_STATUS_OK)


@router.post("/files/{file_id}/move", response_model=FileResponse)
def move_file(
    file_id: int,
    payload: MoveBody,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    record = file_service.move_file(db, current_user, file_id, payload.destination_folder)
    return create_response("移动成功", serialize_file(record), HTTP_STATUS_OK)
