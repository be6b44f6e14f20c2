"""存储后端抽象与实现：本地沙箱目录、内存与 S3 兼容对象存储。

后端只认识不透明的存储键、字节流、大小与摘要，不感知用户、目录或配额。
所有方法都接受可选的 ``ctx`` 取消句柄；出错时只抛出 ``StorageError`` 体系。
"""

from __future__ import annotations

import errno
import io
import os
import re
import stat as stat_module
import tempfile
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, EndpointConnectionError

from app.packages.trove.core.cancel import CancelToken, check
from app.packages.trove.core.config import Settings, get_settings
from app.packages.trove.core.constants import SPOOL_PREFIX
from app.packages.trove.core.exceptions import (
    StorageDenied,
    StorageError,
    StorageInternal,
    StorageNotFound,
    StorageUnavailable,
)
from app.packages.trove.core.logger import logger
from app.packages.trove.services.streams import (
    ByteSource,
    CancellableReader,
    HashingReader,
    copy_stream,
    remaining_length,
)

_EXTENSION_RE = re.compile(r"^\.[A-Za-z0-9]{1,16}$")
_KEY_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,254}$")
_ACCESS_CHECK_PAYLOAD = b"trove-access-check"


# ------------------------------------------
# 公共数据结构
# ------------------------------------------


@dataclass(frozen=True)
class SaveOptions:
    original_filename: str = ""
    content_type: Optional[str] = None
    size_hint: Optional[int] = None


@dataclass(frozen=True)
class SaveResult:
    key: str
    digest: str
    size: int


@dataclass(frozen=True)
class FileInfo:
    key: str
    size: int
    modified_at: datetime


def key_extension(filename: str) -> str:
    """从原始文件名中提取可安全用于存储键的扩展名（小写），不合法时返回空串。"""
    ext = os.path.splitext(os.path.basename(filename or ""))[1].lower()
    return ext if _EXTENSION_RE.match(ext) else ""


def generate_key(filename: str = "") -> str:
    return f"{uuid.uuid4()}{key_extension(filename)}"


class StorageBackend:
    """存储后端接口。"""

    name = "base"

    def save(self, stream: ByteSource, opts: Optional[SaveOptions] = None, *, ctx: Optional[CancelToken] = None) -> SaveResult:
        raise NotImplementedError

    def open(self, key: str, *, ctx: Optional[CancelToken] = None) -> BinaryIO:
        raise NotImplementedError

    def delete(self, key: str, *, ctx: Optional[CancelToken] = None) -> None:
        raise NotImplementedError

    def stat(self, key: str, *, ctx: Optional[CancelToken] = None) -> FileInfo:
        raise NotImplementedError

    def health(self, *, ctx: Optional[CancelToken] = None) -> None:
        raise NotImplementedError

    def save_file(
        self,
        path: str | os.PathLike,
        opts: Optional[SaveOptions] = None,
        *,
        digest: Optional[str] = None,
        size: Optional[int] = None,
        ctx: Optional[CancelToken] = None,
    ) -> SaveResult:
        """把本地暂存文件交给后端；``digest`` 已知时会与后端观察到的摘要比对。"""
        opts = opts or SaveOptions()
        with open(path, "rb") as fh:
            if opts.size_hint is None:
                opts = replace(opts, size_hint=size if size is not None else os.fstat(fh.fileno()).st_size)
            result = self.save(fh, opts, ctx=ctx)
        if digest is not None and result.digest != digest:
            self._discard(result.key)
            raise StorageInternal("写入存储后摘要不一致", key=result.key)
        return result

    def validate_access(self, *, ctx: Optional[CancelToken] = None) -> None:
        """写入、读回、删除一个临时对象；无论成败都不留下残留。"""
        opts = SaveOptions("access-check.tmp", size_hint=len(_ACCESS_CHECK_PAYLOAD))
        result = self.save(io.BytesIO(_ACCESS_CHECK_PAYLOAD), opts, ctx=ctx)
        try:
            reader = self.open(result.key, ctx=ctx)
            try:
                content = reader.read()
            finally:
                reader.close()
            if content != _ACCESS_CHECK_PAYLOAD:
                raise StorageInternal("存储读回内容与写入不一致", key=result.key)
        finally:
            self.delete(result.key, ctx=ctx)

    def close(self) -> None:
        return None

    def _discard(self, key: str) -> None:
        try:
            self.delete(key)
        except StorageError:
            logger.warning("Failed to discard blob backend=%s key=%s", self.name, key, exc_info=True)


# ------------------------------------------
# 本地文件系统实现
# ------------------------------------------

_O_NOFOLLOW = getattr(os, "O_NOFOLLOW", 0)
_O_BINARY = getattr(os, "O_BINARY", 0)


class DiskBackend(StorageBackend):
    """以配置目录为根的沙箱存储，键即根目录下的单层文件名。

    根目录在构造时解析一次；所有键都必须是不含分隔符的文件名，
    拼接后再次校验落在根目录内，且拒绝符号链接。
    """

    name = "disk"

    def __init__(self, root: str | os.PathLike, *, buffer_size: Optional[int] = None) -> None:
        try:
            Path(root).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageUnavailable(f"无法创建存储根目录: {exc}") from exc
        self.root = Path(root).resolve(strict=True)
        if not self.root.is_dir():
            raise StorageUnavailable("存储根目录不是文件夹")
        self.buffer_size = buffer_size or get_settings().upload_buffer_size

    # 统一的安全路径拼接，防止路径遍历
    def _resolve(self, key: str) -> Path:
        if not key or not _KEY_RE.match(key) or key in {".", ".."} or ".." in key:
            raise StorageDenied("非法存储键", key=key)
        candidate = self.root / key
        if candidate.is_symlink():
            raise StorageDenied("拒绝访问符号链接", key=key)
        try:
            candidate.resolve().relative_to(self.root)
        except ValueError as exc:
            raise StorageDenied("非法路径: 越权访问", key=key) from exc
        return candidate

    @staticmethod
    def _translate(exc: OSError, key: str) -> StorageError:
        if isinstance(exc, FileNotFoundError):
            return StorageNotFound(key=key)
        if isinstance(exc, PermissionError) or exc.errno == errno.ELOOP:
            return StorageDenied(key=key)
        if exc.errno in {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC), errno.EROFS}:
            return StorageUnavailable(f"存储空间不可写: {exc.strerror}", key=key)
        return StorageInternal(f"本地存储错误: {exc.strerror or exc}", key=key)

    def save(self, stream: ByteSource, opts: Optional[SaveOptions] = None, *, ctx: Optional[CancelToken] = None) -> SaveResult:
        opts = opts or SaveOptions()
        check(ctx)
        key = generate_key(opts.original_filename)
        target = self._resolve(key)
        hashing = HashingReader(stream)
        try:
            fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_EXCL | _O_NOFOLLOW | _O_BINARY, 0o640)
        except OSError as exc:
            raise self._translate(exc, key) from exc
        try:
            with os.fdopen(fd, "wb") as fh:
                copy_stream(hashing, fh, buffer_size=self.buffer_size, ctx=ctx)
                fh.flush()
                os.fsync(fh.fileno())
        except BaseException as exc:
            self._remove_partial(target)
            if isinstance(exc, OSError):
                raise self._translate(exc, key) from exc
            raise
        return SaveResult(key=key, digest=hashing.hexdigest, size=hashing.bytes_read)

    def save_file(
        self,
        path: str | os.PathLike,
        opts: Optional[SaveOptions] = None,
        *,
        digest: Optional[str] = None,
        size: Optional[int] = None,
        ctx: Optional[CancelToken] = None,
    ) -> SaveResult:
        """摘要与大小已知时直接把暂存文件重命名进根目录，跨文件系统时回退为拷贝。"""
        if digest is None or size is None:
            return super().save_file(path, opts, digest=digest, size=size, ctx=ctx)
        check(ctx)
        opts = opts or SaveOptions()
        key = generate_key(opts.original_filename)
        target = self._resolve(key)
        try:
            os.replace(path, target)
        except OSError as exc:
            if exc.errno != errno.EXDEV:
                raise self._translate(exc, key) from exc
            return super().save_file(path, opts, digest=digest, size=size, ctx=ctx)
        return SaveResult(key=key, digest=digest, size=size)

    def open(self, key: str, *, ctx: Optional[CancelToken] = None) -> BinaryIO:
        check(ctx)
        target = self._resolve(key)
        try:
            fd = os.open(target, os.O_RDONLY | _O_NOFOLLOW | _O_BINARY)
        except OSError as exc:
            raise self._translate(exc, key) from exc
        return os.fdopen(fd, "rb")

    def delete(self, key: str, *, ctx: Optional[CancelToken] = None) -> None:
        check(ctx)
        target = self._resolve(key)
        try:
            target.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise self._translate(exc, key) from exc

    def stat(self, key: str, *, ctx: Optional[CancelToken] = None) -> FileInfo:
        check(ctx)
        target = self._resolve(key)
        try:
            st = os.stat(target, follow_symlinks=False)
        except OSError as exc:
            raise self._translate(exc, key) from exc
        if not stat_module.S_ISREG(st.st_mode):
            raise StorageDenied("存储键不是普通文件", key=key)
        return FileInfo(key=key, size=st.st_size, modified_at=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc))

    def health(self, *, ctx: Optional[CancelToken] = None) -> None:
        check(ctx)
        if not self.root.is_dir():
            raise StorageUnavailable("存储根目录不存在")
        if not os.access(self.root, os.W_OK):
            raise StorageUnavailable("存储根目录不可写")

    @staticmethod
    def _remove_partial(target: Path) -> None:
        try:
            target.unlink()
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("Failed to remove partial blob path=%s", target, exc_info=True)


# ------------------------------------------
# 内存实现
# ------------------------------------------


class MemoryBackend(StorageBackend):
    """进程内字典存储，用于测试与临时部署，数据不持久化。"""

    name = "memory"

    def __init__(self) -> None:
        self._blobs: dict[str, tuple[bytes, datetime]] = {}
        self._lock = threading.RLock()

    def save(self, stream: ByteSource, opts: Optional[SaveOptions] = None, *, ctx: Optional[CancelToken] = None) -> SaveResult:
        opts = opts or SaveOptions()
        hashing = HashingReader(stream)
        buffer = io.BytesIO()
        copy_stream(hashing, buffer, ctx=ctx)
        key = generate_key(opts.original_filename)
        with self._lock:
            self._blobs[key] = (buffer.getvalue(), datetime.now(timezone.utc))
        return SaveResult(key=key, digest=hashing.hexdigest, size=hashing.bytes_read)

    def open(self, key: str, *, ctx: Optional[CancelToken] = None) -> BinaryIO:
        check(ctx)
        with self._lock:
            entry = self._blobs.get(key)
        if entry is None:
            raise StorageNotFound(key=key)
        return io.BytesIO(entry[0])

    def delete(self, key: str, *, ctx: Optional[CancelToken] = None) -> None:
        check(ctx)
        with self._lock:
            self._blobs.pop(key, None)

    def stat(self, key: str, *, ctx: Optional[CancelToken] = None) -> FileInfo:
        check(ctx)
        with self._lock:
            entry = self._blobs.get(key)
        if entry is None:
            raise StorageNotFound(key=key)
        return FileInfo(key=key, size=len(entry[0]), modified_at=entry[1])

    def health(self, *, ctx: Optional[CancelToken] = None) -> None:
        check(ctx)

    def validate_access(self, *, ctx: Optional[CancelToken] = None) -> None:
        check(ctx)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._blobs)

    def file_count(self) -> int:
        with self._lock:
            return len(self._blobs)

    def clear(self) -> None:
        with self._lock:
            self._blobs.clear()


# ------------------------------------------
# S3 实现（boto3）
# ------------------------------------------

_S3_NOT_FOUND = {"NoSuchKey", "404", "NotFound"}
_S3_DENIED = {"AccessDenied", "403", "InvalidAccessKeyId", "SignatureDoesNotMatch", "AllAccessDisabled"}
_S3_UNAVAILABLE = {"NoSuchBucket", "SlowDown", "ServiceUnavailable", "503", "RequestTimeout"}


class S3Backend(StorageBackend):
    """S3 兼容对象存储。端点、区域与凭证取自运行环境（``AWS_*`` 环境变量或配置文件）。

    上传时把 ``HashingReader`` 直接作为 PUT 请求体，SDK 重试前会 ``seek(0)``，
    摘要与计数随之重置。
    """

    name = "s3"

    def __init__(self, bucket: str, *, use_path_style: bool = False, prefix: str = "", client=None) -> None:
        if not bucket:
            raise StorageUnavailable("S3 存储需要配置 S3_BUCKET")
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        if client is None:
            client = boto3.client(
                "s3",
                config=Config(s3={"addressing_style": "path" if use_path_style else "auto"}),
            )
        self._client = client

    def _object_key(self, key: str) -> str:
        if not key or key.startswith("/") or ".." in key.split("/"):
            raise StorageDenied("非法存储键", key=key)
        return f"{self.prefix}/{key}" if self.prefix else key

    @staticmethod
    def _translate(exc: Exception, key: Optional[str]) -> StorageError:
        if isinstance(exc, ClientError):
            error = exc.response.get("Error", {})
            code = str(error.get("Code", ""))
            message = error.get("Message") or code
            if code in _S3_NOT_FOUND:
                return StorageNotFound(key=key)
            if code in _S3_DENIED:
                return StorageDenied(f"对象存储拒绝访问: {message}", key=key)
            if code in _S3_UNAVAILABLE:
                return StorageUnavailable(f"对象存储不可用: {message}", key=key)
            return StorageInternal(f"对象存储错误: {message}", key=key)
        if isinstance(exc, EndpointConnectionError):
            return StorageUnavailable(f"无法连接对象存储: {exc}", key=key)
        return StorageUnavailable(f"对象存储请求失败: {exc}", key=key)

    @staticmethod
    def _is_not_found(exc: ClientError) -> bool:
        return str(exc.response.get("Error", {}).get("Code", "")) in _S3_NOT_FOUND

    def save(self, stream: ByteSource, opts: Optional[SaveOptions] = None, *, ctx: Optional[CancelToken] = None) -> SaveResult:
        """PUT 必须带 ``Content-Length``：长度未知时先用寻址测量，不可寻址的流先暂存再上传。"""
        opts = opts or SaveOptions()
        check(ctx)
        size = opts.size_hint if opts.size_hint is not None else remaining_length(stream)
        if size is None:
            settings = get_settings()
            settings.temp_directory.mkdir(parents=True, exist_ok=True)
            with tempfile.TemporaryFile(prefix=SPOOL_PREFIX, dir=settings.temp_directory) as spool:
                size = copy_stream(stream, spool, ctx=ctx)
                spool.seek(0)
                return self._put(spool, replace(opts, size_hint=size), ctx)
        return self._put(stream, replace(opts, size_hint=size), ctx)

    def _put(self, stream: ByteSource, opts: SaveOptions, ctx: Optional[CancelToken]) -> SaveResult:
        key = generate_key(opts.original_filename)
        body = HashingReader(CancellableReader(stream, ctx), size_hint=opts.size_hint)
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=self._object_key(key),
                Body=body,
                ContentLength=opts.size_hint,
                ContentType=opts.content_type or "application/octet-stream",
            )
        except (ClientError, BotoCoreError) as exc:
            raise self._translate(exc, key) from exc
        if body.bytes_read != opts.size_hint:
            self._discard(key)
            raise StorageInternal("写入对象存储的字节数与声明长度不一致", key=key)
        return SaveResult(key=key, digest=body.hexdigest, size=body.bytes_read)

    def open(self, key: str, *, ctx: Optional[CancelToken] = None) -> BinaryIO:
        check(ctx)
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=self._object_key(key))
        except (ClientError, BotoCoreError) as exc:
            raise self._translate(exc, key) from exc
        return response["Body"]

    def delete(self, key: str, *, ctx: Optional[CancelToken] = None) -> None:
        check(ctx)
        try:
            self._client.delete_object(Bucket=self.bucket, Key=self._object_key(key))
        except ClientError as exc:
            if self._is_not_found(exc):
                return
            raise self._translate(exc, key) from exc
        except BotoCoreError as exc:
            raise self._translate(exc, key) from exc

    def stat(self, key: str, *, ctx: Optional[CancelToken] = None) -> FileInfo:
        check(ctx)
        try:
            response = self._client.head_object(Bucket=self.bucket, Key=self._object_key(key))
        except (ClientError, BotoCoreError) as exc:
            raise self._translate(exc, key) from exc
        modified = response.get("LastModified") or datetime.now(timezone.utc)
        return FileInfo(key=key, size=int(response.get("ContentLength") or 0), modified_at=modified)

    def health(self, *, ctx: Optional[CancelToken] = None) -> None:
        check(ctx)
        try:
            self._client.list_objects_v2(Bucket=self.bucket, MaxKeys=1)
        except (ClientError, BotoCoreError) as exc:
            raise self._translate(exc, None) from exc


def build_backend(settings: Optional[Settings] = None, *, s3_client=None) -> StorageBackend:
    """根据 ``STORAGE_BACKEND`` 构造后端实例。"""
    settings = settings or get_settings()
    kind = settings.storage_backend
    if kind == "disk":
        return DiskBackend(settings.storage_directory, buffer_size=settings.upload_buffer_size)
    if kind == "memory":
        return MemoryBackend()
    if kind == "s3":
        return S3Backend(settings.s3_bucket, use_path_style=settings.s3_use_path_style, client=s3_client)
    raise ValueError(f"unsupported STORAGE_BACKEND: {kind}")


_backend: Optional[StorageBackend] = None
_backend_lock = threading.Lock()


def get_backend() -> StorageBackend:
    """返回进程内共享的存储后端，首次调用时按配置构造。"""
    global _backend
    if _backend is not None:
        return _backend
    with _backend_lock:
        if _backend is None:
            _backend = build_backend()
            logger.info("Blob backend initialized backend=%s", _backend.name)
    return _backend


def set_backend(backend: Optional[StorageBackend]) -> None:
    """替换共享后端（启动装配与测试使用），传入 ``None`` 会在下次访问时重新构造。"""
    global _backend
    with _backend_lock:
        previous, _backend = _backend, backend
    if previous is not None and previous is not backend:
        previous.close()
