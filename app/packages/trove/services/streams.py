"""流式读取适配器：边读边算摘要的 ``HashingReader`` 与限制总字节数的 ``BoundedReader``。

两者都只依赖被包装对象的 ``read(size)``，可以任意嵌套，
典型链路为 ``BoundedReader(客户端流) -> HashingReader -> 暂存文件``。
"""

from __future__ import annotations

import hashlib
import io
from typing import BinaryIO, Optional, Protocol

from app.packages.trove.core.cancel import CancelToken, check
from app.packages.trove.core.constants import DEFAULT_COPY_BUFFER_SIZE
from app.packages.trove.core.exceptions import FileTooLargeError


class ByteSource(Protocol):
    def read(self, size: int = -1) -> bytes: ...


class HashingReader:
    """读取经过的每个字节都会计入 SHA-256 与字节计数，返回的数据保持原样。

    若底层对象可寻址，``seek(0)`` 会把底层流退回起点并同时重置摘要与计数，
    对象存储 SDK 重试 PUT 时依赖这一行为；其它任何寻址都会抛出
    ``io.UnsupportedOperation``。
    """

    def __init__(self, source: ByteSource, size_hint: Optional[int] = None) -> None:
        self._source = source
        self._size_hint = size_hint
        self._hasher = hashlib.sha256()
        self._count = 0
        self._origin = 0
        if self.seekable():
            self._origin = source.tell()  # type: ignore[attr-defined]

    # 基本读取
    def read(self, size: int = -1) -> bytes:
        data = self._source.read(size)
        if data:
            self._hasher.update(data)
            self._count += len(data)
        return data

    def readable(self) -> bool:
        return True

    @property
    def bytes_read(self) -> int:
        return self._count

    @property
    def hexdigest(self) -> str:
        """当前摘要快照，不影响后续继续读取。"""
        return self._hasher.copy().hexdigest()

    # 寻址
    def seekable(self) -> bool:
        is_seekable = getattr(self._source, "seekable", None)
        if is_seekable is None:
            return False
        try:
            return bool(is_seekable())
        except ValueError:
            return False

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        if offset != 0 or whence != io.SEEK_SET:
            raise io.UnsupportedOperation("HashingReader only supports seek(0)")
        if not self.seekable():
            raise io.UnsupportedOperation("underlying stream is not seekable")
        self._source.seek(self._origin)  # type: ignore[attr-defined]
        self._hasher = hashlib.sha256()
        self._count = 0
        return 0

    def tell(self) -> int:
        return self._count

    def __len__(self) -> int:
        if self._size_hint is None:
            raise TypeError("HashingReader has no known length")
        return self._size_hint

    def __bool__(self) -> bool:
        return True

    def close(self) -> None:
        close = getattr(self._source, "close", None)
        if close is not None:
            close()


class BoundedReader:
    """字节预算读取器：累计超过 ``limit`` 时抛出 ``FileTooLargeError``。

    每次读取都会被截断到剩余预算；预算耗尽后再读会向底层试探 1 个字节，
    若仍有数据即判定超限，此后的任何读取都继续抛出同一异常。
    自然 EOF 之后的读取总是返回 ``b""``。
    """

    def __init__(self, source: ByteSource, limit: int) -> None:
        if limit < 0:
            raise ValueError("limit must be non-negative")
        self._source = source
        self._limit = limit
        self._remaining = limit
        self._exceeded = False
        self._eof = False

    def read(self, size: int = -1) -> bytes:
        if self._exceeded:
            raise self._error()
        if self._eof:
            return b""
        if self._remaining <= 0:
            if self._source.read(1):
                self._exceeded = True
                raise self._error()
            self._eof = True
            return b""

        want = self._remaining if size is None or size < 0 else min(size, self._remaining)
        if want == 0:
            return b""
        data = self._source.read(want)
        if not data:
            self._eof = True
            return b""
        self._remaining -= len(data)
        return data

    def readable(self) -> bool:
        return True

    @property
    def exceeded(self) -> bool:
        return self._exceeded

    @property
    def consumed(self) -> int:
        return self._limit - self._remaining

    def _error(self) -> FileTooLargeError:
        return FileTooLargeError(f"文件超出上传大小限制（{self._limit} 字节）")


class CancellableReader:
    """每次读取前检查取消句柄，寻址相关方法透传给底层对象。"""

    def __init__(self, source: ByteSource, ctx: Optional[CancelToken]) -> None:
        self._source = source
        self._ctx = ctx

    def read(self, size: int = -1) -> bytes:
        check(self._ctx)
        return self._source.read(size)

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        is_seekable = getattr(self._source, "seekable", None)
        return bool(is_seekable()) if is_seekable is not None else False

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        return self._source.seek(offset, whence)  # type: ignore[attr-defined]

    def tell(self) -> int:
        return self._source.tell()  # type: ignore[attr-defined]


def copy_stream(
    source: ByteSource,
    target: BinaryIO,
    *,
    buffer_size: int = DEFAULT_COPY_BUFFER_SIZE,
    ctx: Optional[CancelToken] = None,
) -> int:
    """按固定缓冲区把 ``source`` 拷贝到 ``target``，每块之间检查取消句柄。"""
    total = 0
    while True:
        check(ctx)
        chunk = source.read(buffer_size)
        if not chunk:
            return total
        target.write(chunk)
        total += len(chunk)


def remaining_length(source: ByteSource) -> Optional[int]:
    """可寻址对象从当前位置到末尾的字节数；无法寻址时返回 ``None``，读取位置保持不变。"""
    seekable = getattr(source, "seekable", None)
    try:
        if seekable is None or not seekable():
            return None
        position = source.tell()  # type: ignore[attr-defined]
        end = source.seek(0, io.SEEK_END)  # type: ignore[attr-defined]
        source.seek(position)  # type: ignore[attr-defined]
    except (OSError, ValueError):
        return None
    return max(end - position, 0)
