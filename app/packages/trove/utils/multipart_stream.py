"""把 ASGI 请求体桥接成同步可读的上传流。

``python-multipart`` 的 ``MultipartParser`` 是推模式解析器；这里在工作线程中
按需从事件循环拉取下一块请求体喂给解析器，文件分段的数据被暂存在一个
不超过单块大小的缓冲区中，由 ``read(size)`` 取走。整个请求体不会落入内存。

文件分段之前的普通字段会在 ``prepare()`` 中解析完毕，文件之后的字段被忽略。
"""

from __future__ import annotations

from typing import AsyncIterator, Dict, Optional

import anyio.from_thread
from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header
from starlette.requests import ClientDisconnect

from app.packages.trove.core.constants import HTTP_STATUS_BAD_REQUEST
from app.packages.trove.core.exceptions import AppException, OperationCancelled

_MAX_FIELD_SIZE = 64 * 1024
_CHARSET = "utf-8"


class MultipartFormError(AppException):
    default_msg = "上传请求格式不正确"
    default_code = HTTP_STATUS_BAD_REQUEST


class MultipartUploadReader:
    """从 ``multipart/form-data`` 请求体中读取唯一的文件分段。

    只能在 ``anyio.to_thread.run_sync`` 启动的工作线程中使用。
    """

    def __init__(self, content_type: Optional[str], body: AsyncIterator[bytes]) -> None:
        media_type, params = parse_options_header(content_type or "")
        boundary = params.get(b"boundary")
        if media_type != b"multipart/form-data" or not boundary:
            raise MultipartFormError("上传请求必须为 multipart/form-data")
        self._body = body
        self._parser = MultipartParser(
            boundary,
            {
                "on_part_begin": self._on_part_begin,
                "on_part_data": self._on_part_data,
                "on_part_end": self._on_part_end,
                "on_header_field": self._on_header_field,
                "on_header_value": self._on_header_value,
                "on_header_end": self._on_header_end,
                "on_headers_finished": self._on_headers_finished,
                "on_end": self._on_end,
            },
        )
        self.fields: Dict[str, str] = {}
        self.filename: Optional[str] = None
        self.content_type: Optional[str] = None

        self._headers: Dict[bytes, bytes] = {}
        self._header_field = bytearray()
        self._header_value = bytearray()
        self._field_name: Optional[str] = None
        self._field_value = bytearray()
        self._part_is_file = False
        self._skip_part = False

        self._buffer = bytearray()
        self._file_started = False
        self._file_done = False
        self._ended = False
        self._body_done = False

    # ------------------------------------------
    # 解析器回调
    # ------------------------------------------

    def _on_part_begin(self) -> None:
        self._headers = {}
        self._field_name = None
        self._field_value = bytearray()
        self._part_is_file = False
        self._skip_part = False

    def _on_header_field(self, data: bytes, start: int, end: int) -> None:
        self._header_field += data[start:end]

    def _on_header_value(self, data: bytes, start: int, end: int) -> None:
        self._header_value += data[start:end]

    def _on_header_end(self) -> None:
        self._headers[bytes(self._header_field).lower()] = bytes(self._header_value)
        self._header_field = bytearray()
        self._header_value = bytearray()

    def _on_headers_finished(self) -> None:
        disposition, options = parse_options_header(self._headers.get(b"content-disposition", b""))
        if disposition != b"form-data" or b"name" not in options:
            raise MultipartFormError("上传请求缺少分段名称")
        self._field_name = options[b"name"].decode(_CHARSET, errors="replace")
        if b"filename" not in options:
            return
        if self._file_started:
            # 只接受第一个文件分段
            self._skip_part = True
            return
        self._part_is_file = True
        self._file_started = True
        self.filename = options[b"filename"].decode(_CHARSET, errors="replace")
        part_type = self._headers.get(b"content-type")
        self.content_type = part_type.decode("latin-1") if part_type else None

    def _on_part_data(self, data: bytes, start: int, end: int) -> None:
        if self._skip_part:
            return
        if self._part_is_file:
            self._buffer += data[start:end]
            return
        self._field_value += data[start:end]
        if len(self._field_value) > _MAX_FIELD_SIZE:
            raise MultipartFormError("表单字段过长")

    def _on_part_end(self) -> None:
        if self._part_is_file:
            self._file_done = True
        elif not self._skip_part and self._field_name is not None and not self._file_started:
            self.fields[self._field_name] = self._field_value.decode(_CHARSET, errors="replace")

    def _on_end(self) -> None:
        self._ended = True

    # ------------------------------------------
    # 拉取请求体
    # ------------------------------------------

    async def _next_chunk(self) -> Optional[bytes]:
        try:
            return await self._body.__anext__()
        except StopAsyncIteration:
            return None

    def _feed_once(self) -> None:
        try:
            chunk = anyio.from_thread.run(self._next_chunk)
        except ClientDisconnect as exc:
            raise OperationCancelled("客户端已断开连接") from exc
        if chunk is None:
            self._body_done = True
            if not self._ended:
                raise MultipartFormError("上传请求体不完整")
            return
        if not chunk:
            return
        try:
            self._parser.write(chunk)
        except MultipartParseError as exc:
            raise MultipartFormError() from exc

    def prepare(self) -> "MultipartUploadReader":
        """解析到文件分段的数据开始处；没有文件分段时抛出 400。"""
        while not self._file_started and not self._ended:
            self._feed_once()
        if not self._file_started:
            raise MultipartFormError("请求中没有上传文件")
        return self

    # ------------------------------------------
    # ByteSource
    # ------------------------------------------

    def read(self, size: int = -1) -> bytes:
        if not self._file_started:
            self.prepare()
        while not self._buffer and not self._file_done:
            if self._body_done:
                raise MultipartFormError("上传请求体不完整")
            self._feed_once()
        if size is None or size < 0 or size >= len(self._buffer):
            data = bytes(self._buffer)
            self._buffer.clear()
            return data
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    def readable(self) -> bool:
        return True
