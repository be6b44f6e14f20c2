"""流式读取适配器的单元测试。"""

import hashlib
import io

import pytest

from app.packages.trove.core.cancel import CancelToken
from app.packages.trove.core.exceptions import FileTooLargeError, OperationCancelled
from app.packages.trove.services.streams import BoundedReader, CancellableReader, HashingReader, copy_stream


class CountingSource:
    """记录被读取了多少字节的数据源。"""

    def __init__(self, data: bytes) -> None:
        self._buffer = io.BytesIO(data)
        self.consumed = 0

    def read(self, size: int = -1) -> bytes:
        chunk = self._buffer.read(size)
        self.consumed += len(chunk)
        return chunk


def _drain(reader, chunk: int = 7) -> bytes:
    out = bytearray()
    while True:
        data = reader.read(chunk)
        if not data:
            return bytes(out)
        out += data


def test_hashing_reader_passes_bytes_through_and_digests():
    payload = b"the quick brown fox" * 100
    reader = HashingReader(CountingSource(payload))

    assert _drain(reader) == payload
    assert reader.bytes_read == len(payload)
    assert reader.hexdigest == hashlib.sha256(payload).hexdigest()


def test_hashing_reader_digest_snapshot_does_not_finalize():
    reader = HashingReader(io.BytesIO(b"abcdef"))
    reader.read(3)
    assert reader.hexdigest == hashlib.sha256(b"abc").hexdigest()
    reader.read()
    assert reader.hexdigest == hashlib.sha256(b"abcdef").hexdigest()


def test_hashing_reader_seek_zero_resets_state():
    payload = b"retry me please"
    reader = HashingReader(io.BytesIO(payload), size_hint=len(payload))

    reader.read(5)
    assert reader.seek(0) == 0
    assert reader.bytes_read == 0
    assert reader.read() == payload
    assert reader.hexdigest == hashlib.sha256(payload).hexdigest()
    assert len(reader) == len(payload)


def test_hashing_reader_rejects_other_seeks():
    reader = HashingReader(io.BytesIO(b"data"))
    with pytest.raises(io.UnsupportedOperation):
        reader.seek(2)
    with pytest.raises(io.UnsupportedOperation):
        reader.seek(0, io.SEEK_END)


def test_hashing_reader_seek_requires_seekable_source():
    reader = HashingReader(CountingSource(b"data"))
    assert reader.seekable() is False
    with pytest.raises(io.UnsupportedOperation):
        reader.seek(0)


def test_empty_stream_digest():
    reader = HashingReader(io.BytesIO(b""))
    assert reader.read() == b""
    assert reader.hexdigest == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def test_bounded_reader_allows_exact_limit():
    reader = BoundedReader(io.BytesIO(b"x" * 10), 10)
    assert _drain(reader, 3) == b"x" * 10
    assert reader.exceeded is False
    assert reader.read(5) == b""
    assert reader.read(5) == b""


def test_bounded_reader_detects_overflow_with_single_byte_lookahead():
    source = CountingSource(b"y" * 2048)
    reader = BoundedReader(source, 1024)

    with pytest.raises(FileTooLargeError):
        _drain(reader, 8 * 1024 * 1024)

    assert reader.exceeded is True
    assert source.consumed == 1025
    with pytest.raises(FileTooLargeError):
        reader.read(1)


def test_bounded_reader_clamps_reads_to_budget():
    reader = BoundedReader(io.BytesIO(b"z" * 100), 40)
    assert len(reader.read(1000)) == 40
    assert reader.consumed == 40


def test_bounded_reader_rejects_negative_limit():
    with pytest.raises(ValueError):
        BoundedReader(io.BytesIO(b""), -1)


def test_copy_stream_honours_cancellation():
    token = CancelToken()
    token.cancel("client gone")
    with pytest.raises(OperationCancelled):
        copy_stream(io.BytesIO(b"abc"), io.BytesIO(), ctx=token)


def test_cancellable_reader_checks_deadline():
    token = CancelToken(timeout=0)
    reader = CancellableReader(io.BytesIO(b"abc"), token)
    with pytest.raises(OperationCancelled):
        reader.read(1)


def test_copy_stream_counts_bytes():
    target = io.BytesIO()
    assert copy_stream(io.BytesIO(b"0123456789"), target, buffer_size=3) == 10
    assert target.getvalue() == b"0123456789"
