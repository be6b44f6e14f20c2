"""上传流水线测试：摘要、去重、配额与大小限制。"""

import hashlib
import io
import threading

import pytest

from app.packages.trove.core.cancel import CancelToken
from app.packages.trove.core.constants import UPLOAD_STATUS_COMPLETED
from app.packages.trove.core.exceptions import (
    BackendUnavailableError,
    FileTooLargeError,
    OperationCancelled,
    QuotaExceededError,
    StorageUnavailable,
)
from app.packages.trove.crud.file_record import file_record_crud
from app.packages.trove.crud.folders import folder_crud
from app.packages.trove.crud.users import user_crud
from app.packages.trove.models.file_record import FileRecord
from app.packages.trove.services.storage_backends import MemoryBackend, set_backend
from app.packages.trove.db import session as db_session
from app.packages.trove.services.upload_service import (
    KeepAliveReader,
    UploadRequest,
    guess_mime_type,
    upload_service,
)

ABC_SHA256 = "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


class CountingSource:
    def __init__(self, data: bytes) -> None:
        self._buffer = io.BytesIO(data)
        self.consumed = 0

    def read(self, size: int = -1) -> bytes:
        chunk = self._buffer.read(size)
        self.consumed += len(chunk)
        return chunk


def _upload(db, user, data: bytes, filename: str = "abc.txt", **kwargs):
    req = UploadRequest(user_id=user.id, stream=io.BytesIO(data), filename=filename, **kwargs)
    return upload_service.upload(db, req)


def _used(db, user) -> int:
    return user_crud.current_usage(db, user.id)[0]


def _records(db, user):
    db.expire_all()
    return db.query(FileRecord).filter(FileRecord.user_id == user.id).order_by(FileRecord.id).all()


@pytest.fixture()
def spool_dir(settings):
    return settings.temp_directory


def test_upload_computes_digest_and_charges_quota(db_session_fixture, make_user, backend, spool_dir):
    user = make_user()

    result = _upload(db_session_fixture, user, b"abc", content_type="text/plain")

    record = result.record
    assert result.deduplicated is False
    assert record.digest == ABC_SHA256
    assert record.file_size == 3
    assert record.upload_status == UPLOAD_STATUS_COMPLETED
    assert record.counts_toward_quota is True
    assert record.mime_type == "text/plain"
    assert backend.open(record.storage_path).read() == b"abc"
    assert _used(db_session_fixture, user) == 3
    assert list(spool_dir.iterdir()) == []


def test_duplicate_upload_shares_storage_key(db_session_fixture, make_user, backend):
    user = make_user()

    first = _upload(db_session_fixture, user, b"abc")
    second = _upload(db_session_fixture, user, b"abc")

    assert second.deduplicated is True
    assert second.record.storage_path == first.record.storage_path
    assert second.record.filename == "abc (1).txt"
    assert backend.file_count() == 1
    assert _used(db_session_fixture, user) == 6
    assert file_record_crud.count_references_to_key(db_session_fixture, first.record.storage_path) == 2


def test_dedup_is_scoped_per_user_by_default(db_session_fixture, make_user, backend, settings, monkeypatch):
    alice, bob = make_user("alice"), make_user("bob")

    _upload(db_session_fixture, alice, b"shared bytes")
    assert _upload(db_session_fixture, bob, b"shared bytes").deduplicated is False
    assert backend.file_count() == 2

    monkeypatch.setattr(settings, "dedup_cross_user", True)
    carol = make_user("carol")
    assert _upload(db_session_fixture, carol, b"shared bytes").deduplicated is True
    assert backend.file_count() == 2


def test_dedup_can_be_disabled(db_session_fixture, make_user, backend, settings, monkeypatch):
    monkeypatch.setattr(settings, "enable_file_deduplication", False)
    user = make_user()

    _upload(db_session_fixture, user, b"abc")
    second = _upload(db_session_fixture, user, b"abc")

    assert second.deduplicated is False
    assert backend.file_count() == 2


def test_dedup_hits_can_be_free(db_session_fixture, make_user, settings, monkeypatch):
    monkeypatch.setattr(settings, "dedup_hits_count_toward_quota", False)
    user = make_user(quota=5)

    _upload(db_session_fixture, user, b"abcd")
    hit = _upload(db_session_fixture, user, b"abcd")

    assert hit.deduplicated is True
    assert hit.record.counts_toward_quota is False
    assert _used(db_session_fixture, user) == 4


def test_quota_exceeded_after_streaming_leaves_no_trace(db_session_fixture, make_user, backend, spool_dir):
    user = make_user(quota=5, used=3)

    with pytest.raises(QuotaExceededError):
        _upload(db_session_fixture, user, b"wxyz")

    assert _records(db_session_fixture, user) == []
    assert _used(db_session_fixture, user) == 3
    assert backend.file_count() == 0
    assert list(spool_dir.iterdir()) == []


def test_declared_size_is_checked_before_streaming(db_session_fixture, make_user, settings, monkeypatch):
    monkeypatch.setattr(settings, "max_upload_size", 1024)
    user = make_user(quota=100)
    source = CountingSource(b"q" * 10)

    with pytest.raises(FileTooLargeError):
        upload_service.upload(
            db_session_fixture, UploadRequest(user_id=user.id, stream=source, filename="a", declared_size=4096)
        )
    assert source.consumed == 0

    with pytest.raises(QuotaExceededError):
        upload_service.upload(
            db_session_fixture, UploadRequest(user_id=user.id, stream=source, filename="a", declared_size=500)
        )
    assert source.consumed == 0
    assert _records(db_session_fixture, user) == []


def test_oversized_stream_is_cut_off(db_session_fixture, make_user, backend, settings, monkeypatch, spool_dir):
    monkeypatch.setattr(settings, "max_upload_size", 1024)
    user = make_user()
    source = CountingSource(b"x" * 2048)

    with pytest.raises(FileTooLargeError):
        upload_service.upload(db_session_fixture, UploadRequest(user_id=user.id, stream=source, filename="big.bin"))

    assert source.consumed <= 1025
    assert _records(db_session_fixture, user) == []
    assert _used(db_session_fixture, user) == 0
    assert backend.file_count() == 0
    assert list(spool_dir.iterdir()) == []


def test_upload_exactly_at_limit_succeeds(db_session_fixture, make_user, settings, monkeypatch):
    monkeypatch.setattr(settings, "max_upload_size", 1024)
    user = make_user()

    result = _upload(db_session_fixture, user, b"e" * 1024, filename="edge.bin")
    assert result.record.file_size == 1024


def test_empty_file_upload(db_session_fixture, make_user):
    user = make_user()
    result = _upload(db_session_fixture, user, b"", filename="empty.txt")
    assert result.record.file_size == 0
    assert result.record.digest == hashlib.sha256(b"").hexdigest()


def test_upload_into_nested_folder_creates_ancestors(db_session_fixture, make_user):
    user = make_user()

    result = _upload(db_session_fixture, user, b"nested", filename="n.txt", folder_path="docs/2024/")

    assert result.record.logical_path == "/docs/2024"
    assert folder_crud.get_by_path(db_session_fixture, user.id, "/docs") is not None
    assert folder_crud.get_by_path(db_session_fixture, user.id, "/docs/2024") is not None


def test_backend_failure_maps_to_unavailable(db_session_fixture, make_user, spool_dir):
    class BrokenBackend(MemoryBackend):
        def save(self, stream, opts=None, *, ctx=None):
            raise StorageUnavailable("disk full")

    set_backend(BrokenBackend())
    user = make_user()

    with pytest.raises(BackendUnavailableError):
        _upload(db_session_fixture, user, b"abc")

    assert _records(db_session_fixture, user) == []
    assert _used(db_session_fixture, user) == 0
    assert list(spool_dir.iterdir()) == []


def test_cancelled_upload_cleans_up(db_session_fixture, make_user, backend, spool_dir):
    user = make_user()
    token = CancelToken()
    token.cancel("client disconnected")

    with pytest.raises(OperationCancelled):
        upload_service.upload(
            db_session_fixture,
            UploadRequest(user_id=user.id, stream=io.BytesIO(b"abc"), filename="a.txt"),
            ctx=token,
        )

    assert _records(db_session_fixture, user) == []
    assert backend.file_count() == 0
    assert list(spool_dir.iterdir()) == []


def test_guess_mime_type():
    assert guess_mime_type("photo.png") == "image/png"
    assert guess_mime_type("photo.png", "application/octet-stream") == "image/png"
    assert guess_mime_type("blob", "text/csv") == "text/csv"
    assert guess_mime_type("blob") == "application/octet-stream"


def test_concurrent_uploads_never_exceed_quota(db_session_fixture, make_user, backend, spool_dir):
    user = make_user(quota=10)
    user_id = user.id
    workers = 6
    barrier = threading.Barrier(workers)
    outcomes: list[str] = []
    errors: list[Exception] = []
    lock = threading.Lock()

    def worker(index: int) -> None:
        db = db_session.SessionLocal()
        try:
            barrier.wait()
            req = UploadRequest(user_id=user_id, stream=io.BytesIO(b"%04d" % index), filename=f"f{index}.bin")
            upload_service.upload(db, req)
            outcome = "ok"
        except QuotaExceededError:
            outcome = "quota"
        except Exception as exc:
            with lock:
                errors.append(exc)
            return
        finally:
            db.close()
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    assert sorted(outcomes) == ["ok", "ok", "quota", "quota", "quota", "quota"]
    records = _records(db_session_fixture, user)
    assert [r.upload_status for r in records] == [UPLOAD_STATUS_COMPLETED, UPLOAD_STATUS_COMPLETED]
    assert _used(db_session_fixture, user) == sum(r.file_size for r in records) == 8
    assert sorted(backend.keys()) == sorted(r.storage_path for r in records)
    assert list(spool_dir.iterdir()) == []


def test_keepalive_reader_touches_on_interval():
    touches: list[int] = []
    reader = KeepAliveReader(io.BytesIO(b"abcdef"), lambda: touches.append(1), interval=0)

    chunks = []
    while True:
        chunk = reader.read(2)
        if not chunk:
            break
        chunks.append(chunk)

    assert b"".join(chunks) == b"abcdef"
    assert len(touches) == 4

    idle = KeepAliveReader(io.BytesIO(b"abcdef"), lambda: touches.append(1), interval=3600)
    idle.read()
    assert len(touches) == 4


def test_upload_refreshes_record_while_streaming(db_session_fixture, make_user, monkeypatch):
    user = make_user()
    touched: list[int] = []
    real_touch = file_record_crud.touch

    def spy(db, file_id):
        touched.append(file_id)
        real_touch(db, file_id)

    monkeypatch.setattr(file_record_crud, "touch", spy)
    monkeypatch.setattr("app.packages.trove.services.upload_service.keepalive_interval", lambda settings: 0)

    result = _upload(db_session_fixture, user, b"streamed slowly")

    assert touched and set(touched) == {result.record.id}
    assert result.record.upload_status == UPLOAD_STATUS_COMPLETED
