"""回收站测试：软删除、恢复、彻底删除、引用计数回收与保留期清理。"""

import io
from datetime import timedelta

import pytest

from app.packages.trove.core.exceptions import ConflictError, NotFoundError, QuotaExceededError
from app.packages.trove.core.timezone import utcnow
from app.packages.trove.crud.file_record import file_record_crud
from app.packages.trove.crud.folders import folder_crud
from app.packages.trove.crud.users import user_crud
from app.packages.trove.models.file_record import FileRecord
from app.packages.trove.services.file_service import file_service
from app.packages.trove.services.trash_service import trash_service
from app.packages.trove.services.upload_service import UploadRequest, upload_service


def _upload(db, user, data: bytes, filename: str = "a.txt", folder: str = "/") -> FileRecord:
    req = UploadRequest(user_id=user.id, stream=io.BytesIO(data), filename=filename, folder_path=folder)
    return upload_service.upload(db, req).record


def _used(db, user) -> int:
    return user_crud.current_usage(db, user.id)[0]


def _exists(db, file_id: int) -> bool:
    db.expire_all()
    return file_record_crud.get(db, file_id, include_deleted=True) is not None


def test_retention_sweep_collects_blob_after_last_reference(db_session_fixture, make_user, backend, settings):
    db = db_session_fixture
    user = make_user()
    first = _upload(db, user, b"abc", "one.txt")
    second = _upload(db, user, b"abc", "two.txt")
    key = first.storage_path
    assert second.storage_path == key
    first_id, second_id = first.id, second.id

    trash_service.soft_delete_file(db, user, first_id)
    assert file_record_crud.count_references_to_key(db, key) == 1
    assert file_record_crud.count_references_to_key(db, key, include_deleted=True) == 2

    report = trash_service.run_retention_sweep(now=utcnow() + timedelta(days=settings.deleted_retention_days + 1))

    assert report.files_purged == 1
    assert not _exists(db, first_id)
    assert key in backend.keys()

    trash_service.soft_delete_file(db, user, second_id)
    assert trash_service.purge_file(db, second_id) is True
    assert key not in backend.keys()
    assert _used(db, user) == 0


def test_retention_sweep_keeps_recent_and_honours_overrides(db_session_fixture, make_user, settings):
    db = db_session_fixture
    keeper = make_user("keeper", retention_days=0)
    short = make_user("short", retention_days=1)
    regular = make_user("regular")
    ids = {u.username: _upload(db, u, u.username.encode()).id for u in (keeper, short, regular)}
    for u in (keeper, short, regular):
        trash_service.soft_delete_file(db, u, ids[u.username])

    report = trash_service.run_retention_sweep(now=utcnow() + timedelta(days=2))

    assert report.users == 2
    assert report.files_purged == 1
    assert not _exists(db, ids["short"])
    assert _exists(db, ids["keeper"])
    assert _exists(db, ids["regular"])

    again = trash_service.run_retention_sweep(now=utcnow() + timedelta(days=2))
    assert again.files_purged == 0


def test_soft_delete_hides_file_and_keeps_quota_by_default(db_session_fixture, make_user):
    db = db_session_fixture
    user = make_user()
    record = _upload(db, user, b"12345", folder="/docs")

    trash_service.soft_delete_file(db, user, record.id)

    assert file_service.list_folder(db, user, "/docs").files == []
    assert _used(db, user) == 5
    listing = trash_service.list_deleted(db, user)
    assert [item.id for item in listing.files] == [record.id]
    assert listing.files[0].original_logical_path == "/docs"
    with pytest.raises(NotFoundError):
        trash_service.soft_delete_file(db, user, record.id)


def test_soft_delete_releases_quota_when_configured(db_session_fixture, make_user, settings, monkeypatch):
    monkeypatch.setattr(settings, "deleted_counts_toward_quota", False)
    db = db_session_fixture
    user = make_user(quota=8)
    record = _upload(db, user, b"12345")

    trash_service.soft_delete_file(db, user, record.id)
    assert _used(db, user) == 0

    _upload(db, user, b"abcdef", "other.txt")
    with pytest.raises(QuotaExceededError):
        trash_service.restore_file(db, user, record.id)

    db.expire_all()
    assert file_record_crud.get(db, record.id, include_deleted=True).deleted_at is not None
    assert _used(db, user) == 6


def test_restore_file_recreates_folder_and_avoids_name_clash(db_session_fixture, make_user):
    db = db_session_fixture
    user = make_user()
    original = _upload(db, user, b"old", "report.txt", folder="/docs")
    trash_service.soft_delete_file(db, user, original.id)
    file_service.delete_folder(db, user, "/", "docs")
    _upload(db, user, b"new", "report.txt", folder="/docs")

    restored = trash_service.restore_file(db, user, original.id)

    assert restored.deleted_at is None
    assert restored.logical_path == "/docs"
    assert restored.filename == "report (1).txt"
    assert folder_crud.get_by_path(db, user.id, "/docs") is not None


def test_delete_and_restore_folder_tree(db_session_fixture, make_user):
    db = db_session_fixture
    user = make_user()
    file_service.create_folder(db, user, "/", "docs")
    file_service.create_folder(db, user, "/docs", "sub")
    top = _upload(db, user, b"top", "top.txt", folder="/docs")
    nested = _upload(db, user, b"nested", "nested.txt", folder="/docs/sub")
    outside = _upload(db, user, b"outside", "outside.txt", folder="/")

    assert file_service.delete_folder(db, user, "/", "docs") == 2
    assert file_service.list_folder(db, user, "/").folders == []
    with pytest.raises(NotFoundError):
        file_service.list_folder(db, user, "/docs")

    deleted = {item.folder_path: item for item in trash_service.list_deleted(db, user).folders}
    assert set(deleted) == {"/docs", "/docs/sub"}

    restored = trash_service.restore_folder(db, user, deleted["/docs"].id)

    assert restored.folder_path == "/docs"
    assert restored.id == deleted["/docs"].id
    assert [f.filename for f in file_service.list_folder(db, user, "/docs").files] == ["top.txt"]
    assert [f.filename for f in file_service.list_folder(db, user, "/docs/sub").files] == ["nested.txt"]
    assert trash_service.list_deleted(db, user).folders == []
    db.expire_all()
    assert file_record_crud.get(db, outside.id).deleted_at is None
    assert {top.id, nested.id} <= {f.id for f in file_record_crud.list_in_subtree(db, user.id, "/docs")}


def test_restore_folder_conflicts_with_live_path(db_session_fixture, make_user):
    db = db_session_fixture
    user = make_user()
    file_service.create_folder(db, user, "/", "docs")
    file_service.delete_folder(db, user, "/", "docs")
    file_service.create_folder(db, user, "/", "docs")
    deleted = trash_service.list_deleted(db, user).folders[0]

    with pytest.raises(ConflictError):
        trash_service.restore_folder(db, user, deleted.id)


def test_purge_is_idempotent_and_scoped(db_session_fixture, make_user, backend):
    db = db_session_fixture
    owner, other = make_user("owner"), make_user("other")
    record = _upload(db, owner, b"payload")
    trash_service.soft_delete_file(db, owner, record.id)

    with pytest.raises(NotFoundError):
        trash_service.purge_deleted_file(db, other, record.id)

    trash_service.purge_deleted_file(db, owner, record.id)
    assert backend.file_count() == 0
    assert _used(db, owner) == 0
    assert trash_service.purge_file(db, record.id) is False
    with pytest.raises(NotFoundError):
        trash_service.purge_deleted_file(db, owner, record.id)


def test_purging_live_file_is_rejected(db_session_fixture, make_user):
    db = db_session_fixture
    user = make_user()
    record = _upload(db, user, b"live")
    with pytest.raises(NotFoundError):
        trash_service.purge_deleted_file(db, user, record.id)


def test_empty_trash(db_session_fixture, make_user, backend):
    db = db_session_fixture
    user = make_user()
    keep = _upload(db, user, b"keep", "keep.txt")
    first = _upload(db, user, b"one", "one.txt", folder="/junk")
    second = _upload(db, user, b"two", "two.txt", folder="/junk")
    file_service.delete_folder(db, user, "/", "junk")

    assert trash_service.empty_trash(db, user) == 2

    listing = trash_service.list_deleted(db, user)
    assert listing.files == [] and listing.folders == []
    assert not _exists(db, first.id) and not _exists(db, second.id)
    assert backend.keys() == [keep.storage_path]
    assert _used(db, user) == 4
