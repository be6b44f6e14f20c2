"""启动恢复与后台清理测试。"""

import io
import os
import time
from datetime import timedelta

from sqlalchemy import update

from app.packages.trove.core.constants import (
    UPLOAD_STATUS_COMPLETED,
    UPLOAD_STATUS_FAILED,
    UPLOAD_STATUS_PENDING,
    UPLOAD_STATUS_UPLOADING,
)
from app.packages.trove.core.session import create_session
from app.packages.trove.core.timezone import utcnow
from app.packages.trove.crud.file_record import file_record_crud
from app.packages.trove.crud.sessions import session_crud
from app.packages.trove.models.file_record import FileRecord
from app.packages.trove.models.session import SessionRecord
from app.packages.trove.services.maintenance import (
    STALE_UPLOAD_MESSAGE,
    CleanupWorker,
    purge_failed_uploads,
    reap_stale_uploads,
    run_startup_recovery,
    sweep_spool_dir,
)
from app.packages.trove.services.storage_backends import SaveOptions


def _record(db, user, status, *, key="", size=0, name="f.txt"):
    return file_record_crud.create(
        db,
        {
            "user_id": user.id,
            "storage_path": key,
            "logical_path": "/",
            "filename": name,
            "original_filename": name,
            "file_size": size,
            "digest": "",
            "upload_status": status,
        },
    )


def _age(path, seconds):
    past = time.time() - seconds
    os.utime(path, (past, past))


def test_sweep_spool_dir_removes_only_old_spool_files(tmp_path):
    old = tmp_path / "trove-upload-old"
    fresh = tmp_path / "trove-upload-fresh"
    foreign = tmp_path / "unrelated.txt"
    nested = tmp_path / "trove-upload-dir"
    for path in (old, fresh, foreign):
        path.write_bytes(b"x")
    nested.mkdir()
    _age(old, 3 * 3600)
    _age(foreign, 3 * 3600)
    _age(nested, 3 * 3600)

    removed = sweep_spool_dir(tmp_path, max_age_minutes=60)

    assert removed == 1
    assert not old.exists()
    assert fresh.exists() and foreign.exists() and nested.is_dir()


def test_sweep_spool_dir_tolerates_missing_directory(tmp_path):
    assert sweep_spool_dir(tmp_path / "missing") == 0


def test_stale_uploads_are_failed_then_purged(db_session_fixture, make_user, backend, settings):
    db = db_session_fixture
    user = make_user()
    orphan_key = backend.save(io.BytesIO(b"partial"), SaveOptions("p.bin")).key
    pending = _record(db, user, UPLOAD_STATUS_PENDING, name="p.txt")
    uploading = _record(db, user, UPLOAD_STATUS_UPLOADING, key=orphan_key, size=7, name="u.txt")
    done = _record(db, user, UPLOAD_STATUS_COMPLETED, name="d.txt")
    pending_id, uploading_id, done_id = pending.id, uploading.id, done.id

    assert reap_stale_uploads() == 0

    later = utcnow() + timedelta(minutes=settings.pending_upload_ttl_min + 1)
    assert reap_stale_uploads(now=later) == 2

    db.expire_all()
    for record_id in (pending_id, uploading_id):
        refreshed = file_record_crud.get(db, record_id)
        assert refreshed.upload_status == UPLOAD_STATUS_FAILED
        assert refreshed.error_message == STALE_UPLOAD_MESSAGE
    assert file_record_crud.get(db, done_id).upload_status == UPLOAD_STATUS_COMPLETED

    assert purge_failed_uploads() == 0
    much_later = later + timedelta(hours=settings.failed_upload_retention_hours + 1)
    assert purge_failed_uploads(now=much_later) == 2

    db.expire_all()
    assert file_record_crud.get(db, pending_id) is None
    assert file_record_crud.get(db, uploading_id) is None
    assert file_record_crud.get(db, done_id) is not None
    assert orphan_key not in backend.keys()


def test_reaper_spares_old_uploads_that_are_still_progressing(db_session_fixture, make_user, settings):
    db = db_session_fixture
    user = make_user()
    record_id = _record(db, user, UPLOAD_STATUS_UPLOADING, name="big.iso").id
    long_ago = utcnow() - timedelta(minutes=settings.pending_upload_ttl_min * 3)
    db.execute(update(FileRecord).where(FileRecord.id == record_id).values(create_time=long_ago))
    db.commit()

    file_record_crud.touch(db, record_id)

    assert reap_stale_uploads() == 0
    db.expire_all()
    assert file_record_crud.get(db, record_id).upload_status == UPLOAD_STATUS_UPLOADING

    idle_until = utcnow() + timedelta(minutes=settings.pending_upload_ttl_min + 1)
    assert reap_stale_uploads(now=idle_until) == 1


def test_startup_recovery_sweeps_spool_directory(settings):
    spool = settings.temp_directory
    spool.mkdir(parents=True, exist_ok=True)
    leftover = spool / "trove-upload-crashed"
    leftover.write_bytes(b"half an upload")
    _age(leftover, (settings.temp_sweep_age_min + 5) * 60)

    run_startup_recovery()

    assert not leftover.exists()


def test_cleanup_worker_runs_tasks_and_stops(db_session_fixture, make_user):
    user = make_user()
    create_session(db_session_fixture, user.id, ttl_seconds=-10)
    live = create_session(db_session_fixture, user.id, ttl_seconds=3600)

    worker = CleanupWorker(interval_seconds=3600)
    worker.run_once()

    db_session_fixture.expire_all()
    tokens = [row.token for row in db_session_fixture.query(SessionRecord).all()]
    assert tokens == [live]
    assert session_crud.get_by_token(db_session_fixture, live) is not None

    worker.start()
    worker.stop(timeout=5)
    assert not worker.is_alive()


def test_cleanup_worker_keeps_going_when_a_task_fails(monkeypatch):
    calls = []

    def boom():
        calls.append("reaper")
        raise RuntimeError("database went away")

    monkeypatch.setattr("app.packages.trove.services.maintenance.reap_stale_uploads", boom)
    monkeypatch.setattr(
        "app.packages.trove.services.maintenance.purge_failed_uploads", lambda: calls.append("purge") or 0
    )

    CleanupWorker(interval_seconds=3600).run_once()

    assert calls == ["reaper", "purge"]
