"""测试夹具：为 pytest 提供数据库、存储后端与客户端的共享配置。"""

import itertools
import os
import shutil
import tempfile
from typing import Callable, Generator

_TMP_ROOT = tempfile.mkdtemp(prefix="trove-tests-")
os.environ["ENV"] = "test"
os.environ["STORAGE_BACKEND"] = "memory"
os.environ["DB_TYPE"] = "sqlite"
os.environ["DB_PATH"] = os.path.join(_TMP_ROOT, "bootstrap.db")
os.environ["TEMP_DIR"] = os.path.join(_TMP_ROOT, "spool")
os.environ["LOG_DIR"] = os.path.join(_TMP_ROOT, "log")
os.environ["SESSION_SECRET"] = "trove-test-secret"
os.environ["BCRYPT_COST"] = "4"
os.environ["ADMIN_USERNAME"] = ""
os.environ["ADMIN_PASSWORD"] = ""

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402

from app.main import app  # noqa: E402
from app.packages.trove.core.config import Settings, get_settings  # noqa: E402
from app.packages.trove.core.dependencies import get_db  # noqa: E402
from app.packages.trove.core.security import get_password_hash  # noqa: E402
from app.packages.trove.db import session as db_session  # noqa: E402
from app.packages.trove.db.init_db import init_db  # noqa: E402
from app.packages.trove.models import Base, User  # noqa: E402
from app.packages.trove.services.storage_backends import MemoryBackend, set_backend  # noqa: E402

TEST_DB_PATH = os.path.join(_TMP_ROOT, "test.db")
TEST_DATABASE_URL = f"sqlite:///{TEST_DB_PATH}"
DEFAULT_PASSWORD = "password123"


@pytest.fixture(scope="session", autouse=True)
def setup_test_database() -> Generator[None, None, None]:
    """创建隔离的 SQLite 测试数据库，并在会话结束后清理。"""
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)

    engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
    db_session.enable_sqlite_pragmas(engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    db_session.engine = engine
    db_session.SessionLocal = TestingSessionLocal

    init_db()
    yield

    engine.dispose()
    shutil.rmtree(_TMP_ROOT, ignore_errors=True)


@pytest.fixture(autouse=True)
def backend(setup_test_database, tmp_path, monkeypatch) -> Generator[MemoryBackend, None, None]:
    """每个用例使用全新的内存存储与独立的暂存目录，结束后清空所有表。"""
    memory = MemoryBackend()
    set_backend(memory)
    monkeypatch.setattr(get_settings(), "temp_dir", str(tmp_path / "spool"))
    yield memory
    with db_session.engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    set_backend(None)


@pytest.fixture()
def settings() -> Settings:
    return get_settings()


@pytest.fixture()
def db_session_fixture() -> Generator[Session, None, None]:
    """提供给测试用例使用的数据库会话。"""
    session = db_session.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_user(db_session_fixture) -> Callable[..., User]:
    counter = itertools.count(1)

    def _make(
        username: str | None = None,
        *,
        quota: int = 10 * 1024**3,
        used: int = 0,
        password: str = DEFAULT_PASSWORD,
        retention_days: int | None = None,
    ) -> User:
        name = username or f"user{next(counter)}"
        user = User(
            username=name,
            email=f"{name}@example.com",
            password_hash=get_password_hash(password),
            storage_quota=quota,
            storage_used=used,
            deleted_retention_days=retention_days,
        )
        db_session_fixture.add(user)
        db_session_fixture.commit()
        db_session_fixture.refresh(user)
        return user

    return _make


@pytest.fixture()
def client(db_session_fixture) -> Generator[TestClient, None, None]:
    """构建 FastAPI TestClient，并注入测试专用的数据库依赖。"""
    def override_get_db() -> Generator[Session, None, None]:
        session = db_session.SessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture()
def login(client) -> Callable[..., dict[str, str]]:
    """登录并返回 Bearer 头部；会清掉登录写入的 Cookie，确保认证只依赖返回的头部。"""

    def _login(user: User, password: str = DEFAULT_PASSWORD) -> dict[str, str]:
        response = client.post("/auth/login", json={"username": user.username, "password": password})
        assert response.status_code == 200, response.text
        client.cookies.clear()
        return {"Authorization": f"Bearer {response.json()['data']['access_token']}"}

    return _login
