"""Database engine and session factory configuration."""

from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.packages.trove.core.config import Settings, get_settings


def build_engine(settings: Settings) -> Engine:
    """按配置创建引擎；SQLite 会开启外键约束并允许跨线程使用连接。"""
    url = settings.sql_database_url
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True, echo=settings.db_echo)

    kwargs: dict = {"connect_args": {"check_same_thread": False}, "echo": settings.db_echo}
    if url == "sqlite://":
        kwargs["poolclass"] = StaticPool
    else:
        Path(url.removeprefix("sqlite:///")).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(url, **kwargs)
    enable_sqlite_pragmas(engine)
    return engine


def enable_sqlite_pragmas(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):  # pragma: no cover - driver glue
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()


settings = get_settings()

# ``pool_pre_ping`` keeps the connection pool healthy; ``echo`` mirrors SQL logs
# when enabled in settings for easier debugging.
engine = build_engine(settings)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
