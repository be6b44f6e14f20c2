"""进程启动时执行的表结构演进。

1. ``create_all`` 创建缺失的表。
2. 旧版 ``files.file_path`` / ``files.folder_path`` 列改名为 ``storage_path`` / ``logical_path``；
   新旧列并存时先复制数据再删除旧列，随后补齐 ``NOT NULL``。支持事务性 DDL 的引擎在
   同一事务内完成，否则逐条执行并记录日志。
3. 模型中声明但现有表缺失的列会被补上。
4. 缺失的索引会被创建。
"""

from __future__ import annotations

from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.schema import Column, CreateIndex, Table

from app.packages.trove.core.logger import logger
from app.packages.trove.models import Base

# (旧列, 新列, NULL 行的填充值)
LEGACY_FILE_COLUMNS = (
    ("file_path", "storage_path", ""),
    ("folder_path", "logical_path", "/"),
)

_TRANSACTIONAL_DDL = {"postgresql"}


def run_migrations(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)
    migrate_legacy_file_columns(engine)
    add_missing_columns(engine)
    create_missing_indexes(engine)


def _column_names(conn: Connection, table: str) -> set[str]:
    return {col["name"] for col in inspect(conn).get_columns(table)}


def migrate_legacy_file_columns(engine: Engine) -> list[str]:
    """改名或复制旧版 ``files`` 列，返回已处理的旧列名。"""
    if not inspect(engine).has_table("files"):
        return []

    dialect = engine.dialect.name
    transactional = dialect in _TRANSACTIONAL_DDL
    if not transactional:
        logger.info("Engine %s has no transactional DDL; legacy column migration is not atomic", dialect)

    handled: list[str] = []
    with engine.begin() as conn:
        for legacy, current, fill in LEGACY_FILE_COLUMNS:
            columns = _column_names(conn, "files")
            if legacy not in columns:
                continue
            if current not in columns:
                conn.execute(text(f"ALTER TABLE files RENAME COLUMN {legacy} TO {current}"))
                logger.info("Renamed files.%s to files.%s", legacy, current)
            else:
                conn.execute(
                    text(
                        f"UPDATE files SET {current} = {legacy} "
                        f"WHERE ({current} IS NULL OR {current} = '') AND {legacy} IS NOT NULL"
                    )
                )
                _drop_column(conn, "files", legacy)
                logger.info("Copied files.%s into files.%s", legacy, current)
            conn.execute(text(f"UPDATE files SET {current} = :fill WHERE {current} IS NULL"), {"fill": fill})
            _enforce_not_null(conn, "files", current)
            handled.append(legacy)
    return handled


def _drop_column(conn: Connection, table: str, column: str) -> None:
    if conn.dialect.name == "sqlite":
        for index in inspect(conn).get_indexes(table):
            if column in (index.get("column_names") or []):
                conn.execute(text(f'DROP INDEX IF EXISTS "{index["name"]}"'))
    conn.execute(text(f"ALTER TABLE {table} DROP COLUMN {column}"))


def _enforce_not_null(conn: Connection, table: str, column: str) -> None:
    if conn.dialect.name == "postgresql":
        conn.execute(text(f"ALTER TABLE {table} ALTER COLUMN {column} SET NOT NULL"))
        return
    logger.warning(
        "Engine %s cannot add NOT NULL to %s.%s in place; existing NULL values were backfilled",
        conn.dialect.name,
        table,
        column,
    )


def _column_ddl(conn: Connection, column: Column) -> str:
    ddl = f"{column.name} {column.type.compile(dialect=conn.dialect)}"
    default = column.server_default
    if default is None or not hasattr(default, "arg"):
        return ddl
    arg = default.arg
    if isinstance(arg, str):
        rendered = "'" + arg.replace("'", "''") + "'"
    else:
        rendered = str(arg.compile(dialect=conn.dialect, compile_kwargs={"literal_binds": True}))
    ddl += f" DEFAULT {rendered}"
    if not column.nullable:
        ddl += " NOT NULL"
    return ddl


def add_missing_columns(engine: Engine) -> list[str]:
    """为现有表补上模型中新增的列，返回 ``表名.列名`` 列表。"""
    added: list[str] = []
    with engine.begin() as conn:
        for table in Base.metadata.sorted_tables:
            if not inspect(conn).has_table(table.name):
                continue
            existing = _column_names(conn, table.name)
            for column in table.columns:
                if column.name in existing or column.primary_key:
                    continue
                conn.execute(text(f"ALTER TABLE {table.name} ADD COLUMN {_column_ddl(conn, column)}"))
                added.append(f"{table.name}.{column.name}")
                logger.info("Added column %s.%s", table.name, column.name)
    return added


def create_missing_indexes(engine: Engine) -> list[str]:
    created: list[str] = []
    for table in Base.metadata.sorted_tables:
        created.extend(_create_table_indexes(engine, table))
    return created


def _create_table_indexes(engine: Engine, table: Table) -> list[str]:
    existing = {index["name"] for index in inspect(engine).get_indexes(table.name)}
    created: list[str] = []
    for index in table.indexes:
        if index.name in existing:
            continue
        try:
            with engine.begin() as conn:
                conn.execute(CreateIndex(index))
        except DBAPIError:
            # 历史数据违反唯一约束时保留旧库可用，由人工清理后下次启动再建
            logger.error("Failed to create index %s on %s", index.name, table.name, exc_info=True)
            continue
        created.append(index.name)
        logger.info("Created index %s on %s", index.name, table.name)
    return created
