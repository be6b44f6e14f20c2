"""容量/时长解析与配置加载测试。"""

import pytest
from pydantic import ValidationError

from app.packages.trove.core.config import DEFAULT_SESSION_SECRET, Settings
from app.packages.trove.utils.path_utils import (
    InvalidPathError,
    ancestors,
    join_folder,
    norm_folder_path,
    numbered_name,
    parent_folder,
    sanitize_filename,
    validate_name,
)
from app.packages.trove.utils.units import format_duration, parse_duration, parse_size, split_csv


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("1024", 1024),
        (2048, 2048),
        ("10G", 10 * 1024**3),
        ("10gb", 10 * 1024**3),
        ("500M", 500 * 1024**2),
        ("1.5G", int(1.5 * 1024**3)),
        ("64 KB", 64 * 1024),
        ("2T", 2 * 1024**4),
        ("7B", 7),
    ],
)
def test_parse_size(raw, expected):
    assert parse_size(raw) == expected


@pytest.mark.parametrize("raw", ["", "abc", "10X", "-5M", "G", True, -1])
def test_parse_size_rejects_garbage(raw):
    with pytest.raises(ValueError):
        parse_size(raw)


def test_parse_duration():
    assert parse_duration("168h") == 168 * 3600
    assert parse_duration("1h30m") == 5400
    assert parse_duration("45") == 45
    assert parse_duration("250ms") == pytest.approx(0.25)
    assert parse_duration(12) == 12.0
    for raw in ("", "1d", "h", "5m garbage"):
        with pytest.raises(ValueError):
            parse_duration(raw)


def test_format_duration():
    assert format_duration(3723) == "1h2m3s"
    assert format_duration(75) == "1m15s"
    assert format_duration(4) == "4s"
    assert format_duration(0.0125) == "12.500ms"
    assert format_duration(0.000002) == "2µs"


def test_split_csv():
    assert split_csv(" 10.0.0.0/8, ,192.168.1.1 ") == ["10.0.0.0/8", "192.168.1.1"]
    assert split_csv(None) == []


def test_settings_size_fields_fall_back_on_invalid_values():
    settings = Settings(MAX_UPLOAD_SIZE="lots", DEFAULT_USER_QUOTA="1.5G", UPLOAD_BUFFER_SIZE="64K")
    assert settings.max_upload_size == 500 * 1024**2
    assert settings.default_user_quota == int(1.5 * 1024**3)
    assert settings.upload_buffer_size == 64 * 1024


def test_settings_clamps_retention_and_interval():
    settings = Settings(DELETED_RETENTION_DAYS=-3, DELETED_CLEANUP_INTERVAL_MIN=0)
    assert settings.deleted_retention_days == 0
    assert settings.deleted_cleanup_interval_min == 1


def test_settings_session_duration_falls_back():
    assert Settings(SESSION_DURATION="2h").session_duration_seconds == 7200
    assert Settings(SESSION_DURATION="forever").session_duration_seconds == 168 * 3600


def test_production_requires_real_session_secret():
    with pytest.raises(ValidationError):
        Settings(ENV="production", SESSION_SECRET=DEFAULT_SESSION_SECRET)
    assert Settings(ENV="Production", SESSION_SECRET="s3cret").is_production


def test_sqlite_database_urls():
    assert Settings(DB_TYPE="sqlite", DB_PATH=":memory:").sql_database_url == "sqlite://"
    assert Settings(DB_TYPE="sqlite", DB_PATH="/tmp/trove.db").sql_database_url == "sqlite:////tmp/trove.db"
    with pytest.raises(ValueError):
        Settings(DB_TYPE="oracle").sql_database_url


def test_folder_path_normalisation():
    assert norm_folder_path(None) == "/"
    assert norm_folder_path("docs//2024/./") == "/docs/2024"
    assert norm_folder_path("\\a\\b") == "/a/b"
    with pytest.raises(InvalidPathError):
        norm_folder_path("/docs/../etc")

    assert join_folder("/docs", "reports") == "/docs/reports"
    assert parent_folder("/docs/reports") == "/docs"
    assert parent_folder("/docs") == "/"
    assert ancestors("/a/b/c") == ["/a", "/a/b", "/a/b/c"]
    assert ancestors("/") == []


def test_names():
    assert validate_name("  report.pdf ") == "report.pdf"
    for bad in ("", "..", "a/b", "x" * 256):
        with pytest.raises(InvalidPathError):
            validate_name(bad)

    assert sanitize_filename("C:\\Users\\me\\photo.jpg") == "photo.jpg"
    assert sanitize_filename("../..") == "upload"
    assert numbered_name("report.pdf", 2) == "report (2).pdf"
    assert numbered_name(".bashrc", 1) == ".bashrc (1)"
