"""容量与时长字符串解析。

容量支持 ``B``、``K/KB``、``M/MB``、``G/GB``、``T/TB`` 后缀（不区分大小写，按 1024 进位），
数值部分允许小数，例如 ``1.5G``；纯数字按字节处理。
时长支持 ``168h``、``1h30m``、``45s``、``250ms`` 这类组合写法，纯数字按秒处理。
"""

from __future__ import annotations

import re

_SIZE_UNITS = (
    ("TB", 1024**4),
    ("T", 1024**4),
    ("GB", 1024**3),
    ("G", 1024**3),
    ("MB", 1024**2),
    ("M", 1024**2),
    ("KB", 1024),
    ("K", 1024),
    ("B", 1),
)

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_size(raw: str | int) -> int:
    """把容量字符串解析为字节数，格式非法时抛出 ``ValueError``。"""
    if isinstance(raw, bool):
        raise ValueError(f"invalid size value: {raw!r}")
    if isinstance(raw, int):
        if raw < 0:
            raise ValueError(f"size must be non-negative: {raw}")
        return raw

    text = str(raw).strip().upper()
    if not text:
        raise ValueError("empty size value")
    if text.isdigit():
        return int(text)

    for suffix, multiplier in _SIZE_UNITS:
        if text.endswith(suffix):
            number = text[: -len(suffix)].strip()
            break
    else:
        raise ValueError(f"invalid size format: {raw} (use B, K/KB, M/MB, G/GB, T/TB)")

    try:
        value = float(number)
    except ValueError as exc:
        raise ValueError(f"invalid size value: {raw}") from exc
    if value < 0:
        raise ValueError(f"size must be non-negative: {raw}")
    return int(value * multiplier)


def parse_duration(raw: str | int | float) -> float:
    """把时长字符串解析为秒数。"""
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return float(raw)

    text = str(raw).strip()
    if not text:
        raise ValueError("empty duration value")
    try:
        return float(text)
    except ValueError:
        pass

    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]

    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            raise ValueError(f"invalid duration: {raw}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position == 0 or position != len(text):
        raise ValueError(f"invalid duration: {raw}")
    return sign * total


def split_csv(raw: str | None) -> list[str]:
    """逗号分隔字符串转列表，忽略空白项。"""
    return [item.strip() for item in (raw or "").split(",") if item.strip()]


def format_duration(seconds: float) -> str:
    """``3723.0`` -> ``1h2m3s``；不足一秒时输出 ``ms``/``µs``。"""
    if seconds < 0:
        return "-" + format_duration(-seconds)
    if seconds < 1e-3:
        return f"{seconds * 1e6:.3f}µs".replace(".000µs", "µs")
    if seconds < 1:
        return f"{seconds * 1e3:.3f}ms"
    whole = int(round(seconds))
    hours, rest = divmod(whole, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"
