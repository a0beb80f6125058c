"""
基础模型模块

定义所有模型共用的工具函数。
"""
from datetime import datetime, timezone

from sqlmodel import SQLModel


def utc_now() -> datetime:
    """
    获取当前 UTC 时间

    Returns:
        当前 UTC 时区的日期时间对象
    """
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """
    统一为带 UTC 时区的时间

    部分数据库（如 SQLite）读回的时间不带时区信息，按 UTC 处理。
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_millis(ms: object) -> datetime | None:
    """将平台返回的毫秒时间戳（字符串或整数）转换为 UTC 时间，无法解析时返回 None"""
    if ms is None or ms == "":
        return None
    try:
        ms_int = int(str(ms))
    except ValueError:
        return None
    return datetime.fromtimestamp(ms_int / 1000, tz=timezone.utc)


__all__ = ["SQLModel", "utc_now", "as_utc", "from_millis"]
