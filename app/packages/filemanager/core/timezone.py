"""时区工具方法：支持根据配置动态获取当前时区。"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from zoneinfo import ZoneInfo

from app.packages.filemanager.core.config import get_settings


def get_timezone() -> ZoneInfo:
    """返回配置指定的时区信息。"""
    return get_settings().timezone_info


def now() -> datetime:
    """返回当前 UTC 时间，入库统一使用 UTC。"""
    return datetime.now(timezone.utc)


def to_local(value: Optional[datetime]) -> Optional[datetime]:
    """将 ``datetime`` 转换为配置时区；无时区对象视为 UTC（SQLite 读回时会丢失时区）。"""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(get_timezone())


def format_iso(value: Optional[datetime]) -> Optional[str]:
    """将时间格式化为带毫秒与时区偏移的 ISO-8601 字符串。"""
    localized = to_local(value)
    if localized is None:
        return None
    return localized.isoformat(timespec="milliseconds")
