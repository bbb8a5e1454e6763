"""
日期时间工具函数
统一处理时区，所有时间均为 UTC-aware
"""
from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    """返回当前 UTC 时间（timezone-aware）"""
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    naive datetime 视为 UTC（SQLite 读回的时间不带时区）
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    解析外部系统返回的时间

    支持 ISO 8601 字符串（含 Z 后缀）、"YYYY-MM-DD HH:MM:SS" 以及 datetime 对象，
    解析失败返回 None
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str):
        return None

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        pass

    for fmt in ("%Y-%m-%d %H:%M:%S", "%d-%m-%Y %H:%M:%S", "%Y-%m-%d", "%d-%m-%Y"):
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None
