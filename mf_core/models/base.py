"""
MarketFlow 数据库基础模型
遵循约束：UTC 时间、Decimal 金额、统一命名规范
"""
import enum
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Type

from sqlalchemy import JSON, BigInteger, DateTime, Enum, Integer, Numeric
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase


# 主键：PostgreSQL 使用 BIGINT，SQLite 需要 INTEGER 才能自增
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")

# JSON 字段：PostgreSQL 使用 JSONB
JSONType = JSON().with_variant(JSONB(), "postgresql")

# 金额字段
Money = Numeric(18, 2)


def enum_column(enum_cls: Type[enum.Enum]) -> Enum:
    """以字符串形式存储的枚举列（存储 value，而非成员名）"""
    return Enum(
        enum_cls,
        native_enum=False,
        length=40,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class Base(DeclarativeBase):
    """数据库模型基类"""

    type_annotation_map = {
        datetime: DateTime(timezone=True),
        Decimal: Money,
        Dict[str, Any]: JSONType,
    }
