"""SQLAlchemy基类"""
from datetime import datetime, timezone

from sqlalchemy import DateTime
from sqlalchemy.dialects import mssql
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase


def utcnow() -> datetime:
    """naive UTC 时间，两种数据库统一按无时区时间存储"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# SQL Server 的 DATETIME 只精确到约 3ms，改用 DATETIME2
Timestamp = DateTime().with_variant(mssql.DATETIME2(), "mssql")


class Base(AsyncAttrs, DeclarativeBase):
    """所有模型的基类"""
    pass
