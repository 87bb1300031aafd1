"""数据库连接配置"""

from datetime import datetime, timezone
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from credit_gateway.core.config import get_settings

settings = get_settings()


class Base(DeclarativeBase):
    """ORM 模型基类"""


engine = create_async_engine(settings.database_url, pool_pre_ping=True)

async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def utc_now() -> datetime:
    """当前 UTC 时间（不带时区信息，与 timestamp without time zone 列一致）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def start_of_utc_day(moment: datetime) -> datetime:
    """当天 UTC 零点"""
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI 依赖项 - 获取数据库会话"""
    async with async_session_maker() as session:
        yield session


async def init_db() -> None:
    """创建所有表"""
    # 导入模型以便注册到 metadata
    import credit_gateway.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """关闭数据库连接池"""
    await engine.dispose()
