"""
Async Database connection using SQLAlchemy 2.0
异步数据库连接管理
"""
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from typing import AsyncGenerator, Callable
from contextlib import asynccontextmanager

from config import settings
from maestro.models.database import Base


def get_async_database_url(url: str) -> str:
    """将同步数据库URL转换为异步URL"""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    elif url.startswith("mysql://"):
        return url.replace("mysql://", "mysql+aiomysql://", 1)
    elif url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


def create_session_factory(url: str, echo: bool = False):
    """
    创建异步引擎与Session工厂

    Returns:
        (AsyncEngine, async_sessionmaker)
    """
    engine = create_async_engine(
        get_async_database_url(url),
        poolclass=NullPool,  # 异步场景推荐
        echo=echo,
    )
    factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return engine, factory


# 创建异步引擎与Session工厂
async_engine, AsyncSessionLocal = create_session_factory(settings.database_url, echo=settings.sql_echo)


def make_db_context(session_factory) -> Callable:
    """
    基于指定Session工厂构造上下文管理器（测试可注入临时数据库）

    退出时提交，异常时回滚
    """
    @asynccontextmanager
    async def db_context() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return db_context


# 获取异步数据库会话（上下文管理器方式）
get_async_db_context = make_db_context(AsyncSessionLocal)


async def init_async_db(engine: AsyncEngine = None):
    """异步初始化数据库表"""
    async with (engine or async_engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_async_db(engine: AsyncEngine = None):
    """关闭异步数据库连接"""
    await (engine or async_engine).dispose()
