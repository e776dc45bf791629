from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
from sqlalchemy.orm import DeclarativeBase
from aptitude_client.core.config import settings


def create_store_engine(db_url: str) -> AsyncEngine:
    if db_url.startswith("sqlite://"):
        db_url = db_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return create_async_engine(db_url, echo=False)


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False
    )


# Движок локального хранилища по умолчанию
engine = create_store_engine(settings.STORE_DATABASE_URL)


# Базовый класс для моделей
class Base(DeclarativeBase):
    pass


async def init_db(bind: AsyncEngine = engine) -> None:
    """Создать таблицы хранилища, если их нет"""
    # models импортируются здесь, чтобы таблицы попали в Base.metadata
    from aptitude_client.db import models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
