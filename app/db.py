# db.py
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base

Base = declarative_base()


def async_database_url(url: str) -> str:
    # แปลงให้เป็น async driver สำหรับ SQLAlchemy
    # จาก postgresql:// (หรือ postgres://) → postgresql+asyncpg://
    for prefix in ("postgresql://", "postgres://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    return url


def create_engine_from_settings(settings) -> AsyncEngine:
    if not settings.database_url:
        raise ValueError("DATABASE_URL is not set")
    return create_async_engine(async_database_url(settings.database_url), echo=False, future=True)


def create_session_factory(engine: AsyncEngine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine):
    from app import models  # noqa: F401  ลงทะเบียนตารางกับ Base.metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
