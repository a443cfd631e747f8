from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase

from tee_jobs.settings import settings


class Base(DeclarativeBase):
    pass


def create_engine(database_uri: Optional[str] = None) -> AsyncEngine:
    uri = database_uri or settings.SQLALCHEMY_DATABASE_URI
    kwargs = {"echo": False}
    if uri.startswith("postgresql"):
        kwargs["pool_pre_ping"] = True
    return create_async_engine(uri, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
