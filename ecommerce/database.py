"""Async SQLAlchemy wiring shared by the product and user services."""
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from ecommerce.config import settings


def build_engine(url: str) -> AsyncEngine:
    options: dict = {"echo": settings.DEBUG}
    if not url.startswith("sqlite"):
        options["pool_pre_ping"] = True
    return create_async_engine(url, **options)


engine = build_engine(settings.DATABASE_URL)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    """Declarative base for all services; each app imports only its own models."""


async def get_db() -> AsyncIterator[AsyncSession]:
    """
    Request-scoped session.  Service functions only flush; the transaction
    commits when the endpoint returns and rolls back when it raises,
    including on ``HTTPException``.
    """
    async with async_session() as session, session.begin():
        yield session


async def create_schema() -> None:
    """Create the missing tables of every model imported so far."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
