"""
Ledger store handle: async engine, session factory and schema bootstrap.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import Request
from sqlalchemy import text
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from services.credit_errors import StoreUnavailable


Base = declarative_base()

_CONNECTIVITY_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError, OSError)


def normalize_database_url(url: str) -> str:
    """Map sync driver URLs onto their asyncio drivers."""
    raw = (url or "").strip()
    if raw.startswith("postgres://"):
        raw = "postgresql://" + raw[len("postgres://"):]
    if raw.startswith("postgresql://"):
        return "postgresql+asyncpg://" + raw[len("postgresql://"):]
    if raw.startswith("sqlite://") and not raw.startswith("sqlite+"):
        return "sqlite+aiosqlite://" + raw[len("sqlite://"):]
    return raw


class LedgerStore:
    """Owns the engine and session factory for the accounts/transactions tables.

    Built once at process start and passed by reference to every ledger
    operation; nothing in the ledger reaches for a module-level client.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str, **engine_kwargs) -> "LedgerStore":
        return cls(create_async_engine(normalize_database_url(url), **engine_kwargs))

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield a session; connectivity failures surface as StoreUnavailable."""
        try:
            async with self._session_factory() as session:
                yield session
        except _CONNECTIVITY_ERRORS as exc:
            raise StoreUnavailable(f"Ledger store unavailable: {exc}") from exc

    async def create_schema(self) -> None:
        import models  # noqa: F401

        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except _CONNECTIVITY_ERRORS as exc:
            raise StoreUnavailable(f"Ledger store unavailable: {exc}") from exc

    async def ping(self) -> None:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except _CONNECTIVITY_ERRORS as exc:
            raise StoreUnavailable(f"Ledger store unavailable: {exc}") from exc

    async def dispose(self) -> None:
        await self.engine.dispose()


def get_store(request: Request) -> LedgerStore:
    """FastAPI dependency returning the store built in the app lifespan."""
    store: Optional[LedgerStore] = getattr(request.app.state, "store", None)
    if store is None:
        raise StoreUnavailable("Ledger store has not been initialised.")
    return store


def get_optional_store(request: Request) -> Optional[LedgerStore]:
    """Like ``get_store`` but yields ``None`` instead of raising.

    For endpoints that must answer even when the ledger was never initialised.
    """
    return getattr(request.app.state, "store", None)
