"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject database sessions,
the calling user, and the engine's external collaborators (storage, ledger,
identity, oracle router). Tests swap any of them via app.dependency_overrides.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator  # noqa: TC003 - FastAPI inspects annotations
from functools import lru_cache

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from peer_escrow.config import Settings, get_settings
from peer_escrow.domain.exceptions import AuthorizationError
from peer_escrow.infrastructure.database.engine import get_async_session, get_session_factory
from peer_escrow.infrastructure.identity import HeaderIdentityProvider, IdentityProvider
from peer_escrow.infrastructure.ledger_client import LedgerClient, build_ledger_client
from peer_escrow.infrastructure.storage import FileStorage, HttpObjectStorage
from peer_escrow.oracles import OracleRouter


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for a request."""
    async for session in get_async_session():
        yield session


def get_db_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for work that must own its commits (settlement)."""
    return get_session_factory()


def get_caller(x_user_id: str | None = Header(default=None)) -> str:
    """The authenticated user id, taken from the X-User-ID header."""
    if not x_user_id or not x_user_id.strip():
        raise AuthorizationError("X-User-ID header is required")
    return x_user_id.strip()


def get_optional_caller(x_user_id: str | None = Header(default=None)) -> str | None:
    if x_user_id is None or not x_user_id.strip():
        return None
    return x_user_id.strip()


@lru_cache(maxsize=1)
def get_storage() -> FileStorage:
    """Provide the shared object storage client."""
    return HttpObjectStorage()


@lru_cache(maxsize=1)
def get_ledger() -> LedgerClient:
    return build_ledger_client()


def get_identity_provider() -> IdentityProvider:
    return HeaderIdentityProvider(get_settings().verified_user_id_set)


def get_oracle_router(storage: FileStorage = Depends(get_storage)) -> OracleRouter:
    """Provide an OracleRouter over the shared storage."""
    return OracleRouter(storage)


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()
