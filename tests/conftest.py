"""Shared test fixtures for the peer escrow test suite.

Provides:
    - An in-memory aiosqlite database (tables created per test)
    - A session per test and a session factory for tick / settlement tests
    - In-memory fakes for the storage, ledger and identity collaborators
    - A controllable clock that advances on every reading
    - Factory helpers for a created / joined escrow
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from peer_escrow.config import get_settings
from peer_escrow.domain.exceptions import LedgerAnchorError
from peer_escrow.infrastructure.database.engine import (
    build_engine,
    build_session_factory,
    create_tables,
)
from peer_escrow.infrastructure.identity import UserIdentity
from peer_escrow.infrastructure.ledger_client import LedgerReceipt
from peer_escrow.infrastructure.storage import StoredFile
from peer_escrow.services.escrow_service import EscrowService, NewDeliverable

INITIATOR = "alice"
PARTICIPANT = "bob"
ARBITER = "carol"
OUTSIDER = "mallory"


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Returns a strictly increasing time; advance() jumps forward."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        self.now += timedelta(milliseconds=1)
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeStorage:
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.exists_delay: float = 0.0
        self.exists_error: Exception | None = None

    async def upload(self, data: bytes, path: str, content_type: str) -> StoredFile:
        self.objects[path] = data
        return StoredFile(path=path, url=f"memory://{path}")

    async def exists(self, path: str) -> bool:
        if self.exists_delay:
            await asyncio.sleep(self.exists_delay)
        if self.exists_error is not None:
            raise self.exists_error
        return path in self.objects


class FakeLedger:
    """Counts anchor calls; fails while `fail` is set."""

    def __init__(self) -> None:
        self.anchored: list[str] = []
        self.calls = 0
        self.fail = False

    async def anchor(self, content_hash: str) -> LedgerReceipt:
        self.calls += 1
        await asyncio.sleep(0)
        if self.fail:
            raise LedgerAnchorError("ledger unavailable")
        self.anchored.append(content_hash)
        return LedgerReceipt(tx_receipt=f"0xreceipt{self.calls}")

    async def aclose(self) -> None:
        return None


class FakeIdentity:
    def __init__(self, verified: set[str] | None = None) -> None:
        self.verified = verified or set()

    async def get_identity(self, user_id: str) -> UserIdentity:
        return UserIdentity(
            user_id=user_id,
            is_authenticated=bool(user_id),
            is_verified=user_id in self.verified,
        )


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch: pytest.MonkeyPatch):
    """Reload settings per test so monkeypatched env vars take effect."""
    monkeypatch.setenv("APP_ENV", "development")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def file_engine(tmp_path):
    """A file-backed database, so that sessions get separate connections."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


# ---------------------------------------------------------------------------
# Escrow factories
# ---------------------------------------------------------------------------


def service_and_payment() -> list[NewDeliverable]:
    """Initiator performs a service, participant pays for it."""
    return [
        NewDeliverable(
            type="service",
            party_responsible="initiator",
            title="Clean the apartment",
            description="Full clean of a two-room apartment",
        ),
        NewDeliverable(
            type="cash",
            party_responsible="participant",
            title="Payment",
            value=Decimal("120.00"),
            currency="USD",
        ),
    ]


def item_and_payment() -> list[NewDeliverable]:
    return [
        NewDeliverable(type="item", party_responsible="initiator", title="Bicycle"),
        NewDeliverable(
            type="cash",
            party_responsible="participant",
            title="Payment",
            value=Decimal("250.00"),
            currency="EUR",
        ),
    ]


@pytest.fixture
def make_escrow(session, clock):
    """Create (and by default join) an escrow; returns the Escrow row."""

    async def _make(
        deliverables: list[NewDeliverable] | None = None,
        join: bool = True,
        escrow_type: str = "mixed",
        **kwargs,
    ):
        svc = EscrowService(session, clock)
        escrow = await svc.create_escrow(
            initiator_id=INITIATOR,
            escrow_type=escrow_type,
            deliverables=deliverables or item_and_payment(),
            title="Test deal",
            **kwargs,
        )
        if join:
            escrow = await svc.join_escrow(escrow.id, PARTICIPANT)
        return escrow

    return _make
