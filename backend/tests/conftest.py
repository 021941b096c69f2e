"""
Chapterly Backend — Test Configuration (conftest.py)
======================================================

What:  Shared pytest fixtures for the entire test suite.
Why:   Services are tested against real rows (in-memory SQLite) and mocked
       provider gateways; routes through an ASGI client on top of both.
How:   pytest auto-discovers conftest.py and makes fixtures available to all tests.
Who:   Used by all test files in the tests/ directory.
When:  Fixtures are created fresh for each test.

Fixture Hierarchy:
    Function-scoped (created fresh for each test):
    ├── db_engine: in-memory SQLite engine with the schema created
    ├── db_session: AsyncSession bound to db_engine
    ├── make_account / make_book / make_chapter: row factories
    ├── mock_stripe / mock_google_play / mock_identity: gateway mocks
    └── test_client: HTTPX AsyncClient with DB + gateways overridden
"""

import json
import os
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient


# ══════════════════════════════════════════════════════════════════════════
# Environment Setup
# ══════════════════════════════════════════════════════════════════════════

# Must run before anything from chapterly is imported: settings and the
# module-level engine read the environment at import time
_well_known_dir = tempfile.mkdtemp(prefix="chapterly_well_known_")
with open(os.path.join(_well_known_dir, "assetlinks.json"), "w") as fh:
    json.dump([{"relation": ["delegate_permission/common.handle_all_urls"]}], fh)

os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["LOG_LEVEL"] = "WARNING"  # Reduce noise during tests
os.environ["RATE_LIMIT_REQUESTS"] = "100000"
os.environ["ACK_RETRY_ATTEMPTS"] = "3"
os.environ["ACK_RETRY_MIN_WAIT"] = "0"
os.environ["ACK_RETRY_MAX_WAIT"] = "0"
os.environ["FRONTEND_URL"] = "http://localhost:3000"
os.environ["WELL_KNOWN_DIR"] = _well_known_dir

from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from chapterly.database import Base  # noqa: E402
from chapterly.models.account import GuestAccount, UserAccount  # noqa: E402
from chapterly.models.book import Book, Chapter  # noqa: E402
from chapterly.models.transaction import RedeemedTransaction  # noqa: E402
from chapterly.services.payment_provider import COMPLETED, ProviderTransaction  # noqa: E402


# ══════════════════════════════════════════════════════════════════════════
# Database Fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def db_engine():
    """
    Fresh in-memory database per test.

    StaticPool keeps the single connection alive (an in-memory SQLite
    database lives exactly as long as its connection). The two listeners
    hand transaction control to SQLAlchemy so SAVEPOINTs work under
    aiosqlite.
    """
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)

    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine):
    """
    Provides a real AsyncSession on the test database.

    Usage:
        async def test_debit(db_session, make_account):
            await make_account("u1", credits=100)
            result = await ledger_service.debit(db_session, "u1", 50, "book:6")
    """
    factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest.fixture
def make_account(db_session):
    """Inserts a `users` (registered=True) or `guests` row and commits."""

    async def _make(
        account_id: str,
        credits: int = 0,
        registered: bool = False,
        paid_chapters: Optional[List[str]] = None,
        settings: Any = None,
        email: Optional[str] = None,
    ):
        model = UserAccount if registered else GuestAccount
        values: Dict[str, Any] = dict(
            id=account_id,
            email=email,
            number_of_credits=credits,
            bookmarks=[],
            settings=settings if settings is not None else {},
            paid_chapters=paid_chapters or [],
        )
        if registered:
            values["authid"] = account_id
        row = model(**values)
        db_session.add(row)
        await db_session.commit()
        return row

    return _make


@pytest.fixture
def make_book(db_session):

    async def _make(book_id: str, title: str = "A Book", views: int = 0, age_days: int = 0):
        book = Book(
            book_id=book_id,
            title=title,
            author="Anon",
            views=views,
            date_uploaded=datetime.now(timezone.utc) - timedelta(days=age_days),
        )
        db_session.add(book)
        await db_session.commit()
        return book

    return _make


@pytest.fixture
def make_chapter(db_session):

    async def _make(book_id: str, chapter_number: int, content: str = "Once upon a time."):
        chapter = Chapter(
            book_id=book_id,
            chapter_number=chapter_number,
            title=f"Chapter {chapter_number}",
            content=content,
        )
        db_session.add(chapter)
        await db_session.commit()
        return chapter

    return _make


# ══════════════════════════════════════════════════════════════════════════
# Provider Gateway Mocks
# ══════════════════════════════════════════════════════════════════════════

def stripe_transaction(
    reference: str = "cs_test_1",
    state: str = COMPLETED,
    amount: Optional[int] = 499,
    currency: str = "usd",
    package_id: Optional[str] = "500",
    product_id: Optional[str] = "credits_500",
    account_id: Optional[str] = "user-1",
) -> ProviderTransaction:
    return ProviderTransaction(
        provider="stripe",
        reference=reference,
        state=state,
        raw_status=state,
        amount=amount,
        currency=currency,
        package_id=package_id,
        product_id=product_id,
        account_id=account_id,
    )


def play_transaction(
    token: str = "play-token-1",
    state: str = COMPLETED,
    product_id: str = "credits_500",
    account_id: Optional[str] = None,
    acknowledged: bool = False,
    consumed: bool = False,
) -> ProviderTransaction:
    return ProviderTransaction(
        provider="google_play",
        reference=token,
        state=state,
        raw_status=f"purchaseState={state}",
        product_id=product_id,
        account_id=account_id,
        metadata={"acknowledgementState": int(acknowledged), "consumptionState": int(consumed)},
        acknowledged=acknowledged,
        consumed=consumed,
    )


@pytest.fixture
def stripe_txn():
    """Factory for Stripe transactions; defaults to a paid 500-credit checkout for user-1."""
    return stripe_transaction


@pytest.fixture
def play_txn():
    """Factory for Google Play transactions; defaults to a completed credits_500 token."""
    return play_transaction


@pytest.fixture
def mock_stripe():
    """
    StripeService stand-in.

    expected_amount() answers with the catalog price so amount checks pass
    for transactions built with the catalog price.
    """
    from chapterly.services.catalog import find_package

    stripe = MagicMock()
    stripe.name = "stripe"
    stripe.is_configured.return_value = True
    stripe.expected_amount = AsyncMock(
        side_effect=lambda package: (find_package(package.id).price_minor_units, "usd")
    )
    stripe.fetch_checkout_session = AsyncMock()
    stripe.fetch_payment_intent = AsyncMock()
    stripe.create_checkout_session = AsyncMock(
        return_value={"id": "cs_test_new", "url": "https://checkout.stripe.com/c/pay/cs_test_new"}
    )
    stripe.create_payment_intent = AsyncMock(
        return_value={"id": "pi_test_new", "client_secret": "pi_test_new_secret_abc"}
    )
    stripe.acknowledge = AsyncMock(return_value=True)
    return stripe


@pytest.fixture
def mock_google_play():
    play = MagicMock()
    play.name = "google_play"
    play.is_configured.return_value = True
    play.fetch_transaction = AsyncMock()
    play.acknowledge = AsyncMock(return_value=True)
    return play


@pytest.fixture
def mock_identity():
    identity = MagicMock()
    identity.provider = "supabase"
    identity.send_otp = AsyncMock(return_value=None)
    identity.verify_otp = AsyncMock()
    identity.get_user = AsyncMock()
    identity.delete_user = AsyncMock(return_value=None)
    return identity


# ══════════════════════════════════════════════════════════════════════════
# API Client
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def test_client(db_session, mock_stripe, mock_google_play, mock_identity):
    """
    Provides an async HTTP test client for endpoint testing.

    What:    HTTPX AsyncClient configured to talk to our FastAPI app.
    How:     ASGITransport routes requests directly to the app (no lifespan,
             so the gateways on app.state are replaced via
             dependency_overrides, as is the database session).

    Usage:
        async def test_health(test_client):
            response = await test_client.get("/health")
            assert response.status_code == 200
    """
    from chapterly.database import get_db_session
    from chapterly.dependencies import (
        get_google_play_service,
        get_identity_service,
        get_stripe_service,
    )
    from chapterly.main import app

    async def _override_db():
        try:
            yield db_session
            await db_session.commit()
        except Exception:
            await db_session.rollback()
            raise

    app.dependency_overrides[get_db_session] = _override_db
    app.dependency_overrides[get_stripe_service] = lambda: mock_stripe
    app.dependency_overrides[get_google_play_service] = lambda: mock_google_play
    app.dependency_overrides[get_identity_service] = lambda: mock_identity

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
