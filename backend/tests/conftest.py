"""
Pytest configuration and fixtures for Mail Sweep tests.
Provides a test database, an encryption key, mock Gmail/AI clients
and sample Gmail payloads.
"""

import base64
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator, Dict, List, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest
from cryptography.fernet import Fernet
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ai_client import AIClient
from config import settings
from db import Base
from gmail_client import GmailClient
from models import Category, MailAccount, Message
from utils.encryption import encrypt_token


# ============================================================================
# Settings Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def encryption_key(monkeypatch) -> str:
    """Give every test a fresh Fernet key."""
    key = Fernet.generate_key().decode()
    monkeypatch.setattr(settings, "ENCRYPTION_KEY", key)
    return key


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker, None]:
    """
    Session factory bound to a fresh in-memory SQLite database.

    Notes:
        - StaticPool shares the single in-memory connection between sessions
        - All tables are dropped after the test completes
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def test_db(session_factory: async_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    """Test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def account(test_db: AsyncSession) -> MailAccount:
    """Connected account with valid tokens and no history cursor yet."""
    account = MailAccount(
        user_id="user-1",
        google_id="google-1",
        email="owner@example.com",
        name="Owner",
        access_token=encrypt_token("access-token"),
        refresh_token=encrypt_token("refresh-token"),
        token_expires_at=datetime.utcnow() + timedelta(hours=1),
        scopes=["https://www.googleapis.com/auth/gmail.modify"],
    )
    test_db.add(account)
    await test_db.commit()
    await test_db.refresh(account)
    return account


@pytest.fixture
async def stored_message(test_db: AsyncSession, account: MailAccount) -> Message:
    """Stored newsletter message with an unsubscribe link in its body."""
    message = Message(
        account_id=account.id,
        user_id=account.user_id,
        gmail_message_id="gm-1",
        gmail_thread_id="th-1",
        subject="Weekly deals",
        from_email="news@shop.example",
        from_name="Shop",
        body="Great deals! Click https://shop.example/unsubscribe?u=42 to stop.",
        snippet="Great deals!",
    )
    test_db.add(message)
    await test_db.commit()
    await test_db.refresh(message)
    return message


@pytest.fixture
async def categories(test_db: AsyncSession, account: MailAccount) -> List[Category]:
    items = [
        Category(user_id=account.user_id, name="Newsletters", description="Recurring marketing mail"),
        Category(user_id=account.user_id, name="Receipts", description="Orders and invoices"),
    ]
    test_db.add_all(items)
    await test_db.commit()
    return items


# ============================================================================
# Collaborator Fixtures
# ============================================================================


class RecordingNotifier:
    """Notifier that keeps every (topic, event) it was given."""

    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def notify(self, topic: str, event: Dict[str, Any]) -> None:
        self.events.append((topic, event))

    def names(self) -> List[str]:
        return [event["event"] for _, event in self.events]


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def mock_gmail() -> MagicMock:
    """
    Gmail client whose coroutine methods are AsyncMocks.

    Defaults describe an empty mailbox; tests override return values.
    """
    gmail = MagicMock(spec=GmailClient)
    gmail.get_history = AsyncMock(return_value={"history": []})
    gmail.list_inbox_message_ids = AsyncMock(return_value=[])
    gmail.get_message = AsyncMock()
    gmail.archive_message = AsyncMock(return_value={})
    gmail.trash_message = AsyncMock(return_value={})
    gmail.watch = AsyncMock(return_value={"historyId": "1000", "expiration": "0"})
    gmail.stop_watch = AsyncMock(return_value=None)
    gmail.refresh_access_token = AsyncMock()
    gmail.revoke_token = AsyncMock(return_value=True)
    return gmail


@pytest.fixture
def mock_ai() -> MagicMock:
    """AI client whose complete() is an AsyncMock."""
    ai = MagicMock(spec=AIClient)
    ai.complete = AsyncMock(return_value="")
    return ai


class FakeQueue:
    """Stands in for JobRunner.enqueue and remembers what was queued."""

    def __init__(self):
        self.jobs: List[Tuple[str, Dict[str, Any]]] = []

    async def __call__(self, kind: str, args: Dict[str, Any], delay_seconds: int = 0) -> int:
        self.jobs.append((kind, args))
        return len(self.jobs)


@pytest.fixture
def fake_queue() -> FakeQueue:
    return FakeQueue()


# ============================================================================
# Sample Data Fixtures
# ============================================================================


def b64url(text: str) -> str:
    """Gmail-style URL-safe base64 without padding."""
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


def gmail_message(message_id: str, body: str = "Hello", internal_date: str = "1704110400000") -> Dict[str, Any]:
    """Minimal format=full Gmail message resource."""
    return {
        "id": message_id,
        "threadId": f"thread-{message_id}",
        "labelIds": ["INBOX", "UNREAD"],
        "snippet": body[:40],
        "internalDate": internal_date,
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": [
                {"name": "From", "value": "\"News Team\" <news@shop.example>"},
                {"name": "To", "value": "owner@example.com"},
                {"name": "Subject", "value": f"Subject {message_id}"},
                {"name": "Date", "value": "Mon, 1 Jan 2024 12:00:00 +0000"},
            ],
            "parts": [
                {"mimeType": "text/plain", "body": {"data": b64url(body)}},
                {"mimeType": "text/html", "body": {"data": b64url(f"<p>{body}</p>")}},
            ],
        },
    }


@pytest.fixture
def sample_gmail_message() -> Dict[str, Any]:
    return gmail_message("msg-123", body="Plain text body")
