"""Shared fixtures for LazyDraft tests."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from lazydraft.db import Database
from lazydraft.models import MailRecord, MailStatus, RecurringMail
from lazydraft.repositories import (
    AutoReplyRepository, MailRepository, RecurringMailRepository, TemplateRepository, UserRepository,
)
from lazydraft.services import MailService


@pytest.fixture
def db(tmp_path) -> Database:
    """Create a fresh SQLite database in a temp directory."""
    return Database(str(tmp_path / "test.db"))


@pytest.fixture
def mail_repo(db) -> MailRepository:
    """Mail repository over the temp database."""
    return MailRepository(db)


@pytest.fixture
def recurring_repo(db) -> RecurringMailRepository:
    """Recurring mail repository over the temp database."""
    return RecurringMailRepository(db)


@pytest.fixture
def template_repo(db) -> TemplateRepository:
    """Template repository over the temp database."""
    return TemplateRepository(db)


@pytest.fixture
def user_repo(db) -> UserRepository:
    """User repository over the temp database."""
    return UserRepository(db)


@pytest.fixture
def auto_reply_repo(db) -> AutoReplyRepository:
    """Auto-reply repository over the temp database."""
    return AutoReplyRepository(db)


@pytest.fixture
def vendor() -> MagicMock:
    """Delivery vendor that accepts every message."""
    mock = MagicMock()
    mock.send_email = AsyncMock(return_value=True)
    mock.has_reply = AsyncMock(return_value=False)
    return mock


@pytest.fixture
def credentials() -> MagicMock:
    """Credential resolver that knows a refresh token for every user."""
    mock = MagicMock()
    mock.get_refresh_token = AsyncMock(return_value="refresh-token")
    return mock


@pytest.fixture
def service(mail_repo, recurring_repo, vendor, credentials) -> MailService:
    """Mail service over real repositories and a mocked vendor."""
    return MailService(
        mails=mail_repo,
        recurring=recurring_repo,
        vendor=vendor,
        credentials=credentials,
        batch_size=25,
        public_url="",
    )


@pytest.fixture
def test_user_id() -> str:
    """Return a test user ID."""
    return "user-123"


def make_mail(user_id: str = "user-123", **overrides) -> MailRecord:
    """Build a pending mail record with sensible defaults."""
    data = {
        "user_id": user_id,
        "from_address": "me@example.com",
        "to": "you@example.com",
        "subject": "Hello",
        "content": "<p>Hi</p>",
        "status": MailStatus.PENDING,
    }
    data.update(overrides)
    return MailRecord(**data)


def make_campaign(user_id: str = "user-123", **overrides) -> RecurringMail:
    """Build an active recurring campaign that is already due."""
    data = {
        "user_id": user_id,
        "name": "Weekly update",
        "from_address": "me@example.com",
        "to": ["a@example.com", "b@example.com"],
        "subject": "Weekly update",
        "content": "<p>Update</p>",
        "days_of_week": [1, 3, 5],
        "time_of_day": "09:00",
        "timezone": "UTC",
        "next_run_at": datetime.now(timezone.utc) - timedelta(minutes=1),
    }
    data.update(overrides)
    return RecurringMail(**data)
