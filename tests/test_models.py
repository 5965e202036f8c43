"""Tests for data models."""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_mail
from lazydraft.models import (
    MailStatus, allowed_sources, from_db_time, join_addresses, to_db_time,
)


class TestMailStatus:
    """Test suite for the mail state machine."""

    @pytest.mark.parametrize("source,target,allowed", [
        (MailStatus.PENDING, MailStatus.SENT, True),
        (MailStatus.PENDING, MailStatus.FAILED, True),
        (MailStatus.PENDING, MailStatus.PENDING, True),
        (MailStatus.SENT, MailStatus.FAILED, False),
        (MailStatus.FAILED, MailStatus.SENT, False),
        (MailStatus.SENT, MailStatus.PENDING, False),
    ])
    def test_transitions(self, source, target, allowed):
        """Only PENDING may move; SENT and FAILED are terminal."""
        assert make_mail(status=source).can_transition_to(target) is allowed

    def test_allowed_sources(self):
        """Every target is only reachable from PENDING."""
        assert allowed_sources(MailStatus.SENT) == [MailStatus.PENDING]
        assert allowed_sources(MailStatus.FAILED) == [MailStatus.PENDING]

    def test_is_due(self):
        """A pending mail is due once scheduled_at has passed."""
        now = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

        assert make_mail(scheduled_at=now - timedelta(seconds=1)).is_due(now)
        assert make_mail(scheduled_at=now).is_due(now)
        assert not make_mail(scheduled_at=now + timedelta(seconds=1)).is_due(now)
        assert not make_mail(status=MailStatus.SENT, scheduled_at=now).is_due(now)


class TestSerialization:
    """Test suite for storage helpers."""

    def test_db_time_sorts_as_text(self):
        """Stored timestamps are fixed width so text order matches time order."""
        earlier = datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc)
        later = earlier + timedelta(microseconds=1)
        assert to_db_time(earlier) < to_db_time(later)
        assert len(to_db_time(earlier)) == len(to_db_time(later))

    def test_db_time_normalizes_to_utc(self):
        """Offsets are converted to UTC on the way in."""
        local = datetime(2026, 1, 5, 14, 30, tzinfo=timezone(timedelta(hours=5, minutes=30)))
        assert from_db_time(to_db_time(local)) == datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
        assert to_db_time(None) is None
        assert from_db_time(None) is None

    def test_mail_round_trip(self):
        """A mail survives to_dict/from_dict."""
        mail = make_mail(id="m-1", cc="c@example.com", scheduled_at=datetime(2026, 1, 5, tzinfo=timezone.utc))
        restored = type(mail).from_dict(mail.to_dict())
        assert restored == mail

    def test_join_addresses(self):
        """Address lists collapse to a comma separated string."""
        assert join_addresses(["a@example.com", " ", "b@example.com "]) == "a@example.com, b@example.com"
        assert join_addresses([]) is None
        assert join_addresses(None) is None
