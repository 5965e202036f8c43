"""
Async repositories over the SQLite database.

The engine and the API only talk to these. Every call runs the blocking
sqlite work in a worker thread so sweeps never stall the event loop.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Optional, List, Dict, Any

from .db import Database
from .models import (
    AutoReplySettings, AutoReplyStatus, InboundMail, MailRecord, MailStatus,
    RecurringMail, Template, User,
    to_db_time, utcnow,
)

logger = logging.getLogger(__name__)

# Python field name -> (column, serializer)
_RECURRING_FIELDS = {
    "name": ("name", None),
    "from_address": ("from_address", None),
    "to": ("to_addresses", json.dumps),
    "cc": ("cc", json.dumps),
    "bcc": ("bcc", json.dumps),
    "subject": ("subject", None),
    "content": ("content", None),
    "days_of_week": ("days_of_week", lambda days: json.dumps(sorted(set(days)))),
    "time_of_day": ("time_of_day", None),
    "timezone": ("timezone", None),
    "is_active": ("is_active", bool),
    "last_sent_at": ("last_sent_at", to_db_time),
    "next_run_at": ("next_run_at", to_db_time),
}


def recurring_changes_to_columns(changes: Dict[str, Any]) -> Dict[str, Any]:
    """Translate a partial RecurringMail update into storage columns."""
    columns = {}
    for key, value in changes.items():
        if key not in _RECURRING_FIELDS:
            raise ValueError(f"Unknown recurring mail field: {key}")
        column, serialize = _RECURRING_FIELDS[key]
        columns[column] = serialize(value) if serialize and value is not None else value
    return columns


class MailRepository:
    """Durable store of outbound mail records."""

    def __init__(self, db: Database):
        self.db = db

    async def create(self, mail: MailRecord) -> MailRecord:
        return await asyncio.to_thread(self.db.create_mail, mail)

    async def find_by_id(self, mail_id: str) -> Optional[MailRecord]:
        return await asyncio.to_thread(self.db.get_mail, mail_id)

    async def find_by_user_id(
        self,
        user_id: str,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[MailRecord]:
        """A user's mails, newest first, optionally one page at a time."""
        return await asyncio.to_thread(self.db.get_mails_by_user, user_id, limit, offset)

    async def count_by_user_id(self, user_id: str) -> int:
        return await asyncio.to_thread(self.db.count_mails_by_user, user_id)

    async def find_due_scheduled(self, now: datetime, limit: int = 25) -> List[MailRecord]:
        """Pending mails with scheduled_at <= now, earliest first."""
        return await asyncio.to_thread(self.db.get_due_scheduled_mails, now, limit)

    async def update_status(self, mail_id: str, status: MailStatus) -> Optional[MailRecord]:
        return await asyncio.to_thread(self.db.update_mail_status, mail_id, status)

    async def mark_opened(self, mail_id: str) -> None:
        await asyncio.to_thread(self.db.mark_mail_opened, mail_id, utcnow())

    async def mark_replied(self, mail_id: str) -> None:
        await asyncio.to_thread(self.db.mark_mail_replied, mail_id, utcnow())

    async def find_reply_candidates(self, user_id: str, since: datetime) -> List[MailRecord]:
        return await asyncio.to_thread(self.db.get_reply_candidates, user_id, since)


class RecurringMailRepository:
    """Durable store of recurring campaign definitions."""

    def __init__(self, db: Database):
        self.db = db

    async def create(self, recurring: RecurringMail) -> RecurringMail:
        return await asyncio.to_thread(self.db.create_recurring_mail, recurring)

    async def find_by_user_id(self, user_id: str) -> List[RecurringMail]:
        return await asyncio.to_thread(self.db.get_recurring_mails_by_user, user_id)

    async def find_by_id_and_user(self, recurring_id: str, user_id: str) -> Optional[RecurringMail]:
        return await asyncio.to_thread(self.db.get_recurring_mail, recurring_id, user_id)

    async def update_by_id_and_user(
        self,
        recurring_id: str,
        user_id: str,
        changes: Dict[str, Any]
    ) -> Optional[RecurringMail]:
        """Apply a partial update (RecurringMail field names) to one campaign."""
        columns = recurring_changes_to_columns(changes)
        return await asyncio.to_thread(
            self.db.update_recurring_mail, recurring_id, user_id, columns
        )

    async def delete_by_id_and_user(self, recurring_id: str, user_id: str) -> bool:
        return await asyncio.to_thread(self.db.delete_recurring_mail, recurring_id, user_id)

    async def find_due_active(self, now: datetime, limit: int = 25) -> List[RecurringMail]:
        """Active campaigns with next_run_at <= now, earliest first."""
        return await asyncio.to_thread(self.db.get_due_recurring_mails, now, limit)


class TemplateRepository:
    """Durable store of user templates."""

    def __init__(self, db: Database):
        self.db = db

    async def create(self, template: Template) -> Template:
        return await asyncio.to_thread(self.db.create_template, template)

    async def find_by_user_id(self, user_id: str) -> List[Template]:
        return await asyncio.to_thread(self.db.get_templates_by_user, user_id)

    async def delete_by_id(self, template_id: str, user_id: str) -> bool:
        return await asyncio.to_thread(self.db.delete_template, template_id, user_id)


class UserRepository:
    """
    User store and credential resolver.

    The identity layer writes the Google refresh token here after OAuth;
    the engine reads it back whenever it acts on a user's mailbox without
    a live access token.
    """

    def __init__(self, db: Database):
        self.db = db

    async def upsert(self, user: User) -> User:
        return await asyncio.to_thread(self.db.save_user, user)

    async def find_by_id(self, user_id: str) -> Optional[User]:
        return await asyncio.to_thread(self.db.get_user, user_id)

    async def get_refresh_token(self, user_id: str) -> Optional[str]:
        user = await self.find_by_id(user_id)
        if user is None:
            logger.debug(f"No user record for {user_id}")
            return None
        return user.refresh_token or None


class AutoReplyRepository:
    """Durable store of auto-reply settings and the inbound mails they act on."""

    def __init__(self, db: Database):
        self.db = db

    async def get_settings(self, user_id: str) -> Optional[AutoReplySettings]:
        return await asyncio.to_thread(self.db.get_auto_reply_settings, user_id)

    async def save_settings(self, config: AutoReplySettings) -> AutoReplySettings:
        return await asyncio.to_thread(self.db.save_auto_reply_settings, config)

    async def mark_processed(self, user_id: str, when: datetime) -> None:
        await asyncio.to_thread(self.db.set_auto_reply_last_processed, user_id, when)

    async def find_enabled_user_ids(self) -> List[str]:
        return await asyncio.to_thread(self.db.get_auto_reply_enabled_user_ids)

    async def create(self, inbound: InboundMail) -> InboundMail:
        return await asyncio.to_thread(self.db.create_inbound_mail, inbound)

    async def find_by_id(self, inbound_id: str, user_id: str) -> Optional[InboundMail]:
        return await asyncio.to_thread(self.db.get_inbound_mail, inbound_id, user_id)

    async def find_by_provider_message_id(self, provider_message_id: str, user_id: str) -> Optional[InboundMail]:
        return await asyncio.to_thread(self.db.get_inbound_by_provider_id, provider_message_id, user_id)

    async def find_inbound_for_review(self, user_id: str, limit: int = 50) -> List[InboundMail]:
        """Inbound mails newest first, drafted and already decided alike."""
        return await asyncio.to_thread(self.db.get_inbound_for_review, user_id, limit)

    async def find_recent_auto_reply_by_thread(
        self,
        user_id: str,
        thread_id: str,
        since: datetime
    ) -> Optional[InboundMail]:
        return await asyncio.to_thread(
            self.db.get_recent_auto_reply_by_thread, user_id, thread_id, since
        )

    async def update_result(
        self,
        inbound_id: str,
        status: AutoReplyStatus,
        reason: Optional[str] = None,
        reply_mail_id: Optional[str] = None,
    ) -> Optional[InboundMail]:
        return await asyncio.to_thread(
            self.db.update_inbound_result, inbound_id, status, reason, reply_mail_id
        )
