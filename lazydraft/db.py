"""
SQLite database operations.
"""

import sqlite3
import logging
import uuid
from pathlib import Path
from datetime import datetime
from typing import Optional, List, Dict, Any
from contextlib import contextmanager

from .models import (
    AutoReplySettings, AutoReplyStatus, InboundMail, MailRecord, MailStatus,
    RecurringMail, Template, User,
    allowed_sources, auto_reply_sources, to_db_time, utcnow,
)

logger = logging.getLogger(__name__)

# Columns a campaign update may touch. Ownership and identity are fixed.
RECURRING_UPDATABLE_COLUMNS = {
    "name", "from_address", "to_addresses", "cc", "bcc", "subject", "content",
    "days_of_week", "time_of_day", "timezone", "is_active", "last_sent_at",
    "next_run_at",
}


class Database:
    """SQLite database handler."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper handling."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception as e:
            conn.rollback()
            raise e
        finally:
            conn.close()

    def _init_db(self):
        """Initialize database schema."""
        with self._get_connection() as conn:
            self._create_schema(conn)
        logger.info(f"Database ready at {self.db_path}")

    def _create_schema(self, conn: sqlite3.Connection):
        """Create database schema inline."""
        conn.executescript("""
            -- Outbound mails
            CREATE TABLE IF NOT EXISTS mails (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                from_address TEXT NOT NULL,
                to_address TEXT NOT NULL,
                cc TEXT,
                bcc TEXT,
                subject TEXT NOT NULL,
                content TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'PENDING',
                tone TEXT,
                language TEXT,
                scheduled_at TEXT,
                opened_at TEXT,
                replied_at TEXT,
                created_at TEXT NOT NULL
            );

            -- Recurring campaigns
            CREATE TABLE IF NOT EXISTS recurring_mails (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                from_address TEXT NOT NULL,
                to_addresses TEXT NOT NULL,
                cc TEXT,
                bcc TEXT,
                subject TEXT NOT NULL,
                content TEXT NOT NULL,
                days_of_week TEXT NOT NULL,
                time_of_day TEXT NOT NULL,
                timezone TEXT NOT NULL,
                is_active INTEGER DEFAULT 1,
                last_sent_at TEXT,
                next_run_at TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            -- Templates
            CREATE TABLE IF NOT EXISTS templates (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                to_address TEXT DEFAULT '',
                subject TEXT DEFAULT '',
                body TEXT DEFAULT '',
                created_at TEXT NOT NULL
            );

            -- Users and their Google credentials
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT NOT NULL,
                name TEXT,
                google_id TEXT,
                refresh_token TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            -- Auto-reply configuration, one row per user
            CREATE TABLE IF NOT EXISTS auto_reply_settings (
                user_id TEXT PRIMARY KEY,
                enabled INTEGER DEFAULT 0,
                mode TEXT DEFAULT 'manual',
                signature TEXT DEFAULT '',
                cooldown_minutes INTEGER DEFAULT 60,
                last_processed_at TEXT,
                updated_at TEXT NOT NULL
            );

            -- Inbound mails seen by the auto-reply workflow
            CREATE TABLE IF NOT EXISTS inbound_mails (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                provider_message_id TEXT NOT NULL,
                provider_thread_id TEXT,
                rfc_message_id TEXT,
                from_address TEXT NOT NULL,
                to_address TEXT,
                subject TEXT,
                content TEXT,
                received_at TEXT,
                intent_tag TEXT,
                auto_reply_status TEXT NOT NULL,
                auto_reply_reason TEXT,
                draft_subject TEXT,
                draft_content TEXT,
                reply_mail_id TEXT,
                auto_replied_at TEXT,
                created_at TEXT NOT NULL,
                UNIQUE(user_id, provider_message_id)
            );

            -- Indexes for common queries
            CREATE INDEX IF NOT EXISTS idx_inbound_user ON inbound_mails(user_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_inbound_thread ON inbound_mails(user_id, provider_thread_id);
            CREATE INDEX IF NOT EXISTS idx_mails_user ON mails(user_id);
            CREATE INDEX IF NOT EXISTS idx_mails_due ON mails(status, scheduled_at);
            CREATE INDEX IF NOT EXISTS idx_recurring_user ON recurring_mails(user_id);
            CREATE INDEX IF NOT EXISTS idx_recurring_due ON recurring_mails(is_active, next_run_at);
            CREATE INDEX IF NOT EXISTS idx_templates_user ON templates(user_id);
        """)

    def _insert(self, conn: sqlite3.Connection, table: str, data: Dict[str, Any]) -> None:
        placeholders = ", ".join(["?" for _ in data])
        columns = ", ".join(data.keys())
        conn.execute(
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
            list(data.values())
        )

    # Mail operations
    def create_mail(self, mail: MailRecord) -> MailRecord:
        """Insert a mail record, assigning its id."""
        mail.id = str(uuid.uuid4())
        mail.created_at = utcnow()
        with self._get_connection() as conn:
            self._insert(conn, "mails", mail.to_dict())
        return mail

    def get_mail(self, mail_id: str) -> Optional[MailRecord]:
        """Get a mail by ID."""
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT * FROM mails WHERE id = ?", (mail_id,))
            row = cursor.fetchone()
            if row:
                return MailRecord.from_dict(dict(row))
        return None

    def get_mails_by_user(
        self,
        user_id: str,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[MailRecord]:
        """Get a user's mails, newest first. No limit returns every mail."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM mails WHERE user_id = ? ORDER BY created_at DESC LIMIT ? OFFSET ?",
                (user_id, -1 if limit is None else limit, offset)
            )
            return [MailRecord.from_dict(dict(row)) for row in cursor.fetchall()]

    def count_mails_by_user(self, user_id: str) -> int:
        """Count a user's mails."""
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT COUNT(*) FROM mails WHERE user_id = ?", (user_id,))
            return cursor.fetchone()[0]

    def get_due_scheduled_mails(self, now: datetime, limit: int) -> List[MailRecord]:
        """Get pending mails whose scheduled time has passed, earliest first."""
        with self._get_connection() as conn:
            cursor = conn.execute("""
                SELECT * FROM mails
                WHERE status = ? AND scheduled_at IS NOT NULL AND scheduled_at <= ?
                ORDER BY scheduled_at ASC
                LIMIT ?
            """, (MailStatus.PENDING.value, to_db_time(now), limit))
            return [MailRecord.from_dict(dict(row)) for row in cursor.fetchall()]

    def update_mail_status(self, mail_id: str, status: MailStatus) -> Optional[MailRecord]:
        """
        Move a mail to a new status if the state machine allows it.

        Returns the updated record, or None when the mail does not exist or
        is already in a terminal state.
        """
        sources = [s.value for s in allowed_sources(status)]
        if not sources:
            return None
        placeholders = ", ".join(["?" for _ in sources])
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE mails SET status = ? WHERE id = ? AND status IN ({placeholders})",
                [status.value, mail_id, *sources]
            )
            if cursor.rowcount == 0:
                logger.warning(f"Status update to {status.value} refused for mail {mail_id}")
                return None
            row = conn.execute("SELECT * FROM mails WHERE id = ?", (mail_id,)).fetchone()
            return MailRecord.from_dict(dict(row)) if row else None

    def mark_mail_opened(self, mail_id: str, when: datetime) -> bool:
        """Record the first open of a mail. Returns False if already set or missing."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE mails SET opened_at = ? WHERE id = ? AND opened_at IS NULL",
                (to_db_time(when), mail_id)
            )
            return cursor.rowcount > 0

    def mark_mail_replied(self, mail_id: str, when: datetime) -> bool:
        """Record the first reply to a mail. Returns False if already set or missing."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE mails SET replied_at = ? WHERE id = ? AND replied_at IS NULL",
                (to_db_time(when), mail_id)
            )
            return cursor.rowcount > 0

    def get_reply_candidates(self, user_id: str, since: datetime, limit: int = 100) -> List[MailRecord]:
        """Get sent mails without a recorded reply, created since `since`."""
        with self._get_connection() as conn:
            cursor = conn.execute("""
                SELECT * FROM mails
                WHERE user_id = ? AND status = ? AND replied_at IS NULL AND created_at >= ?
                ORDER BY created_at DESC
                LIMIT ?
            """, (user_id, MailStatus.SENT.value, to_db_time(since), limit))
            return [MailRecord.from_dict(dict(row)) for row in cursor.fetchall()]

    # Recurring mail operations
    def create_recurring_mail(self, recurring: RecurringMail) -> RecurringMail:
        """Insert a recurring campaign, assigning its id."""
        recurring.id = str(uuid.uuid4())
        recurring.created_at = utcnow()
        recurring.updated_at = recurring.created_at
        with self._get_connection() as conn:
            self._insert(conn, "recurring_mails", recurring.to_dict())
        return recurring

    def get_recurring_mails_by_user(self, user_id: str) -> List[RecurringMail]:
        """Get a user's campaigns, newest first."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM recurring_mails WHERE user_id = ? ORDER BY created_at DESC",
                (user_id,)
            )
            return [RecurringMail.from_dict(dict(row)) for row in cursor.fetchall()]

    def get_recurring_mail(self, recurring_id: str, user_id: str) -> Optional[RecurringMail]:
        """Get a campaign by ID, scoped to its owner."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM recurring_mails WHERE id = ? AND user_id = ?",
                (recurring_id, user_id)
            )
            row = cursor.fetchone()
            if row:
                return RecurringMail.from_dict(dict(row))
        return None

    def update_recurring_mail(
        self,
        recurring_id: str,
        user_id: str,
        changes: Dict[str, Any]
    ) -> Optional[RecurringMail]:
        """Apply column changes to one campaign and return the updated row."""
        unknown = set(changes) - RECURRING_UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update recurring mail columns: {sorted(unknown)}")

        data = dict(changes)
        data["updated_at"] = to_db_time(utcnow())
        assignments = ", ".join([f"{k} = ?" for k in data.keys()])

        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE recurring_mails SET {assignments} WHERE id = ? AND user_id = ?",
                [*data.values(), recurring_id, user_id]
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT * FROM recurring_mails WHERE id = ?", (recurring_id,)
            ).fetchone()
            return RecurringMail.from_dict(dict(row)) if row else None

    def delete_recurring_mail(self, recurring_id: str, user_id: str) -> bool:
        """Delete a campaign. Returns True if a row was removed."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM recurring_mails WHERE id = ? AND user_id = ?",
                (recurring_id, user_id)
            )
            return cursor.rowcount > 0

    def get_due_recurring_mails(self, now: datetime, limit: int) -> List[RecurringMail]:
        """Get active campaigns whose next run has passed, earliest first."""
        with self._get_connection() as conn:
            cursor = conn.execute("""
                SELECT * FROM recurring_mails
                WHERE is_active = 1 AND next_run_at <= ?
                ORDER BY next_run_at ASC
                LIMIT ?
            """, (to_db_time(now), limit))
            return [RecurringMail.from_dict(dict(row)) for row in cursor.fetchall()]

    # Template operations
    def create_template(self, template: Template) -> Template:
        """Insert a template, assigning its id."""
        template.id = str(uuid.uuid4())
        template.created_at = utcnow()
        with self._get_connection() as conn:
            self._insert(conn, "templates", template.to_dict())
        return template

    def get_templates_by_user(self, user_id: str) -> List[Template]:
        """Get a user's templates, newest first."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM templates WHERE user_id = ? ORDER BY created_at DESC",
                (user_id,)
            )
            return [Template.from_dict(dict(row)) for row in cursor.fetchall()]

    def delete_template(self, template_id: str, user_id: str) -> bool:
        """Delete a template. Returns True if a row was removed."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM templates WHERE id = ? AND user_id = ?",
                (template_id, user_id)
            )
            return cursor.rowcount > 0

    # User operations
    def save_user(self, user: User) -> User:
        """Save or update a user. A missing refresh token keeps the stored one."""
        user.updated_at = utcnow()
        with self._get_connection() as conn:
            data = user.to_dict()
            placeholders = ", ".join(["?" for _ in data])
            columns = ", ".join(data.keys())
            conn.execute(f"""
                INSERT INTO users ({columns}) VALUES ({placeholders})
                ON CONFLICT(id) DO UPDATE SET
                    email = excluded.email,
                    name = excluded.name,
                    google_id = COALESCE(excluded.google_id, users.google_id),
                    refresh_token = COALESCE(excluded.refresh_token, users.refresh_token),
                    updated_at = excluded.updated_at
            """, list(data.values()))
        return self.get_user(user.id)

    def get_user(self, user_id: str) -> Optional[User]:
        """Get a user by ID."""
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,))
            row = cursor.fetchone()
            if row:
                return User.from_dict(dict(row))
        return None

    # Auto-reply settings
    def get_auto_reply_settings(self, user_id: str) -> Optional[AutoReplySettings]:
        """Get a user's auto-reply settings, if ever saved."""
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT * FROM auto_reply_settings WHERE user_id = ?", (user_id,))
            row = cursor.fetchone()
            if row:
                return AutoReplySettings.from_dict(dict(row))
        return None

    def save_auto_reply_settings(self, config: AutoReplySettings) -> AutoReplySettings:
        """Insert or replace a user's auto-reply settings."""
        config.updated_at = utcnow()
        with self._get_connection() as conn:
            data = config.to_dict()
            placeholders = ", ".join(["?" for _ in data])
            columns = ", ".join(data.keys())
            conn.execute(
                f"INSERT OR REPLACE INTO auto_reply_settings ({columns}) VALUES ({placeholders})",
                list(data.values())
            )
        return config

    def set_auto_reply_last_processed(self, user_id: str, when: datetime) -> None:
        """Move the inbox watermark forward. Never moves it back."""
        with self._get_connection() as conn:
            conn.execute("""
                UPDATE auto_reply_settings SET last_processed_at = ?
                WHERE user_id = ? AND (last_processed_at IS NULL OR last_processed_at < ?)
            """, (to_db_time(when), user_id, to_db_time(when)))

    def get_auto_reply_enabled_user_ids(self) -> List[str]:
        """Users who switched auto-reply on."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT user_id FROM auto_reply_settings WHERE enabled = 1 ORDER BY user_id"
            )
            return [row["user_id"] for row in cursor.fetchall()]

    # Inbound mail operations
    def create_inbound_mail(self, inbound: InboundMail) -> InboundMail:
        """Insert an inbound mail, assigning its id."""
        inbound.id = str(uuid.uuid4())
        inbound.created_at = utcnow()
        with self._get_connection() as conn:
            self._insert(conn, "inbound_mails", inbound.to_dict())
        return inbound

    def get_inbound_mail(self, inbound_id: str, user_id: str) -> Optional[InboundMail]:
        """Get an inbound mail by ID, scoped to its owner."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM inbound_mails WHERE id = ? AND user_id = ?",
                (inbound_id, user_id)
            )
            row = cursor.fetchone()
            if row:
                return InboundMail.from_dict(dict(row))
        return None

    def get_inbound_by_provider_id(self, provider_message_id: str, user_id: str) -> Optional[InboundMail]:
        """Get an inbound mail by the provider's message id."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM inbound_mails WHERE provider_message_id = ? AND user_id = ?",
                (provider_message_id, user_id)
            )
            row = cursor.fetchone()
            if row:
                return InboundMail.from_dict(dict(row))
        return None

    def get_inbound_for_review(self, user_id: str, limit: int = 50) -> List[InboundMail]:
        """Get a user's inbound mails, newest first."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM inbound_mails WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
                (user_id, limit)
            )
            return [InboundMail.from_dict(dict(row)) for row in cursor.fetchall()]

    def get_recent_auto_reply_by_thread(
        self,
        user_id: str,
        thread_id: str,
        since: datetime
    ) -> Optional[InboundMail]:
        """Latest inbound mail on a thread that was answered since `since`."""
        with self._get_connection() as conn:
            cursor = conn.execute("""
                SELECT * FROM inbound_mails
                WHERE user_id = ? AND provider_thread_id = ? AND auto_reply_status = ?
                  AND auto_replied_at >= ?
                ORDER BY auto_replied_at DESC
                LIMIT 1
            """, (user_id, thread_id, AutoReplyStatus.SENT.value, to_db_time(since)))
            row = cursor.fetchone()
            if row:
                return InboundMail.from_dict(dict(row))
        return None

    def update_inbound_result(
        self,
        inbound_id: str,
        status: AutoReplyStatus,
        reason: Optional[str] = None,
        reply_mail_id: Optional[str] = None,
    ) -> Optional[InboundMail]:
        """
        Record the decision on a drafted reply.

        Only DRAFTED mails move; returns None when the mail is missing or
        already decided.
        """
        sources = [s.value for s in auto_reply_sources(status)]
        if not sources:
            return None
        placeholders = ", ".join(["?" for _ in sources])
        replied_at = to_db_time(utcnow()) if status == AutoReplyStatus.SENT else None
        with self._get_connection() as conn:
            cursor = conn.execute(f"""
                UPDATE inbound_mails SET
                    auto_reply_status = ?,
                    auto_reply_reason = COALESCE(?, auto_reply_reason),
                    reply_mail_id = COALESCE(?, reply_mail_id),
                    auto_replied_at = COALESCE(?, auto_replied_at)
                WHERE id = ? AND auto_reply_status IN ({placeholders})
            """, [status.value, reason, reply_mail_id, replied_at, inbound_id, *sources])
            if cursor.rowcount == 0:
                logger.warning(f"Auto-reply update to {status.value} refused for inbound mail {inbound_id}")
                return None
            row = conn.execute("SELECT * FROM inbound_mails WHERE id = ?", (inbound_id,)).fetchone()
            return InboundMail.from_dict(dict(row)) if row else None
