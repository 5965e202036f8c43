"""
Data models and state machine definitions.
"""

from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
import json


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC. Naive values are assumed to be UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_db_time(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as a fixed-width UTC ISO string (sortable as text)."""
    if dt is None:
        return None
    return ensure_utc(dt).isoformat(timespec="microseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO timestamp back into an aware UTC datetime."""
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def join_addresses(addresses: Optional[List[str]]) -> Optional[str]:
    """Collapse an address list into the delimited string form used on mails."""
    if not addresses:
        return None
    cleaned = [a.strip() for a in addresses if a and a.strip()]
    return ", ".join(cleaned) if cleaned else None


class MailStatus(Enum):
    """Delivery status of an outbound mail."""
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


# SENT and FAILED are terminal. PENDING -> PENDING is the "not yet due" no-op.
VALID_TRANSITIONS = {
    MailStatus.PENDING: [MailStatus.PENDING, MailStatus.SENT, MailStatus.FAILED],
    MailStatus.SENT: [],
    MailStatus.FAILED: [],
}


def allowed_sources(target: MailStatus) -> List[MailStatus]:
    """States from which a mail may move to `target`."""
    return [source for source, targets in VALID_TRANSITIONS.items() if target in targets]


@dataclass
class MailRecord:
    """One outbound email instance."""
    user_id: str
    from_address: str
    to: str
    subject: str
    content: str
    id: Optional[str] = None
    cc: Optional[str] = None
    bcc: Optional[str] = None
    status: MailStatus = MailStatus.PENDING
    tone: Optional[str] = None
    language: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    replied_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def can_transition_to(self, new_status: MailStatus) -> bool:
        """Check a status change against the mail state machine."""
        return new_status in VALID_TRANSITIONS.get(self.status, [])

    def is_due(self, now: datetime) -> bool:
        """A pending mail is due once its scheduled instant has passed."""
        if self.status != MailStatus.PENDING:
            return False
        return self.scheduled_at is None or ensure_utc(self.scheduled_at) <= ensure_utc(now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "from_address": self.from_address,
            "to_address": self.to,
            "cc": self.cc,
            "bcc": self.bcc,
            "subject": self.subject,
            "content": self.content,
            "status": self.status.value,
            "tone": self.tone,
            "language": self.language,
            "scheduled_at": to_db_time(self.scheduled_at),
            "opened_at": to_db_time(self.opened_at),
            "replied_at": to_db_time(self.replied_at),
            "created_at": to_db_time(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MailRecord":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            from_address=data["from_address"],
            to=data["to_address"],
            cc=data.get("cc"),
            bcc=data.get("bcc"),
            subject=data["subject"],
            content=data["content"],
            status=MailStatus(data["status"]),
            tone=data.get("tone"),
            language=data.get("language"),
            scheduled_at=from_db_time(data.get("scheduled_at")),
            opened_at=from_db_time(data.get("opened_at")),
            replied_at=from_db_time(data.get("replied_at")),
            created_at=from_db_time(data["created_at"]),
        )


@dataclass
class RecurringMail:
    """
    A recurring campaign definition.

    Fires on every weekday in `days_of_week` (Sunday=0) at `time_of_day`
    (HH:MM, 24h) local to `timezone`. Each run sends one mail per recipient.
    """
    user_id: str
    name: str
    from_address: str
    to: List[str]
    subject: str
    content: str
    days_of_week: List[int]
    time_of_day: str
    timezone: str
    next_run_at: datetime
    id: Optional[str] = None
    cc: List[str] = field(default_factory=list)
    bcc: List[str] = field(default_factory=list)
    is_active: bool = True
    last_sent_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "from_address": self.from_address,
            "to_addresses": json.dumps(self.to),
            "cc": json.dumps(self.cc),
            "bcc": json.dumps(self.bcc),
            "subject": self.subject,
            "content": self.content,
            "days_of_week": json.dumps(sorted(set(self.days_of_week))),
            "time_of_day": self.time_of_day,
            "timezone": self.timezone,
            "is_active": self.is_active,
            "last_sent_at": to_db_time(self.last_sent_at),
            "next_run_at": to_db_time(self.next_run_at),
            "created_at": to_db_time(self.created_at),
            "updated_at": to_db_time(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecurringMail":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            name=data["name"],
            from_address=data["from_address"],
            to=json.loads(data.get("to_addresses") or "[]"),
            cc=json.loads(data.get("cc") or "[]"),
            bcc=json.loads(data.get("bcc") or "[]"),
            subject=data["subject"],
            content=data["content"],
            days_of_week=json.loads(data.get("days_of_week") or "[]"),
            time_of_day=data["time_of_day"],
            timezone=data["timezone"],
            is_active=bool(data.get("is_active", True)),
            last_sent_at=from_db_time(data.get("last_sent_at")),
            next_run_at=from_db_time(data["next_run_at"]),
            created_at=from_db_time(data["created_at"]),
            updated_at=from_db_time(data["updated_at"]),
        )


@dataclass
class Template:
    """Reusable email template owned by a user."""
    user_id: str
    name: str
    id: Optional[str] = None
    to: str = ""
    subject: str = ""
    body: str = ""
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "to_address": self.to,
            "subject": self.subject,
            "body": self.body,
            "created_at": to_db_time(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Template":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            name=data["name"],
            to=data.get("to_address") or "",
            subject=data.get("subject") or "",
            body=data.get("body") or "",
            created_at=from_db_time(data["created_at"]),
        )


@dataclass
class User:
    """A signed-in user and the Google credential used to act on their mailbox."""
    id: str
    email: str
    name: str = ""
    google_id: Optional[str] = None
    refresh_token: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "google_id": self.google_id,
            "refresh_token": self.refresh_token,
            "created_at": to_db_time(self.created_at),
            "updated_at": to_db_time(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            email=data["email"],
            name=data.get("name") or "",
            google_id=data.get("google_id"),
            refresh_token=data.get("refresh_token"),
            created_at=from_db_time(data["created_at"]),
            updated_at=from_db_time(data["updated_at"]),
        )


@dataclass
class MailDraft:
    """A composed email as submitted by the user."""
    user_id: str
    from_address: str
    to: str
    subject: str
    content: str
    cc: Optional[str] = None
    bcc: Optional[str] = None
    tone: Optional[str] = None
    language: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    # Reply threading, not stored on the record
    thread_id: Optional[str] = None
    in_reply_to: Optional[str] = None


@dataclass
class MailCredentials:
    """OAuth credentials for the sender's mailbox. Either token is enough."""
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.access_token or self.refresh_token)


@dataclass
class OutboundEmail:
    """Payload handed to the delivery vendor."""
    from_address: str
    to: str
    subject: str
    html: str
    cc: Optional[str] = None
    bcc: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    thread_id: Optional[str] = None
    in_reply_to: Optional[str] = None


@dataclass
class ParsedEmail:
    """Structured email fields extracted from free text by the AI service."""
    from_address: str = ""
    to: str = ""
    subject: str = ""
    body: str = ""


class AutoReplyStatus(Enum):
    """What the auto-reply workflow did with an inbound mail."""
    SKIPPED = "SKIPPED"
    DRAFTED = "DRAFTED"
    SENT = "SENT"
    BLOCKED = "BLOCKED"


# Only a drafted reply awaits a decision; everything else is final.
AUTO_REPLY_TRANSITIONS = {
    AutoReplyStatus.DRAFTED: [AutoReplyStatus.SENT, AutoReplyStatus.BLOCKED],
    AutoReplyStatus.SKIPPED: [],
    AutoReplyStatus.SENT: [],
    AutoReplyStatus.BLOCKED: [],
}

AUTO_REPLY_MODES = ("manual", "auto")


def auto_reply_sources(target: AutoReplyStatus) -> List[AutoReplyStatus]:
    """Auto-reply states from which an inbound mail may move to `target`."""
    return [source for source, targets in AUTO_REPLY_TRANSITIONS.items() if target in targets]


@dataclass
class AutoReplySettings:
    """
    Per-user auto-reply configuration.

    In "manual" mode replies are drafted and wait for approval; in "auto"
    mode they are sent as soon as they are drafted. A thread that got an
    automatic reply within `cooldown_minutes` is not answered again.
    """
    user_id: str
    enabled: bool = False
    mode: str = "manual"
    signature: str = ""
    cooldown_minutes: int = 60
    last_processed_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "user_id": self.user_id,
            "enabled": self.enabled,
            "mode": self.mode,
            "signature": self.signature,
            "cooldown_minutes": self.cooldown_minutes,
            "last_processed_at": to_db_time(self.last_processed_at),
            "updated_at": to_db_time(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AutoReplySettings":
        """Create from dictionary."""
        return cls(
            user_id=data["user_id"],
            enabled=bool(data.get("enabled")),
            mode=data.get("mode") or "manual",
            signature=data.get("signature") or "",
            cooldown_minutes=int(data.get("cooldown_minutes") or 0),
            last_processed_at=from_db_time(data.get("last_processed_at")),
            updated_at=from_db_time(data["updated_at"]),
        )


@dataclass
class InboundMessage:
    """A message read from the user's inbox."""
    message_id: str
    thread_id: Optional[str]
    from_address: str
    to: str
    subject: str
    body: str
    rfc_message_id: Optional[str] = None
    received_at: Optional[datetime] = None


@dataclass
class InboundMail:
    """An inbound message and the outcome of the auto-reply workflow for it."""
    user_id: str
    provider_message_id: str
    from_address: str
    to: str
    subject: str
    content: str
    id: Optional[str] = None
    provider_thread_id: Optional[str] = None
    rfc_message_id: Optional[str] = None
    received_at: Optional[datetime] = None
    intent_tag: Optional[str] = None
    auto_reply_status: AutoReplyStatus = AutoReplyStatus.SKIPPED
    auto_reply_reason: Optional[str] = None
    draft_subject: Optional[str] = None
    draft_content: Optional[str] = None
    reply_mail_id: Optional[str] = None
    auto_replied_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "provider_message_id": self.provider_message_id,
            "provider_thread_id": self.provider_thread_id,
            "rfc_message_id": self.rfc_message_id,
            "from_address": self.from_address,
            "to_address": self.to,
            "subject": self.subject,
            "content": self.content,
            "received_at": to_db_time(self.received_at),
            "intent_tag": self.intent_tag,
            "auto_reply_status": self.auto_reply_status.value,
            "auto_reply_reason": self.auto_reply_reason,
            "draft_subject": self.draft_subject,
            "draft_content": self.draft_content,
            "reply_mail_id": self.reply_mail_id,
            "auto_replied_at": to_db_time(self.auto_replied_at),
            "created_at": to_db_time(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InboundMail":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            provider_message_id=data["provider_message_id"],
            provider_thread_id=data.get("provider_thread_id"),
            rfc_message_id=data.get("rfc_message_id"),
            from_address=data["from_address"],
            to=data.get("to_address") or "",
            subject=data.get("subject") or "",
            content=data.get("content") or "",
            received_at=from_db_time(data.get("received_at")),
            intent_tag=data.get("intent_tag"),
            auto_reply_status=AutoReplyStatus(data["auto_reply_status"]),
            auto_reply_reason=data.get("auto_reply_reason"),
            draft_subject=data.get("draft_subject"),
            draft_content=data.get("draft_content"),
            reply_mail_id=data.get("reply_mail_id"),
            auto_replied_at=from_db_time(data.get("auto_replied_at")),
            created_at=from_db_time(data["created_at"]),
        )
