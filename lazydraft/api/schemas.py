"""
API request/response schemas.

Request bodies accept the camelCase keys the web client sends
(e.g. googleAccessToken, scheduledAt) as well as snake_case.
"""

from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    """Request model that accepts both field names and aliases."""
    model_config = ConfigDict(populate_by_name=True)


# AI schemas
class ParseTextRequest(CamelModel):
    """Request to turn free text into an email."""
    text: str = Field(..., description="Rough notes describing the email")
    from_email: Optional[str] = Field(default=None, alias="fromEmail")
    tone: Optional[str] = Field(default=None, description="Formal, Casual, Friendly, ...")
    language: Optional[str] = Field(default=None, description="Output language")
    length: Optional[str] = Field(default=None, description="short, medium or detailed")


class ParsedEmailResponse(BaseModel):
    """Email fields extracted by the AI."""
    from_address: str = ""
    to: str = ""
    subject: str = ""
    body: str = ""


class SuggestSubjectsRequest(BaseModel):
    """Request for subject line suggestions."""
    body: str


class SuggestSubjectsResponse(BaseModel):
    """Suggested subject lines."""
    subjects: List[str] = []


class DraftReplyRequest(BaseModel):
    """Request to draft a reply to an inbound email."""
    subject: str = ""
    body: str
    tone: Optional[str] = None
    signature: Optional[str] = None


class DraftReplyResponse(BaseModel):
    """Drafted reply body (HTML)."""
    draft: str


class ClassifyRequest(BaseModel):
    """Request to classify an inbound email."""
    subject: str = ""
    body: str


class ClassificationResponse(BaseModel):
    """Whether an inbound email needs a reply."""
    needs_reply: bool
    category: str
    reason: str = ""


# Mail schemas
class SendMailRequest(CamelModel):
    """Request to send (or schedule) an email."""
    to: str
    from_address: str = Field(..., alias="from")
    cc: Optional[str] = None
    bcc: Optional[str] = None
    subject: str
    content: str
    tone: Optional[str] = None
    language: Optional[str] = None
    google_access_token: Optional[str] = Field(default=None, alias="googleAccessToken")
    scheduled_at: Optional[datetime] = Field(default=None, alias="scheduledAt")
    tracking_base_url: Optional[str] = Field(default=None, alias="trackingBaseUrl")


class MailResponse(BaseModel):
    """A stored outbound email."""
    id: str
    user_id: str
    from_address: str
    to: str
    cc: Optional[str] = None
    bcc: Optional[str] = None
    subject: str
    content: str
    status: str
    tone: Optional[str] = None
    language: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    replied_at: Optional[datetime] = None
    created_at: datetime


class MailHistoryResponse(BaseModel):
    """A page of a user's mails, newest first. `total` counts all of them."""
    mails: List[MailResponse]
    total: int


class CheckRepliesResponse(BaseModel):
    """Result of a reply scan."""
    marked: int


# Recurring mail schemas
class RecurringMailRequest(CamelModel):
    """Request to create a recurring campaign."""
    name: str
    from_address: str = Field(..., alias="from")
    to: List[str]
    cc: List[str] = []
    bcc: List[str] = []
    subject: str
    content: str
    days_of_week: List[int] = Field(..., alias="daysOfWeek", description="0-6, Sunday=0")
    time_of_day: str = Field(..., alias="timeOfDay", description="HH:MM, 24h")
    timezone: str = Field(..., description="IANA timezone, e.g. Asia/Kolkata")
    is_active: bool = Field(default=True, alias="isActive")


class UpdateRecurringMailRequest(CamelModel):
    """Request to edit a recurring campaign."""
    name: Optional[str] = None
    from_address: Optional[str] = Field(default=None, alias="from")
    to: Optional[List[str]] = None
    cc: Optional[List[str]] = None
    bcc: Optional[List[str]] = None
    subject: Optional[str] = None
    content: Optional[str] = None
    days_of_week: Optional[List[int]] = Field(default=None, alias="daysOfWeek")
    time_of_day: Optional[str] = Field(default=None, alias="timeOfDay")
    timezone: Optional[str] = None


class RecurringMailResponse(BaseModel):
    """Recurring campaign details."""
    id: str
    name: str
    from_address: str
    to: List[str]
    cc: List[str] = []
    bcc: List[str] = []
    subject: str
    content: str
    days_of_week: List[int]
    time_of_day: str
    timezone: str
    is_active: bool
    last_sent_at: Optional[datetime] = None
    next_run_at: datetime
    created_at: datetime
    updated_at: datetime


class RecurringMailsResponse(BaseModel):
    """List of recurring campaigns."""
    recurring_mails: List[RecurringMailResponse]


class RunNowResponse(BaseModel):
    """Result of running a campaign immediately."""
    sent: int
    failed: int
    next_run_at: datetime
    recurring_mail: Optional[RecurringMailResponse] = None


# Template schemas
class TemplateRequest(BaseModel):
    """Request to save a template."""
    name: str
    to: str = ""
    subject: str = ""
    body: str = ""


class TemplateResponse(BaseModel):
    """Template details."""
    id: str
    name: str
    to: str = ""
    subject: str = ""
    body: str = ""
    created_at: datetime


class TemplatesResponse(BaseModel):
    """List of templates."""
    templates: List[TemplateResponse]


# User schemas
class UpdateUserRequest(CamelModel):
    """Profile and Google credential handed over by the OAuth layer."""
    email: str
    name: str = ""
    google_id: Optional[str] = Field(default=None, alias="googleId")
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")


class UserResponse(BaseModel):
    """User profile (the credential itself is never returned)."""
    id: str
    email: str
    name: str = ""
    gmail_connected: bool = False


class ActionResponse(BaseModel):
    """Response for simple actions."""
    success: bool
    message: str


# Auto-reply schemas
class AutoReplySettingsRequest(CamelModel):
    """Partial update of the caller's auto-reply settings."""
    enabled: Optional[bool] = Field(default=None, alias="autoReplyEnabled")
    mode: Optional[str] = Field(default=None, alias="autoReplyMode", description="manual or auto")
    signature: Optional[str] = Field(default=None, alias="autoReplySignature")
    cooldown_minutes: Optional[int] = Field(default=None, alias="autoReplyCooldownMinutes")


class AutoReplySettingsResponse(BaseModel):
    """The caller's auto-reply settings."""
    enabled: bool
    mode: str
    signature: str = ""
    cooldown_minutes: int
    last_processed_at: Optional[datetime] = None


class InboundMailResponse(BaseModel):
    """An inbound mail and what the auto-reply workflow did with it."""
    id: str
    from_address: str
    to: str = ""
    subject: str = ""
    content: str = ""
    received_at: Optional[datetime] = None
    intent_tag: Optional[str] = None
    auto_reply_status: str
    auto_reply_reason: Optional[str] = None
    draft_subject: Optional[str] = None
    draft_content: Optional[str] = None
    reply_mail_id: Optional[str] = None
    auto_replied_at: Optional[datetime] = None
    created_at: datetime


class InboundMailsResponse(BaseModel):
    """Inbound mails, newest first."""
    mails: List[InboundMailResponse]


class InboundMailDetailsResponse(BaseModel):
    """An inbound mail with the reply sent for it."""
    inbound: InboundMailResponse
    auto_reply: Optional[MailResponse] = None


class RejectDraftRequest(BaseModel):
    """Optional reason for rejecting a drafted reply."""
    reason: Optional[str] = None


class AutoReplyRunResponse(BaseModel):
    """Result of an auto-reply run for the caller."""
    processed: int
    drafted: int = 0
    sent: int = 0
    skipped: int = 0
    blocked: int = 0
