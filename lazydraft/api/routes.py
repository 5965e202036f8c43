"""
FastAPI routes for the LazyDraft web client.

Authentication happens upstream: the OAuth layer resolves the caller and
forwards their id in the X-User-Id header.
"""

import base64
import logging
from typing import Optional
from fastapi import APIRouter, HTTPException, Query, Depends, Header, Request, Response

from ..integrations.gmail import GmailError
from ..models import AutoReplySettings, InboundMail, MailDraft, MailCredentials, MailRecord, RecurringMail, Template, User
from ..repositories import TemplateRepository, UserRepository
from ..services import (
    AutoReplyService, MailService, MailError, ValidationError, AuthRequired, DeliveryFailure,
    NotFoundError, AIServiceError,
)
from .schemas import (
    ParseTextRequest, ParsedEmailResponse,
    SuggestSubjectsRequest, SuggestSubjectsResponse,
    DraftReplyRequest, DraftReplyResponse,
    ClassifyRequest, ClassificationResponse,
    SendMailRequest, MailResponse, MailHistoryResponse, CheckRepliesResponse,
    RecurringMailRequest, UpdateRecurringMailRequest, RecurringMailResponse,
    RecurringMailsResponse, RunNowResponse,
    TemplateRequest, TemplateResponse, TemplatesResponse,
    UpdateUserRequest, UserResponse,
    AutoReplySettingsRequest, AutoReplySettingsResponse, InboundMailResponse,
    InboundMailsResponse, InboundMailDetailsResponse, RejectDraftRequest, AutoReplyRunResponse,
    ActionResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()

# 1x1 transparent GIF
TRACKING_PIXEL_GIF = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")

# Service dependencies, set by create_app()
_service: Optional[MailService] = None
_templates: Optional[TemplateRepository] = None
_users: Optional[UserRepository] = None
_auto_reply: Optional[AutoReplyService] = None


def get_service() -> MailService:
    """Get the mail service instance."""
    if _service is None:
        raise HTTPException(status_code=503, detail="Mail service not initialised")
    return _service


def get_templates() -> TemplateRepository:
    """Get the template repository."""
    if _templates is None:
        raise HTTPException(status_code=503, detail="Template store not initialised")
    return _templates


def get_users() -> UserRepository:
    """Get the user repository."""
    if _users is None:
        raise HTTPException(status_code=503, detail="User store not initialised")
    return _users


def get_auto_reply() -> AutoReplyService:
    """Get the auto-reply service."""
    if _auto_reply is None:
        raise HTTPException(status_code=503, detail="Auto-reply is not available")
    return _auto_reply


def set_service(
    service: MailService,
    templates: Optional[TemplateRepository] = None,
    users: Optional[UserRepository] = None,
    auto_reply: Optional[AutoReplyService] = None,
):
    """Set the service instances (for dependency injection)."""
    global _service, _templates, _users, _auto_reply
    _service = service
    _templates = templates
    _users = users
    _auto_reply = auto_reply


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Caller identity as forwarded by the OAuth layer."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Authentication required")
    return x_user_id.strip()


def to_http_error(e: MailError) -> HTTPException:
    """Map an engine error onto an HTTP status."""
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, AuthRequired):
        return HTTPException(status_code=401, detail=str(e))
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (DeliveryFailure, AIServiceError)):
        return HTTPException(status_code=502, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


# Helper functions
def mail_to_response(mail: MailRecord) -> MailResponse:
    """Convert MailRecord to MailResponse."""
    return MailResponse(
        id=mail.id,
        user_id=mail.user_id,
        from_address=mail.from_address,
        to=mail.to,
        cc=mail.cc,
        bcc=mail.bcc,
        subject=mail.subject,
        content=mail.content,
        status=mail.status.value,
        tone=mail.tone,
        language=mail.language,
        scheduled_at=mail.scheduled_at,
        opened_at=mail.opened_at,
        replied_at=mail.replied_at,
        created_at=mail.created_at,
    )


def recurring_to_response(campaign: RecurringMail) -> RecurringMailResponse:
    """Convert RecurringMail to RecurringMailResponse."""
    return RecurringMailResponse(
        id=campaign.id,
        name=campaign.name,
        from_address=campaign.from_address,
        to=campaign.to,
        cc=campaign.cc,
        bcc=campaign.bcc,
        subject=campaign.subject,
        content=campaign.content,
        days_of_week=campaign.days_of_week,
        time_of_day=campaign.time_of_day,
        timezone=campaign.timezone,
        is_active=campaign.is_active,
        last_sent_at=campaign.last_sent_at,
        next_run_at=campaign.next_run_at,
        created_at=campaign.created_at,
        updated_at=campaign.updated_at,
    )


def template_to_response(template: Template) -> TemplateResponse:
    """Convert Template to TemplateResponse."""
    return TemplateResponse(
        id=template.id,
        name=template.name,
        to=template.to,
        subject=template.subject,
        body=template.body,
        created_at=template.created_at,
    )


def auto_reply_settings_to_response(config: AutoReplySettings) -> AutoReplySettingsResponse:
    return AutoReplySettingsResponse(
        enabled=config.enabled,
        mode=config.mode,
        signature=config.signature,
        cooldown_minutes=config.cooldown_minutes,
        last_processed_at=config.last_processed_at,
    )


def inbound_to_response(inbound: InboundMail) -> InboundMailResponse:
    """Convert InboundMail to InboundMailResponse."""
    return InboundMailResponse(
        id=inbound.id,
        from_address=inbound.from_address,
        to=inbound.to,
        subject=inbound.subject,
        content=inbound.content,
        received_at=inbound.received_at,
        intent_tag=inbound.intent_tag,
        auto_reply_status=inbound.auto_reply_status.value,
        auto_reply_reason=inbound.auto_reply_reason,
        draft_subject=inbound.draft_subject,
        draft_content=inbound.draft_content,
        reply_mail_id=inbound.reply_mail_id,
        auto_replied_at=inbound.auto_replied_at,
        created_at=inbound.created_at,
    )


def request_origin(request: Request) -> str:
    return str(request.base_url).rstrip("/")


# Health
@router.get("/health")
async def health():
    """Liveness check."""
    return {"status": "ok"}


# AI endpoints
@router.post("/v1/mail/ai/parse", response_model=ParsedEmailResponse)
async def parse_text(
    request: ParseTextRequest,
    user_id: str = Depends(get_current_user_id),
    service: MailService = Depends(get_service),
):
    """Turn rough notes into a structured HTML email."""
    try:
        parsed = await service.parse_text_to_email(
            request.text,
            from_email=request.from_email,
            tone=request.tone,
            language=request.language,
            length=request.length,
        )
    except MailError as e:
        raise to_http_error(e)

    return ParsedEmailResponse(
        from_address=parsed.from_address,
        to=parsed.to,
        subject=parsed.subject,
        body=parsed.body,
    )


@router.post("/v1/mail/ai/suggest-subjects", response_model=SuggestSubjectsResponse)
async def suggest_subjects(
    request: SuggestSubjectsRequest,
    user_id: str = Depends(get_current_user_id),
    service: MailService = Depends(get_service),
):
    """Suggest up to three subject lines for an email body."""
    try:
        subjects = await service.suggest_subjects(request.body)
    except MailError as e:
        raise to_http_error(e)
    return SuggestSubjectsResponse(subjects=subjects)


@router.post("/v1/mail/ai/reply", response_model=DraftReplyResponse)
async def draft_reply(
    request: DraftReplyRequest,
    user_id: str = Depends(get_current_user_id),
    service: MailService = Depends(get_service),
):
    """Draft a reply to an inbound email."""
    try:
        draft = await service.draft_reply(
            request.subject, request.body, tone=request.tone, signature=request.signature
        )
    except MailError as e:
        raise to_http_error(e)
    return DraftReplyResponse(draft=draft)


@router.post("/v1/mail/ai/classify", response_model=ClassificationResponse)
async def classify_inbound(
    request: ClassifyRequest,
    user_id: str = Depends(get_current_user_id),
    service: MailService = Depends(get_service),
):
    """Decide whether an inbound email needs a reply."""
    try:
        result = await service.classify_inbound(request.subject, request.body)
    except MailError as e:
        raise to_http_error(e)
    return ClassificationResponse(**result)


# Mail endpoints
@router.post("/v1/mail/send", response_model=MailResponse, status_code=201)
async def send_mail(
    request: SendMailRequest,
    http_request: Request,
    user_id: str = Depends(get_current_user_id),
    service: MailService = Depends(get_service),
    users: UserRepository = Depends(get_users),
):
    """Send an email now, or store it for the scheduled sweep."""
    refresh_token = await users.get_refresh_token(user_id)
    credentials = MailCredentials(
        access_token=request.google_access_token,
        refresh_token=refresh_token,
    )
    draft = MailDraft(
        user_id=user_id,
        from_address=request.from_address,
        to=request.to,
        cc=request.cc,
        bcc=request.bcc,
        subject=request.subject,
        content=request.content,
        tone=request.tone,
        language=request.language,
        scheduled_at=request.scheduled_at,
    )

    try:
        mail = await service.compose_and_send(
            draft,
            credentials,
            tracking_base_url=request.tracking_base_url,
            request_origin=request_origin(http_request),
        )
    except MailError as e:
        raise to_http_error(e)
    except Exception as e:
        logger.error(f"Error sending mail for user {user_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    return mail_to_response(mail)


@router.get("/v1/mail/history", response_model=MailHistoryResponse)
async def mail_history(
    limit: Optional[int] = Query(None, ge=1, le=1000, description="Page size (all mails if omitted)"),
    offset: int = Query(0, ge=0, description="Mails to skip"),
    user_id: str = Depends(get_current_user_id),
    service: MailService = Depends(get_service),
):
    """List the caller's mails, newest first."""
    mails = await service.get_user_emails(user_id, limit=limit, offset=offset)
    total = await service.count_user_emails(user_id)
    return MailHistoryResponse(
        mails=[mail_to_response(m) for m in mails],
        total=total,
    )


@router.get("/v1/mail/check-replies", response_model=CheckRepliesResponse)
async def check_replies(
    days: Optional[int] = Query(None, ge=1, le=90, description="How far back to look"),
    user_id: str = Depends(get_current_user_id),
    service: MailService = Depends(get_service),
):
    """Scan the caller's inbox for replies to recently sent mails."""
    marked = await service.check_replies(user_id, days=days)
    return CheckRepliesResponse(marked=marked)


@router.get("/v1/mail/track/open")
async def track_open(
    id: Optional[str] = Query(None, description="Mail id"),
):
    """Open-tracking pixel. Always answers with the image."""
    if id and _service is not None:
        await _service.track_open(id)
    return Response(
        content=TRACKING_PIXEL_GIF,
        media_type="image/gif",
        headers={
            "Cache-Control": "no-store, no-cache, must-revalidate, private",
            "Pragma": "no-cache",
            "Expires": "0",
        },
    )


# Auto-reply endpoints
@router.get("/v1/mail/auto-reply/settings", response_model=AutoReplySettingsResponse)
async def get_auto_reply_settings(
    user_id: str = Depends(get_current_user_id),
    auto_reply: AutoReplyService = Depends(get_auto_reply),
):
    """The caller's auto-reply settings."""
    return auto_reply_settings_to_response(await auto_reply.get_settings(user_id))


@router.put("/v1/mail/auto-reply/settings", response_model=AutoReplySettingsResponse)
async def update_auto_reply_settings(
    request: AutoReplySettingsRequest,
    user_id: str = Depends(get_current_user_id),
    auto_reply: AutoReplyService = Depends(get_auto_reply),
):
    """Change any of the caller's auto-reply settings."""
    try:
        config = await auto_reply.update_settings(user_id, request.model_dump(exclude_unset=True))
    except MailError as e:
        raise to_http_error(e)
    return auto_reply_settings_to_response(config)


@router.get("/v1/mail/auto-reply/inbound", response_model=InboundMailsResponse)
async def list_inbound_mails(
    limit: int = Query(50, description="Maximum mails returned (clamped to 1-100)"),
    user_id: str = Depends(get_current_user_id),
    auto_reply: AutoReplyService = Depends(get_auto_reply),
):
    """Inbound mails seen by the auto-reply workflow, newest first."""
    mails = await auto_reply.list_inbound(user_id, limit=limit)
    return InboundMailsResponse(mails=[inbound_to_response(m) for m in mails])


@router.post("/v1/mail/auto-reply/run", response_model=AutoReplyRunResponse)
async def run_auto_reply(
    user_id: str = Depends(get_current_user_id),
    auto_reply: AutoReplyService = Depends(get_auto_reply),
):
    """Process the caller's new inbound mail now."""
    try:
        result = await auto_reply.run_for_user(user_id)
    except MailError as e:
        raise to_http_error(e)
    except GmailError as e:
        raise HTTPException(status_code=502, detail=str(e))

    if result is None:
        raise HTTPException(status_code=409, detail="An auto-reply run is already in progress")
    return AutoReplyRunResponse(**result)


@router.get("/v1/mail/auto-reply/{mail_id}", response_model=InboundMailDetailsResponse)
async def get_inbound_mail(
    mail_id: str,
    user_id: str = Depends(get_current_user_id),
    auto_reply: AutoReplyService = Depends(get_auto_reply),
):
    """One inbound mail and the reply sent for it."""
    try:
        inbound, reply = await auto_reply.get_mail_details(user_id, mail_id)
    except MailError as e:
        raise to_http_error(e)
    return InboundMailDetailsResponse(
        inbound=inbound_to_response(inbound),
        auto_reply=mail_to_response(reply) if reply else None,
    )


@router.post("/v1/mail/auto-reply/{mail_id}/approve", response_model=InboundMailResponse)
async def approve_auto_reply(
    mail_id: str,
    user_id: str = Depends(get_current_user_id),
    auto_reply: AutoReplyService = Depends(get_auto_reply),
):
    """Send a drafted reply."""
    try:
        inbound = await auto_reply.approve_draft(user_id, mail_id)
    except MailError as e:
        raise to_http_error(e)
    return inbound_to_response(inbound)


@router.post("/v1/mail/auto-reply/{mail_id}/reject", response_model=InboundMailResponse)
async def reject_auto_reply(
    mail_id: str,
    request: Optional[RejectDraftRequest] = None,
    user_id: str = Depends(get_current_user_id),
    auto_reply: AutoReplyService = Depends(get_auto_reply),
):
    """Discard a drafted reply."""
    try:
        inbound = await auto_reply.reject_draft(
            user_id, mail_id, reason=request.reason if request else None
        )
    except MailError as e:
        raise to_http_error(e)
    return inbound_to_response(inbound)


# Recurring mail endpoints
@router.get("/v1/recurring-mails", response_model=RecurringMailsResponse)
async def list_recurring_mails(
    user_id: str = Depends(get_current_user_id),
    service: MailService = Depends(get_service),
):
    """List the caller's recurring campaigns."""
    campaigns = await service.list_recurring_mails(user_id)
    return RecurringMailsResponse(recurring_mails=[recurring_to_response(c) for c in campaigns])


@router.post("/v1/recurring-mails", response_model=RecurringMailResponse, status_code=201)
async def create_recurring_mail(
    request: RecurringMailRequest,
    user_id: str = Depends(get_current_user_id),
    service: MailService = Depends(get_service),
):
    """Create a recurring campaign."""
    try:
        campaign = await service.create_recurring_mail(user_id, request.model_dump())
    except MailError as e:
        raise to_http_error(e)
    return recurring_to_response(campaign)


@router.put("/v1/recurring-mails/{recurring_id}", response_model=RecurringMailResponse)
async def update_recurring_mail(
    recurring_id: str,
    request: UpdateRecurringMailRequest,
    user_id: str = Depends(get_current_user_id),
    service: MailService = Depends(get_service),
):
    """Edit a recurring campaign. The next run is recomputed."""
    try:
        campaign = await service.update_recurring_mail(
            recurring_id, user_id, request.model_dump(exclude_unset=True)
        )
    except MailError as e:
        raise to_http_error(e)
    return recurring_to_response(campaign)


@router.delete("/v1/recurring-mails/{recurring_id}", response_model=ActionResponse)
async def delete_recurring_mail(
    recurring_id: str,
    user_id: str = Depends(get_current_user_id),
    service: MailService = Depends(get_service),
):
    """Delete a recurring campaign."""
    try:
        await service.delete_recurring_mail(recurring_id, user_id)
    except MailError as e:
        raise to_http_error(e)
    return ActionResponse(success=True, message="Recurring mail deleted")


@router.post("/v1/recurring-mails/{recurring_id}/toggle", response_model=RecurringMailResponse)
async def toggle_recurring_mail(
    recurring_id: str,
    user_id: str = Depends(get_current_user_id),
    service: MailService = Depends(get_service),
):
    """Pause or resume a recurring campaign."""
    try:
        campaign = await service.toggle_recurring_mail(recurring_id, user_id)
    except MailError as e:
        raise to_http_error(e)
    return recurring_to_response(campaign)


@router.post("/v1/recurring-mails/{recurring_id}/run-now", response_model=RunNowResponse)
async def run_recurring_now(
    recurring_id: str,
    http_request: Request,
    user_id: str = Depends(get_current_user_id),
    service: MailService = Depends(get_service),
):
    """Send a campaign to all its recipients immediately."""
    try:
        result = await service.run_recurring_now(
            recurring_id, user_id, request_origin=request_origin(http_request)
        )
    except MailError as e:
        raise to_http_error(e)
    except Exception as e:
        logger.error(f"Error running recurring mail {recurring_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    campaign = result.get("campaign")
    return RunNowResponse(
        sent=result["sent"],
        failed=result["failed"],
        next_run_at=result["next_run_at"],
        recurring_mail=recurring_to_response(campaign) if campaign else None,
    )


# Template endpoints
@router.get("/v1/templates", response_model=TemplatesResponse)
async def list_templates(
    user_id: str = Depends(get_current_user_id),
    templates: TemplateRepository = Depends(get_templates),
):
    """List the caller's templates."""
    items = await templates.find_by_user_id(user_id)
    return TemplatesResponse(templates=[template_to_response(t) for t in items])


@router.post("/v1/templates", response_model=TemplateResponse, status_code=201)
async def create_template(
    request: TemplateRequest,
    user_id: str = Depends(get_current_user_id),
    templates: TemplateRepository = Depends(get_templates),
):
    """Save a template."""
    if not request.name.strip():
        raise HTTPException(status_code=400, detail="Template name is required")

    template = await templates.create(Template(
        user_id=user_id,
        name=request.name.strip(),
        to=request.to,
        subject=request.subject,
        body=request.body,
    ))
    return template_to_response(template)


@router.delete("/v1/templates/{template_id}", response_model=ActionResponse)
async def delete_template(
    template_id: str,
    user_id: str = Depends(get_current_user_id),
    templates: TemplateRepository = Depends(get_templates),
):
    """Delete a template."""
    if not await templates.delete_by_id(template_id, user_id):
        raise HTTPException(status_code=404, detail="Template not found")
    return ActionResponse(success=True, message="Template deleted")


# User endpoints
@router.get("/v1/users/me", response_model=UserResponse)
async def get_me(
    user_id: str = Depends(get_current_user_id),
    users: UserRepository = Depends(get_users),
):
    """Current user's profile and Gmail connection state."""
    user = await users.find_by_id(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return UserResponse(
        id=user.id, email=user.email, name=user.name,
        gmail_connected=bool(user.refresh_token),
    )


@router.put("/v1/users/me", response_model=UserResponse)
async def update_me(
    request: UpdateUserRequest,
    user_id: str = Depends(get_current_user_id),
    users: UserRepository = Depends(get_users),
):
    """Store the caller's profile and Google refresh token."""
    user = await users.upsert(User(
        id=user_id,
        email=request.email,
        name=request.name,
        google_id=request.google_id,
        refresh_token=request.refresh_token,
    ))
    logger.info(f"User {user_id} updated (gmail connected: {bool(user.refresh_token)})")
    return UserResponse(
        id=user.id, email=user.email, name=user.name,
        gmail_connected=bool(user.refresh_token),
    )
