"""
Mail orchestration.

Composes and sends one-off mails, sweeps due scheduled mails and due
recurring campaigns, and records opens and replies. Status moves only
PENDING -> SENT or PENDING -> FAILED.
"""

import asyncio
import html
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import quote

from ..config import settings
from ..models import (
    MailCredentials, MailDraft, MailRecord, MailStatus, OutboundEmail,
    ParsedEmail, RecurringMail, ensure_utc, join_addresses, utcnow,
)
from ..recurrence import compute_next_run, validate_schedule
from .ai import AIService
from .errors import (
    AIServiceError, AuthRequired, DeliveryFailure, NotFoundError, ValidationError,
)

logger = logging.getLogger(__name__)

TRACK_OPEN_PATH = "/api/v1/mail/track/open"

# Fields a campaign edit may change
RECURRING_EDITABLE_FIELDS = (
    "name", "from_address", "to", "cc", "bcc", "subject", "content",
    "days_of_week", "time_of_day", "timezone",
)


class EmailVendor(Protocol):
    async def send_email(self, email: OutboundEmail) -> bool: ...


class CredentialResolver(Protocol):
    async def get_refresh_token(self, user_id: str) -> Optional[str]: ...


def tracking_pixel(mail_id: str, base_url: str) -> str:
    """Invisible 1x1 image that reports an open when fetched."""
    src = f"{base_url.rstrip('/')}{TRACK_OPEN_PATH}?id={quote(mail_id, safe='')}"
    return (
        f'<img src="{html.escape(src)}" width="1" height="1" alt="" '
        f'style="display:none;width:1px;height:1px;border:0;" />'
    )


def _clean_addresses(addresses: Optional[List[str]]) -> List[str]:
    return [a.strip() for a in (addresses or []) if a and a.strip()]


class MailService:
    """
    The mail orchestration engine.

    Holds no records between calls; every operation reads from the stores.
    Each sweep type has its own lock so a sweep never overlaps itself
    within this instance. The lock is checked without awaiting, which is
    enough on a single event loop but does not coordinate separate
    processes.
    """

    def __init__(
        self,
        mails,
        recurring,
        vendor: EmailVendor,
        credentials: CredentialResolver,
        ai: Optional[AIService] = None,
        reply_checker=None,
        batch_size: Optional[int] = None,
        public_url: Optional[str] = None,
    ):
        self.mails = mails
        self.recurring = recurring
        self.vendor = vendor
        self.credentials = credentials
        self.ai = ai
        self.reply_checker = reply_checker if reply_checker is not None else (
            vendor if hasattr(vendor, "has_reply") else None
        )
        self.batch_size = batch_size or settings.scheduler_batch_size
        self.public_url = public_url if public_url is not None else settings.public_url

        self._scheduled_lock = asyncio.Lock()
        self._recurring_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def resolve_tracking_base_url(
        self,
        tracking_base_url: Optional[str] = None,
        request_origin: Optional[str] = None
    ) -> Optional[str]:
        """Explicit value wins, then the configured public URL, then the request origin."""
        for candidate in (tracking_base_url, self.public_url, request_origin):
            if candidate and candidate.strip():
                return candidate.strip().rstrip("/")
        return None

    async def _deliver(
        self,
        mail: MailRecord,
        credentials: MailCredentials,
        base_url: Optional[str],
        thread_id: Optional[str] = None,
        in_reply_to: Optional[str] = None,
    ) -> MailRecord:
        """
        Attempt delivery of a persisted PENDING mail.

        Exactly one status update happens: SENT on success, FAILED
        otherwise. Failures raise DeliveryFailure after FAILED is stored.
        """
        content = mail.content
        if base_url:
            content = f"{content}{tracking_pixel(mail.id, base_url)}"

        try:
            accepted = await self.vendor.send_email(OutboundEmail(
                from_address=mail.from_address,
                to=mail.to,
                cc=mail.cc,
                bcc=mail.bcc,
                subject=mail.subject,
                html=content,
                access_token=credentials.access_token,
                refresh_token=credentials.refresh_token,
                thread_id=thread_id,
                in_reply_to=in_reply_to,
            ))
        except Exception as e:
            logger.error(f"Delivery of mail {mail.id} to {mail.to} raised: {e}")
            await self.mails.update_status(mail.id, MailStatus.FAILED)
            raise DeliveryFailure(f"Failed to send email: {e}", mail_id=mail.id) from e

        if not accepted:
            logger.error(f"Mail provider rejected mail {mail.id} to {mail.to}")
            await self.mails.update_status(mail.id, MailStatus.FAILED)
            raise DeliveryFailure(
                "Gmail failed to send the email. Check backend logs for details.",
                mail_id=mail.id,
            )

        updated = await self.mails.update_status(mail.id, MailStatus.SENT)
        logger.info(f"Mail {mail.id} sent to {mail.to}")
        if updated is None:
            mail.status = MailStatus.SENT
            return mail
        return updated

    async def _mark_failed(self, mail_id: str) -> None:
        try:
            await self.mails.update_status(mail_id, MailStatus.FAILED)
        except Exception as e:
            logger.error(f"Could not mark mail {mail_id} as FAILED: {e}")

    async def compose_and_send(
        self,
        draft: MailDraft,
        credentials: MailCredentials,
        tracking_base_url: Optional[str] = None,
        request_origin: Optional[str] = None,
    ) -> MailRecord:
        """
        Persist a composed mail and send it now, or leave it for the sweep.

        Args:
            draft: The composed mail. A future scheduled_at defers delivery.
            credentials: Access token and/or refresh token for the sender
            tracking_base_url: Explicit base URL for the open-tracking pixel
            request_origin: Origin of the HTTP request, last-resort pixel base

        Returns:
            The stored record: PENDING when deferred, SENT when delivered

        Raises:
            ValidationError: to, subject or content missing
            AuthRequired: no credential at all
            DeliveryFailure: the provider failed; the record is FAILED
        """
        if not (draft.to or "").strip() or not (draft.subject or "").strip() or not (draft.content or "").strip():
            raise ValidationError("Incomplete email data: to, subject, and content are required")
        if credentials is None or credentials.is_empty:
            raise AuthRequired()

        now = utcnow()
        scheduled_at = ensure_utc(draft.scheduled_at)
        deferred = scheduled_at is not None and scheduled_at > now
        if not deferred:
            # Immediate sends must never be sweep candidates
            scheduled_at = None

        mail = await self.mails.create(MailRecord(
            user_id=draft.user_id,
            from_address=draft.from_address,
            to=draft.to.strip(),
            cc=draft.cc or None,
            bcc=draft.bcc or None,
            subject=draft.subject,
            content=draft.content,
            tone=draft.tone,
            language=draft.language,
            status=MailStatus.PENDING,
            scheduled_at=scheduled_at,
        ))

        if deferred:
            logger.info(f"Mail {mail.id} scheduled for {scheduled_at.isoformat()}")
            return mail

        base_url = self.resolve_tracking_base_url(tracking_base_url, request_origin)
        return await self._deliver(
            mail, credentials, base_url,
            thread_id=draft.thread_id, in_reply_to=draft.in_reply_to,
        )

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    async def process_scheduled_emails(
        self,
        tracking_base_url: Optional[str] = None
    ) -> Optional[Dict[str, int]]:
        """
        Send every due scheduled mail in one bounded batch.

        Returns:
            Counts of due/sent/failed mails, or None if a sweep was
            already running.
        """
        if self._scheduled_lock.locked():
            logger.debug("Scheduled sweep already running, skipping")
            return None

        async with self._scheduled_lock:
            summary = {"due": 0, "sent": 0, "failed": 0}
            base_url = self.resolve_tracking_base_url(tracking_base_url)
            due = await self.mails.find_due_scheduled(utcnow(), self.batch_size)
            summary["due"] = len(due)

            for mail in due:
                try:
                    refresh_token = await self.credentials.get_refresh_token(mail.user_id)
                    if not refresh_token:
                        logger.warning(f"No credential for user {mail.user_id}; mail {mail.id} marked FAILED")
                        await self._mark_failed(mail.id)
                        summary["failed"] += 1
                        continue

                    await self._deliver(mail, MailCredentials(refresh_token=refresh_token), base_url)
                    summary["sent"] += 1
                except DeliveryFailure as e:
                    logger.error(f"Scheduled mail {mail.id} failed: {e}")
                    summary["failed"] += 1
                except Exception as e:
                    logger.error(f"Scheduled mail {mail.id} errored: {e}", exc_info=True)
                    await self._mark_failed(mail.id)
                    summary["failed"] += 1

            if due:
                logger.info(
                    f"Scheduled sweep complete: {summary['due']} due, "
                    f"{summary['sent']} sent, {summary['failed']} failed"
                )
            return summary

    async def process_recurring_mails(
        self,
        tracking_base_url: Optional[str] = None
    ) -> Optional[Dict[str, int]]:
        """
        Run every due active campaign in one bounded batch.

        A campaign that cannot run (no credential, unexpected error) keeps
        its next_run_at and is retried on the next sweep.

        Returns:
            Counts of due/completed/skipped campaigns and sent/failed mails,
            or None if a sweep was already running.
        """
        if self._recurring_lock.locked():
            logger.debug("Recurring sweep already running, skipping")
            return None

        async with self._recurring_lock:
            summary = {"due": 0, "completed": 0, "skipped": 0, "sent": 0, "failed": 0}
            base_url = self.resolve_tracking_base_url(tracking_base_url)
            due = await self.recurring.find_due_active(utcnow(), self.batch_size)
            summary["due"] = len(due)

            for campaign in due:
                try:
                    result = await self._run_campaign(campaign, base_url)
                    summary["completed"] += 1
                    summary["sent"] += result["sent"]
                    summary["failed"] += result["failed"]
                except Exception as e:
                    logger.error(f"Recurring mail {campaign.id} skipped this cycle: {e}")
                    summary["skipped"] += 1

            if due:
                logger.info(
                    f"Recurring sweep complete: {summary['completed']}/{summary['due']} campaigns run, "
                    f"{summary['sent']} sent, {summary['failed']} failed, {summary['skipped']} skipped"
                )
            return summary

    async def _run_campaign(self, campaign: RecurringMail, base_url: Optional[str]) -> Dict[str, Any]:
        """Send one mail per recipient, then advance the schedule."""
        refresh_token = await self.credentials.get_refresh_token(campaign.user_id)
        if not refresh_token:
            raise AuthRequired()
        credentials = MailCredentials(refresh_token=refresh_token)

        cc = join_addresses(campaign.cc)
        bcc = join_addresses(campaign.bcc)
        result = {"sent": 0, "failed": 0}

        for recipient in _clean_addresses(campaign.to):
            mail = await self.mails.create(MailRecord(
                user_id=campaign.user_id,
                from_address=campaign.from_address,
                to=recipient,
                cc=cc,
                bcc=bcc,
                subject=campaign.subject,
                content=campaign.content,
                status=MailStatus.PENDING,
            ))
            try:
                await self._deliver(mail, credentials, base_url)
                result["sent"] += 1
            except DeliveryFailure as e:
                logger.warning(f"Recurring mail {campaign.id}: recipient {recipient} failed: {e}")
                result["failed"] += 1

        now = utcnow()
        next_run_at = compute_next_run(now, campaign.days_of_week, campaign.time_of_day, campaign.timezone)
        updated = await self.recurring.update_by_id_and_user(
            campaign.id,
            campaign.user_id,
            {"last_sent_at": now, "next_run_at": next_run_at},
        )
        result["campaign"] = updated
        result["next_run_at"] = next_run_at
        return result

    # ------------------------------------------------------------------
    # Recurring campaign management
    # ------------------------------------------------------------------

    def _validate_recurring(self, data: Dict[str, Any]) -> None:
        for key in ("name", "from_address", "subject", "content", "time_of_day", "timezone"):
            if not str(data.get(key) or "").strip():
                raise ValidationError(f"Recurring mail field '{key}' is required")
        if not _clean_addresses(data.get("to")):
            raise ValidationError("At least one recipient is required")
        try:
            validate_schedule(data.get("days_of_week"), data["time_of_day"], data["timezone"])
        except ValueError as e:
            raise ValidationError(str(e)) from e

    async def create_recurring_mail(self, user_id: str, data: Dict[str, Any]) -> RecurringMail:
        """Create a campaign with its first run computed from now."""
        fields = {key: data.get(key) for key in RECURRING_EDITABLE_FIELDS}
        self._validate_recurring(fields)

        campaign = RecurringMail(
            user_id=user_id,
            name=fields["name"].strip(),
            from_address=fields["from_address"].strip(),
            to=_clean_addresses(fields["to"]),
            cc=_clean_addresses(fields.get("cc")),
            bcc=_clean_addresses(fields.get("bcc")),
            subject=fields["subject"],
            content=fields["content"],
            days_of_week=sorted(set(fields["days_of_week"])),
            time_of_day=fields["time_of_day"].strip(),
            timezone=fields["timezone"].strip(),
            is_active=bool(data.get("is_active", True)),
            next_run_at=compute_next_run(
                utcnow(), fields["days_of_week"], fields["time_of_day"], fields["timezone"]
            ),
        )
        created = await self.recurring.create(campaign)
        logger.info(f"Recurring mail {created.id} created, next run {created.next_run_at.isoformat()}")
        return created

    async def _get_campaign(self, recurring_id: str, user_id: str) -> RecurringMail:
        campaign = await self.recurring.find_by_id_and_user(recurring_id, user_id)
        if campaign is None:
            raise NotFoundError("Recurring mail not found")
        return campaign

    async def list_recurring_mails(self, user_id: str) -> List[RecurringMail]:
        return await self.recurring.find_by_user_id(user_id)

    async def update_recurring_mail(
        self,
        recurring_id: str,
        user_id: str,
        changes: Dict[str, Any]
    ) -> RecurringMail:
        """Edit a campaign. The next run is always recomputed from now."""
        existing = await self._get_campaign(recurring_id, user_id)

        merged = {key: getattr(existing, key) for key in RECURRING_EDITABLE_FIELDS}
        for key, value in changes.items():
            if key in RECURRING_EDITABLE_FIELDS and value is not None:
                merged[key] = value
        self._validate_recurring(merged)

        merged["to"] = _clean_addresses(merged["to"])
        merged["cc"] = _clean_addresses(merged["cc"])
        merged["bcc"] = _clean_addresses(merged["bcc"])
        merged["next_run_at"] = compute_next_run(
            utcnow(), merged["days_of_week"], merged["time_of_day"], merged["timezone"]
        )

        updated = await self.recurring.update_by_id_and_user(recurring_id, user_id, merged)
        if updated is None:
            raise NotFoundError("Recurring mail not found")
        return updated

    async def toggle_recurring_mail(self, recurring_id: str, user_id: str) -> RecurringMail:
        """Pause or resume a campaign. Resuming recomputes the next run from now."""
        existing = await self._get_campaign(recurring_id, user_id)

        changes: Dict[str, Any] = {"is_active": not existing.is_active}
        if changes["is_active"]:
            changes["next_run_at"] = compute_next_run(
                utcnow(), existing.days_of_week, existing.time_of_day, existing.timezone
            )

        updated = await self.recurring.update_by_id_and_user(recurring_id, user_id, changes)
        if updated is None:
            raise NotFoundError("Recurring mail not found")
        logger.info(f"Recurring mail {recurring_id} {'activated' if updated.is_active else 'paused'}")
        return updated

    async def delete_recurring_mail(self, recurring_id: str, user_id: str) -> None:
        if not await self.recurring.delete_by_id_and_user(recurring_id, user_id):
            raise NotFoundError("Recurring mail not found")

    async def run_recurring_now(
        self,
        recurring_id: str,
        user_id: str,
        tracking_base_url: Optional[str] = None,
        request_origin: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Run a campaign immediately, whether or not it is due or active."""
        campaign = await self._get_campaign(recurring_id, user_id)
        base_url = self.resolve_tracking_base_url(tracking_base_url, request_origin)
        return await self._run_campaign(campaign, base_url)

    # ------------------------------------------------------------------
    # History and tracking
    # ------------------------------------------------------------------

    async def get_user_emails(
        self,
        user_id: str,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[MailRecord]:
        return await self.mails.find_by_user_id(user_id, limit=limit, offset=offset)

    async def count_user_emails(self, user_id: str) -> int:
        return await self.mails.count_by_user_id(user_id)

    async def track_open(self, mail_id: str) -> None:
        """Record an open. Never raises; repeated hits keep the first time."""
        if not mail_id:
            return
        try:
            await self.mails.mark_opened(mail_id)
        except Exception as e:
            logger.warning(f"Could not record open for mail {mail_id}: {e}")

    async def check_replies(self, user_id: str, days: Optional[int] = None) -> int:
        """
        Best-effort scan for replies to recently sent mails.

        Returns:
            Number of mails newly marked as replied
        """
        if self.reply_checker is None:
            return 0

        refresh_token = await self.credentials.get_refresh_token(user_id)
        if not refresh_token:
            logger.info(f"Reply check skipped for {user_id}: no credential")
            return 0
        credentials = MailCredentials(refresh_token=refresh_token)

        since = utcnow() - timedelta(days=days or settings.reply_check_days)
        candidates = await self.mails.find_reply_candidates(user_id, since)

        marked = 0
        for mail in candidates:
            try:
                if await self.reply_checker.has_reply(mail.to, mail.subject, mail.created_at, credentials):
                    await self.mails.mark_replied(mail.id)
                    marked += 1
            except Exception as e:
                logger.warning(f"Reply check failed for mail {mail.id}: {e}")

        if marked:
            logger.info(f"Marked {marked} mail(s) as replied for user {user_id}")
        return marked

    # ------------------------------------------------------------------
    # AI helpers
    # ------------------------------------------------------------------

    def _require_ai(self) -> AIService:
        if self.ai is None:
            raise AIServiceError("AI features are not configured")
        return self.ai

    async def parse_text_to_email(
        self,
        text: str,
        from_email: Optional[str] = None,
        tone: Optional[str] = None,
        language: Optional[str] = None,
        length: Optional[str] = None,
    ) -> ParsedEmail:
        if not text or not text.strip():
            raise ValidationError("Text content is required for AI parsing")
        return await self._require_ai().parse_text_to_email(text, from_email, tone, language, length)

    async def suggest_subjects(self, body: str) -> List[str]:
        return await self._require_ai().suggest_subjects(body)

    async def draft_reply(
        self,
        inbound_subject: str,
        inbound_body: str,
        tone: Optional[str] = None,
        signature: Optional[str] = None,
    ) -> str:
        return await self._require_ai().draft_reply(inbound_subject, inbound_body, tone, signature)

    async def classify_inbound(self, subject: str, body: str) -> Dict[str, Any]:
        return await self._require_ai().classify_inbound(subject, body)
