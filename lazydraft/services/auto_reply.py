"""
Auto-reply workflow.

Reads new inbound mail for users who enabled auto-reply, classifies each
message, drafts a reply for the ones that need one and either leaves the
draft for approval (manual mode) or sends it straight away (auto mode).
Replies go out through the mail engine, so they show up in the user's
history like any other sent mail.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

from ..config import settings
from ..models import (
    AUTO_REPLY_MODES, AutoReplySettings, AutoReplyStatus, InboundMail, InboundMessage,
    MailCredentials, MailDraft, MailRecord, utcnow,
)
from .ai import AIService
from .errors import AIServiceError, AuthRequired, DeliveryFailure, NotFoundError, ValidationError
from .mail import MailService

logger = logging.getLogger(__name__)

AUTOMATED_SENDER_MARKERS = ("no-reply", "noreply", "do-not-reply", "donotreply", "mailer-daemon", "postmaster")

# Cooldown is capped at one week
MAX_COOLDOWN_MINUTES = 7 * 24 * 60


def is_automated_sender(address: str) -> bool:
    """Addresses that never expect an answer."""
    local_part = (address or "").split("@")[0].lower()
    return any(marker in local_part for marker in AUTOMATED_SENDER_MARKERS)


def reply_subject(subject: str) -> str:
    subject = (subject or "").strip()
    if subject.lower().startswith("re:"):
        return subject
    return f"Re: {subject}" if subject else "Re: your message"


class AutoReplyService:
    """
    Drafts and sends replies to inbound mail on the user's behalf.

    Runs for one user at a time are never overlapped, and the sweep over
    all enabled users is guarded the same way the mail sweeps are.
    """

    def __init__(
        self,
        store,
        mail_service: MailService,
        inbox,
        users,
        ai: Optional[AIService] = None,
        batch_size: Optional[int] = None,
    ):
        self.store = store
        self.mail_service = mail_service
        self.inbox = inbox
        self.users = users
        self.ai = ai
        self.batch_size = batch_size or settings.auto_reply_batch_size

        self._sweep_lock = asyncio.Lock()
        self._send_lock = asyncio.Lock()
        self._running_users: Set[str] = set()

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def get_settings(self, user_id: str) -> AutoReplySettings:
        """Stored settings, or the disabled defaults for a new user."""
        config = await self.store.get_settings(user_id)
        return config if config is not None else AutoReplySettings(user_id=user_id)

    async def update_settings(self, user_id: str, changes: Dict[str, Any]) -> AutoReplySettings:
        """
        Apply a partial settings update.

        Args:
            user_id: Owner of the settings
            changes: Any of enabled, mode, signature, cooldown_minutes

        Raises:
            ValidationError: unknown mode or cooldown out of range
        """
        config = await self.get_settings(user_id)

        if changes.get("mode") is not None:
            mode = str(changes["mode"]).strip().lower()
            if mode not in AUTO_REPLY_MODES:
                raise ValidationError(f"Auto-reply mode must be one of: {', '.join(AUTO_REPLY_MODES)}")
            config.mode = mode
        if changes.get("cooldown_minutes") is not None:
            cooldown = changes["cooldown_minutes"]
            if isinstance(cooldown, bool) or not isinstance(cooldown, int) or not 0 <= cooldown <= MAX_COOLDOWN_MINUTES:
                raise ValidationError(f"Cooldown must be between 0 and {MAX_COOLDOWN_MINUTES} minutes")
            config.cooldown_minutes = cooldown
        if changes.get("signature") is not None:
            config.signature = str(changes["signature"])
        if changes.get("enabled") is not None:
            enabling = bool(changes["enabled"]) and not config.enabled
            config.enabled = bool(changes["enabled"])
            if enabling and config.last_processed_at is None:
                # Start from now rather than answering old mail
                config.last_processed_at = utcnow()

        saved = await self.store.save_settings(config)
        logger.info(f"Auto-reply settings for {user_id}: enabled={saved.enabled}, mode={saved.mode}")
        return saved

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    async def list_inbound(self, user_id: str, limit: int = 50) -> List[InboundMail]:
        limit = min(100, max(1, limit))
        return await self.store.find_inbound_for_review(user_id, limit)

    async def _get_inbound(self, user_id: str, inbound_id: str) -> InboundMail:
        inbound = await self.store.find_by_id(inbound_id, user_id)
        if inbound is None:
            raise NotFoundError("Inbound mail not found")
        return inbound

    async def get_mail_details(self, user_id: str, inbound_id: str) -> Tuple[InboundMail, Optional[MailRecord]]:
        """The inbound mail and the reply sent for it, if any."""
        inbound = await self._get_inbound(user_id, inbound_id)
        reply = None
        if inbound.reply_mail_id:
            reply = await self.mail_service.mails.find_by_id(inbound.reply_mail_id)
        return inbound, reply

    async def approve_draft(self, user_id: str, inbound_id: str) -> InboundMail:
        """
        Send a drafted reply.

        Raises:
            NotFoundError: no such inbound mail for this user
            ValidationError: the mail has no draft awaiting approval
            AuthRequired: the user has no stored Google credential
            DeliveryFailure: Gmail refused the reply; the draft stays open
        """
        inbound = await self._get_inbound(user_id, inbound_id)
        refresh_token = await self.users.get_refresh_token(user_id)
        if not refresh_token:
            raise AuthRequired()
        return await self._send_reply(inbound, MailCredentials(refresh_token=refresh_token))

    async def reject_draft(self, user_id: str, inbound_id: str, reason: Optional[str] = None) -> InboundMail:
        """Discard a drafted reply. The mail is marked BLOCKED."""
        await self._get_inbound(user_id, inbound_id)
        updated = await self.store.update_result(
            inbound_id, AutoReplyStatus.BLOCKED, reason=(reason or "").strip() or "Rejected by user"
        )
        if updated is None:
            raise ValidationError("This mail has no draft awaiting approval")
        logger.info(f"Auto-reply draft for inbound mail {inbound_id} rejected")
        return updated

    async def _send_reply(self, inbound: InboundMail, credentials: MailCredentials) -> InboundMail:
        """Send the drafted reply once; only a DRAFTED mail is sent."""
        async with self._send_lock:
            current = await self.store.find_by_id(inbound.id, inbound.user_id)
            if current is None or current.auto_reply_status != AutoReplyStatus.DRAFTED:
                raise ValidationError("This mail has no draft awaiting approval")

            user = await self.users.find_by_id(current.user_id)
            from_address = user.email if user and user.email else current.to

            mail = await self.mail_service.compose_and_send(
                MailDraft(
                    user_id=current.user_id,
                    from_address=from_address,
                    to=current.from_address,
                    subject=current.draft_subject or reply_subject(current.subject),
                    content=current.draft_content or "",
                    thread_id=current.provider_thread_id,
                    in_reply_to=current.rfc_message_id,
                ),
                credentials,
            )
            updated = await self.store.update_result(
                current.id, AutoReplyStatus.SENT, reply_mail_id=mail.id
            )
            logger.info(f"Auto-reply for inbound mail {current.id} sent to {current.from_address}")
            return updated or current

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def _require_ai(self) -> AIService:
        if self.ai is None:
            raise AIServiceError("AI features are not configured")
        return self.ai

    async def run_for_user(self, user_id: str) -> Optional[Dict[str, int]]:
        """
        Process new inbound mail for one user.

        Returns:
            Counts of processed/drafted/sent/skipped/blocked mails, or None
            if a run for this user is already in progress.

        Raises:
            AIServiceError: no AI service configured
            AuthRequired: the user has no stored Google credential
            GmailError: the inbox could not be read
        """
        if user_id in self._running_users:
            logger.debug(f"Auto-reply run for {user_id} already in progress, skipping")
            return None

        self._running_users.add(user_id)
        try:
            return await self._run(user_id)
        finally:
            self._running_users.discard(user_id)

    async def _run(self, user_id: str) -> Dict[str, int]:
        ai = self._require_ai()
        config = await self.get_settings(user_id)
        refresh_token = await self.users.get_refresh_token(user_id)
        if not refresh_token:
            raise AuthRequired()
        credentials = MailCredentials(refresh_token=refresh_token)

        started = utcnow()
        since = config.last_processed_at or started - timedelta(hours=settings.auto_reply_lookback_hours)
        messages = await self.inbox.fetch_inbound(credentials, since, self.batch_size)

        summary = {"processed": 0, "drafted": 0, "sent": 0, "skipped": 0, "blocked": 0}
        # The watermark follows the messages read, not the clock, and stops
        # before the first message that failed so it is read again next run
        watermark = None
        held = False
        for message in messages:
            try:
                if not await self.store.find_by_provider_message_id(message.message_id, user_id):
                    inbound = await self._process_message(user_id, message, config, ai, credentials)
                    summary["processed"] += 1
                    summary[inbound.auto_reply_status.value.lower()] += 1
            except Exception as e:
                logger.error(f"Auto-reply failed for message {message.message_id} of {user_id}: {e}")
                held = True
                continue

            if not held and message.received_at:
                watermark = message.received_at

        if watermark is not None:
            await self.store.mark_processed(user_id, watermark)

        if summary["processed"]:
            logger.info(
                f"Auto-reply run for {user_id}: {summary['processed']} processed, "
                f"{summary['drafted']} drafted, {summary['sent']} sent, "
                f"{summary['skipped']} skipped, {summary['blocked']} blocked"
            )
        return summary

    async def _process_message(
        self,
        user_id: str,
        message: InboundMessage,
        config: AutoReplySettings,
        ai: AIService,
        credentials: MailCredentials,
    ) -> InboundMail:
        """Decide what to do with one inbound message and record the outcome."""
        inbound = InboundMail(
            user_id=user_id,
            provider_message_id=message.message_id,
            provider_thread_id=message.thread_id,
            rfc_message_id=message.rfc_message_id,
            from_address=message.from_address,
            to=message.to,
            subject=message.subject,
            content=message.body,
            received_at=message.received_at,
        )

        if is_automated_sender(message.from_address):
            inbound.auto_reply_reason = "Automated sender"
            return await self.store.create(inbound)

        if message.thread_id and config.cooldown_minutes > 0:
            since = utcnow() - timedelta(minutes=config.cooldown_minutes)
            recent = await self.store.find_recent_auto_reply_by_thread(user_id, message.thread_id, since)
            if recent is not None:
                inbound.auto_reply_reason = f"Thread answered within the last {config.cooldown_minutes} minutes"
                return await self.store.create(inbound)

        classification = await ai.classify_inbound(message.subject, message.body)
        inbound.intent_tag = classification["category"]
        inbound.auto_reply_reason = classification["reason"] or None

        if classification["category"] == "spam":
            inbound.auto_reply_status = AutoReplyStatus.BLOCKED
            return await self.store.create(inbound)
        if not classification["needs_reply"]:
            return await self.store.create(inbound)

        inbound.draft_subject = reply_subject(message.subject)
        inbound.draft_content = await ai.draft_reply(
            message.subject, message.body, signature=config.signature or None
        )
        inbound.auto_reply_status = AutoReplyStatus.DRAFTED
        inbound = await self.store.create(inbound)

        if config.mode == "auto":
            try:
                return await self._send_reply(inbound, credentials)
            except DeliveryFailure as e:
                # The draft stays open for manual approval
                logger.warning(f"Automatic reply to {message.from_address} failed, left for review: {e}")
        return inbound

    async def run_for_enabled_users(self) -> Optional[Dict[str, int]]:
        """
        Run the workflow for every user with auto-reply enabled.

        A failing user is logged and skipped. Returns counts of users and
        processed mails, or None if a sweep was already running.
        """
        if self._sweep_lock.locked():
            logger.debug("Auto-reply sweep already running, skipping")
            return None

        async with self._sweep_lock:
            summary = {"users": 0, "failed_users": 0, "processed": 0}
            if self.ai is None:
                return summary

            for user_id in await self.store.find_enabled_user_ids():
                summary["users"] += 1
                try:
                    result = await self.run_for_user(user_id)
                    if result:
                        summary["processed"] += result["processed"]
                except Exception as e:
                    logger.error(f"Auto-reply run for {user_id} failed: {e}")
                    summary["failed_users"] += 1

            if summary["processed"] or summary["failed_users"]:
                logger.info(
                    f"Auto-reply sweep complete: {summary['users']} users, "
                    f"{summary['processed']} mails, {summary['failed_users']} failed"
                )
            return summary
