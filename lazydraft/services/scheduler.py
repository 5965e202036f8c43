"""
Polling driver for the mail sweeps.

Independent loops, one per sweep type, each waking on its own interval
until stopped. The auto-reply loop only runs when an auto-reply service
is given.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from .auto_reply import AutoReplyService
from .mail import MailService

logger = logging.getLogger(__name__)


class MailScheduler:
    """Runs the scheduled-mail, recurring-mail and auto-reply sweeps on a fixed cadence."""

    def __init__(
        self,
        service: MailService,
        interval_seconds: float = 15,
        tracking_base_url: Optional[str] = None,
        auto_reply: Optional[AutoReplyService] = None,
        auto_reply_interval_seconds: float = 300,
    ):
        self.service = service
        self.interval_seconds = interval_seconds
        self.tracking_base_url = tracking_base_url
        self.auto_reply = auto_reply
        self.auto_reply_interval_seconds = auto_reply_interval_seconds
        self.running = False
        self._shutdown_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    def start(self) -> None:
        """Start the sweep loops on the running event loop."""
        if self.running:
            return
        self.running = True
        self._shutdown_event.clear()
        logger.info(f"Mail scheduler starting (interval: {self.interval_seconds}s)")

        self._tasks = [
            asyncio.create_task(
                self._loop(
                    "scheduled",
                    lambda: self.service.process_scheduled_emails(self.tracking_base_url),
                    self.interval_seconds,
                ),
                name="scheduled-mail-sweep",
            ),
            asyncio.create_task(
                self._loop(
                    "recurring",
                    lambda: self.service.process_recurring_mails(self.tracking_base_url),
                    self.interval_seconds,
                ),
                name="recurring-mail-sweep",
            ),
        ]
        if self.auto_reply is not None:
            logger.info(f"Auto-reply sweep enabled (interval: {self.auto_reply_interval_seconds}s)")
            self._tasks.append(asyncio.create_task(
                self._loop(
                    "auto-reply",
                    self.auto_reply.run_for_enabled_users,
                    self.auto_reply_interval_seconds,
                ),
                name="auto-reply-sweep",
            ))

    async def stop(self) -> None:
        """Stop all loops and wait for in-flight sweeps to finish."""
        if not self.running:
            return
        logger.info("Mail scheduler shutdown requested...")
        self.running = False
        self._shutdown_event.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Mail scheduler stopped.")

    async def _loop(self, name: str, sweep: Callable[[], Awaitable], interval: float) -> None:
        while self.running:
            cycle_start = datetime.now()
            try:
                await sweep()
            except Exception as e:
                logger.error(f"Error in {name} sweep: {e}", exc_info=True)

            cycle_duration = (datetime.now() - cycle_start).total_seconds()
            logger.debug(f"{name} sweep completed in {cycle_duration:.2f}s")

            # Wait for next tick or shutdown
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=interval
                )
                break
            except asyncio.TimeoutError:
                pass
