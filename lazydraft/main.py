"""
LazyDraft - Main entry point.

Runs the HTTP API and the scheduled/recurring mail sweeps in one event
loop, sending through each user's own Gmail account.
"""

import asyncio
import logging
import sys

import uvicorn

from . import __version__
from .config import settings
from .db import Database
from .repositories import (
    AutoReplyRepository, MailRepository, RecurringMailRepository, TemplateRepository, UserRepository,
)
from .integrations import GmailVendor
from .services import AIService, AutoReplyService, MailService, MailScheduler
from .api import create_app

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
    ]
)

if settings.log_file:
    file_handler = logging.FileHandler(settings.log_file)
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    ))
    logging.getLogger().addHandler(file_handler)

logger = logging.getLogger(__name__)


class LazyDraft:
    """Main application class."""

    def __init__(self):
        self.db = Database(settings.database_path)
        self.users = UserRepository(self.db)
        self.templates = TemplateRepository(self.db)
        self.vendor = GmailVendor()

        ai = AIService() if settings.anthropic_api_key else None
        if ai is None:
            logger.warning("ANTHROPIC_API_KEY not set; AI drafting endpoints are disabled")

        self.service = MailService(
            mails=MailRepository(self.db),
            recurring=RecurringMailRepository(self.db),
            vendor=self.vendor,
            credentials=self.users,
            ai=ai,
        )
        # Without AI there is nothing to classify or draft with
        self.auto_reply = AutoReplyService(
            AutoReplyRepository(self.db), self.service, self.vendor, self.users, ai=ai
        ) if ai else None

        self.scheduler = MailScheduler(
            self.service,
            interval_seconds=settings.scheduler_interval_seconds,
            tracking_base_url=settings.default_tracking_base_url,
            auto_reply=self.auto_reply,
            auto_reply_interval_seconds=settings.auto_reply_interval_seconds,
        )
        self.app = create_app(
            self.service, templates=self.templates, users=self.users, auto_reply=self.auto_reply
        )

    async def start(self):
        """Serve the API and run the sweeps until a shutdown signal."""
        logger.info("=" * 60)
        logger.info("LazyDraft starting...")
        logger.info(f"Version: {__version__}")
        logger.info(f"Database: {settings.database_path}")
        logger.info(f"API: http://{settings.api_host}:{settings.api_port}")
        logger.info(f"Scheduler enabled: {settings.scheduler_enabled}")
        logger.info(f"Tracking base URL: {settings.default_tracking_base_url}")
        logger.info("=" * 60)

        config = uvicorn.Config(
            self.app,
            host=settings.api_host,
            port=settings.api_port,
            log_level="info",
            access_log=False,
        )
        server = uvicorn.Server(config)

        if settings.scheduler_enabled:
            self.scheduler.start()

        # uvicorn handles SIGINT/SIGTERM and returns from serve()
        try:
            await server.serve()
        finally:
            await self.stop()

    async def stop(self):
        """Stop the sweeps and release the vendor client."""
        logger.info("Shutdown requested...")
        await self.scheduler.stop()
        await self.vendor.aclose()
        logger.info("LazyDraft stopped.")


def main():
    """Main entry point."""
    app = LazyDraft()

    try:
        asyncio.run(app.start())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


if __name__ == "__main__":
    main()
