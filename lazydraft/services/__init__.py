"""
Mail services: orchestration engine, auto-reply workflow, AI drafting and
the sweep scheduler.
"""

from .ai import AIService
from .auto_reply import AutoReplyService
from .errors import (
    MailError, ValidationError, AuthRequired, DeliveryFailure, NotFoundError, AIServiceError,
)
from .mail import MailService
from .scheduler import MailScheduler

__all__ = [
    "AIService",
    "AutoReplyService",
    "MailService",
    "MailScheduler",
    "MailError",
    "ValidationError",
    "AuthRequired",
    "DeliveryFailure",
    "NotFoundError",
    "AIServiceError",
]
