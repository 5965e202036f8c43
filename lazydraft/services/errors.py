"""
Errors raised by the mail services.
"""

from typing import Optional


class MailError(Exception):
    """Base class for mail service errors."""
    pass


class ValidationError(MailError):
    """Input was rejected before anything was stored."""
    pass


class AuthRequired(MailError):
    """No mailbox credential is available for the user."""

    def __init__(self, message: str = "Google account is not connected. Please connect your Gmail account first."):
        super().__init__(message)


class DeliveryFailure(MailError):
    """The mail provider refused or failed to accept a message."""

    def __init__(self, message: str, mail_id: Optional[str] = None):
        super().__init__(message)
        self.mail_id = mail_id


class NotFoundError(MailError):
    """The requested resource does not exist for this user."""
    pass


class AIServiceError(MailError):
    """The AI provider failed or returned something unusable."""
    pass
