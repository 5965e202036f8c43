"""
Integration modules for external services.
"""

from .gmail import GmailVendor, GmailError

__all__ = ["GmailVendor", "GmailError"]
