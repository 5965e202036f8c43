"""
LazyDraft - AI email drafting, scheduled sends and recurring campaigns over Gmail.
"""

__version__ = "0.1.0"
