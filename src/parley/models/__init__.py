# src/parley/models/__init__.py
"""SQLAlchemy models for the bundled SQL backing store."""

from .message import DirectMessage
from .profile import Profile
from .rate import RateLimitAttempt
from .reaction import MessageReaction

__all__ = [
    "DirectMessage",
    "MessageReaction",
    "Profile",
    "RateLimitAttempt",
]
