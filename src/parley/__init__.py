# src/parley/__init__.py
"""Real-time direct messaging state and synchronization."""

from parley.services.session import MessagingSession

__all__ = ["MessagingSession"]
__version__ = "0.1.0"
