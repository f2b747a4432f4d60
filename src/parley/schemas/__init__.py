# src/parley/schemas/__init__.py
"""
Pydantic records for messages, reactions, conversations and peers.

Rows coming from the SQL store, the REST store and the change channel all
validate through these models.
"""

from .messaging import ConversationSummary, Message, PeerProfile, Reaction

__all__ = ["ConversationSummary", "Message", "PeerProfile", "Reaction"]
