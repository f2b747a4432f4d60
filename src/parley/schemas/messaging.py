# src/parley/schemas/messaging.py
"""Messaging-related Pydantic schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from parley.db.time import ensure_aware

ATTACHMENT_PREVIEW = "Attachment"


class Reaction(BaseModel):
    """Emoji reaction held by one user on one message."""

    message_id: str
    user_id: str
    emoji: str
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True, extra="ignore")

    @field_validator("created_at")
    @classmethod
    def _aware_created_at(cls, value: datetime | None) -> datetime | None:
        return ensure_aware(value) if value is not None else None


class Message(BaseModel):
    """Direct message row as seen by a participant."""

    id: str
    sender_id: str
    recipient_id: str
    content: str = ""
    media_url: str | None = None
    is_read: bool = False
    read_at: datetime | None = None
    created_at: datetime
    updated_at: datetime | None = None
    reactions: list[Reaction] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True, extra="ignore")

    @field_validator("id", "sender_id", "recipient_id", mode="before")
    @classmethod
    def _stringify_ids(cls, value: object) -> object:
        return str(value) if value is not None else value

    @field_validator("created_at", "read_at", "updated_at")
    @classmethod
    def _aware_timestamps(cls, value: datetime | None) -> datetime | None:
        return ensure_aware(value) if value is not None else None

    @field_validator("reactions", mode="before")
    @classmethod
    def _default_reactions(cls, value: object) -> object:
        return [] if value is None else value

    def involves(self, user_id: str) -> bool:
        """Return True if ``user_id`` is the sender or the recipient."""
        return user_id in (self.sender_id, self.recipient_id)

    def peer_of(self, user_id: str) -> str:
        """Return the other participant; a self-message's peer is the user."""
        return self.recipient_id if self.sender_id == user_id else self.sender_id

    def is_unread_for(self, user_id: str) -> bool:
        """Return True if the message counts as unread for ``user_id``."""
        return self.recipient_id == user_id and self.sender_id != user_id and not self.is_read

    @property
    def preview(self) -> str:
        """Text shown as the conversation's last-message preview."""
        if self.content:
            return self.content
        return ATTACHMENT_PREVIEW if self.media_url else ""


class PeerProfile(BaseModel):
    """Display identity of a user as provided by the profile collaborator."""

    id: str
    full_name: str | None = None
    handle: str | None = None
    avatar_url: str | None = None

    model_config = ConfigDict(from_attributes=True, extra="ignore")


class ConversationSummary(BaseModel):
    """One entry of the conversation directory.

    ``conversation_id`` equals ``peer_id`` for conversations with history and
    carries a temporary identifier for placeholders created before the first
    message.
    """

    conversation_id: str
    peer_id: str
    peer_name: str | None = None
    peer_avatar: str | None = None
    preview: str | None = None
    last_at: datetime | None = None
    unread_count: int = Field(default=0, ge=0)
    is_placeholder: bool = False

    model_config = ConfigDict(from_attributes=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _default_conversation_id(cls, data: object) -> object:
        if isinstance(data, dict) and not data.get("conversation_id"):
            return {**data, "conversation_id": data.get("peer_id")}
        return data

    @field_validator("peer_id", "conversation_id", mode="before")
    @classmethod
    def _stringify_ids(cls, value: object) -> object:
        return str(value) if value is not None else value

    @field_validator("last_at")
    @classmethod
    def _aware_last_at(cls, value: datetime | None) -> datetime | None:
        return ensure_aware(value) if value is not None else None

    @field_validator("unread_count", mode="before")
    @classmethod
    def _clamp_unread(cls, value: object) -> object:
        if isinstance(value, int) and value < 0:
            return 0
        return value
