# src/parley/models/profile.py
"""Minimal profile rows used for peer display identity."""

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from parley.db.session import Base


class Profile(Base):
    """Display identity of a user (name, handle, avatar)."""

    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    full_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    handle: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    avatar_url: Mapped[str | None] = mapped_column(Text, nullable=True)
