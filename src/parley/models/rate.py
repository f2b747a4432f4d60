# models/rate.py
from datetime import datetime

from sqlalchemy import DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from parley.db.session import Base
from parley.db.time import utcnow


class RateLimitAttempt(Base):
    __tablename__ = "rate_limit_attempts"
    __table_args__ = (Index("ix_rate_limit_user_action_at", "user_id", "action_type", "attempted_at"),)

    # One row per counted attempt; the window count is derived at check time.
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action_type: Mapped[str] = mapped_column(String(32), nullable=False)
    attempted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
