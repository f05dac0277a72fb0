"""SQLAlchemy model for submitted ban appeals."""

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from appeal_guard.db.session import Base
from appeal_guard.db.time import utcnow


class Appeal(Base):
    """An appeal against a community access denial."""

    __tablename__ = "appeal"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Discord snowflake, 17-19 digits.
    user_id: Mapped[str] = mapped_column(String(19), nullable=False, index=True)
    denial_date: Mapped[str] = mapped_column(String(64), nullable=False)
    appeal_reason: Mapped[str] = mapped_column(Text, nullable=False)
    client_ip: Mapped[str] = mapped_column(String(64), nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
