"""Refresh token records - one live session per member."""

from datetime import datetime

from sqlalchemy import ForeignKey, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from authcore.models.base import Base, TimestampMixin, UTCDateTime, utcnow


class RefreshToken(TimestampMixin, Base):
    """The single active refresh token for a member.

    ``member_id`` is unique: issuing a new refresh token replaces the old
    row instead of adding a second session.
    """

    __tablename__ = "refresh_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    member_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("members.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    token: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    refresh_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) > self.expires_at

    def is_valid(self, now: datetime | None = None) -> bool:
        return bool(self.token and self.token.strip()) and not self.is_expired(now)

    def record_usage(self, now: datetime | None = None) -> None:
        self.last_used_at = now or utcnow()
        self.refresh_count = (self.refresh_count or 0) + 1

    def __repr__(self) -> str:
        return f"<RefreshToken member_id={self.member_id} expires_at={self.expires_at}>"
