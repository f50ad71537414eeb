"""Blacklisted JWT tokens - survives process restarts."""

import hashlib
from datetime import datetime, timedelta

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from authcore.models.base import Base, UTCDateTime, utcnow


def hash_token(token: str) -> str:
    """Content-addressed key for a token (SHA-256 hex)."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenBlacklist(Base):
    """A revoked access token identified by the hash of its full text.

    Entries are created on logout and never mutated. Compaction removes an
    entry once the token has expired and the grace period since
    blacklisting has elapsed.
    """

    __tablename__ = "token_blacklist"

    token_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    blacklisted_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    reason: Mapped[str | None] = mapped_column(String(100), nullable=True)
    member_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) > self.expires_at

    def can_be_deleted(self, grace: timedelta, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return self.is_expired(now) and now > self.blacklisted_at + grace

    def __repr__(self) -> str:
        return f"<TokenBlacklist {self.token_hash[:12]} reason={self.reason}>"
