"""Tokens issued to us by external identity providers."""

from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from authcore.models.base import Base, TimestampMixin, UTCDateTime
from authcore.models.member import AuthProvider


class ProviderToken(TimestampMixin, Base):
    """A provider's access/refresh token pair for one member.

    Token values are stored encrypted (AES-256-GCM, base64) and bound to
    provider, member and field through AAD. At most one row exists per
    (member, provider).
    """

    __tablename__ = "provider_tokens"
    __table_args__ = (UniqueConstraint("member_id", "provider", name="uq_provider_token_member"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    member_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("members.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider: Mapped[AuthProvider] = mapped_column(
        Enum(AuthProvider, name="auth_provider", native_enum=False, length=20),
        nullable=False,
    )
    encrypted_access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    encrypted_refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, index=True)
    refresh_token_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<ProviderToken {self.provider.value} member_id={self.member_id}>"
