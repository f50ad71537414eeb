"""Member identity model and its lifecycle transitions."""

import enum
from datetime import datetime, timedelta

from sqlalchemy import Boolean, Enum, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from authcore.models.base import Base, TimestampMixin, UTCDateTime, utcnow
from authcore.services.errors import NicknameChangeError

DEFAULT_MAX_NICKNAME_CHANGES = 3
DEFAULT_NICKNAME_COOLDOWN = timedelta(days=30)


class AuthProvider(str, enum.Enum):
    """External identity providers a member can sign in with."""

    KAKAO = "KAKAO"
    GOOGLE = "GOOGLE"


class Member(TimestampMixin, Base):
    """A member identity.

    One email maps to exactly one provider identity. State changes go
    through the transition methods below; each applies a single mutation
    and can be tested without a database. ``version`` is the optimistic
    concurrency counter checked by SQLAlchemy on every UPDATE.
    """

    __tablename__ = "members"
    __table_args__ = (UniqueConstraint("provider", "provider_user_id", name="uq_member_provider_user"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[AuthProvider] = mapped_column(
        Enum(AuthProvider, name="auth_provider", native_enum=False, length=20),
        nullable=False,
        index=True,
    )
    provider_user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    nickname: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    user_number: Mapped[int | None] = mapped_column(Integer, nullable=True, unique=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="BASIC")

    login_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    visit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    nickname_change_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_nickname_change_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    withdrawn_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # Survives restore(); gates anonymised authorship of pre-withdrawal content
    last_withdrawn_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    marketing_agreed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    # --- Login ---

    def record_login(self) -> None:
        """Count a successful sign-in."""
        self.login_count = (self.login_count or 0) + 1
        self.visit_count = (self.visit_count or 0) + 1

    # --- Nickname quota ---

    def can_change_nickname(
        self,
        now: datetime | None = None,
        *,
        max_changes: int = DEFAULT_MAX_NICKNAME_CHANGES,
        cooldown: timedelta = DEFAULT_NICKNAME_COOLDOWN,
    ) -> bool:
        if (self.nickname_change_count or 0) >= max_changes:
            return False
        if self.last_nickname_change_at is None:
            return True
        now = now or utcnow()
        return now - self.last_nickname_change_at >= cooldown

    def next_nickname_change_at(
        self, cooldown: timedelta = DEFAULT_NICKNAME_COOLDOWN
    ) -> datetime | None:
        """When the cooldown ends, or None if the nickname was never changed."""
        if self.last_nickname_change_at is None:
            return None
        return self.last_nickname_change_at + cooldown

    def apply_nickname_change(
        self,
        new_nickname: str,
        now: datetime | None = None,
        *,
        max_changes: int = DEFAULT_MAX_NICKNAME_CHANGES,
        cooldown: timedelta = DEFAULT_NICKNAME_COOLDOWN,
    ) -> None:
        """Set a new nickname, consuming one change from the quota.

        Raises:
            NicknameChangeError: quota exhausted or still inside the cooldown.
        """
        now = now or utcnow()
        if (self.nickname_change_count or 0) >= max_changes:
            raise NicknameChangeError.reached_max_count(max_changes)
        if not self.can_change_nickname(now, max_changes=max_changes, cooldown=cooldown):
            raise NicknameChangeError.too_soon(
                self.next_nickname_change_at(cooldown), cooldown.days
            )

        self.nickname = new_nickname
        self.nickname_change_count = (self.nickname_change_count or 0) + 1
        self.last_nickname_change_at = now

    # --- Withdrawal ---

    def soft_delete(self, now: datetime | None = None) -> None:
        self.is_deleted = True
        self.withdrawn_at = now or utcnow()
        self.last_withdrawn_at = self.withdrawn_at

    def restore(self) -> None:
        """Reactivate the member; ``last_withdrawn_at`` is kept."""
        self.is_deleted = False
        self.withdrawn_at = None

    def is_rejoin_blocked(self, hold: timedelta, now: datetime | None = None) -> bool:
        if not self.is_deleted:
            return False
        if self.withdrawn_at is None:
            # Unknown withdrawal time: block
            return True
        now = now or utcnow()
        return now < self.withdrawn_at + hold

    def rejoin_available_at(self, hold: timedelta) -> datetime | None:
        if self.withdrawn_at is None:
            return None
        return self.withdrawn_at + hold

    def __repr__(self) -> str:
        return f"<Member {self.id} {self.provider.value if self.provider else '?'}:{self.email}>"
