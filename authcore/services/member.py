"""Member service - identity resolution and lifecycle operations."""

import logging
import random
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from authcore.core.config import Settings, settings
from authcore.models.base import utcnow
from authcore.models.member import AuthProvider, Member
from authcore.schemas.auth import NicknameChangeInfo
from authcore.services.errors import (
    ConcurrentUpdateError,
    IdentityConflictError,
    MemberNotFoundError,
    MemberStateError,
    NicknameChangeError,
    NicknameTakenError,
    NicknameValidationError,
    ProviderIdentityInUseError,
    WithdrawnMemberError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_NICKNAME_COLOURS = ("붉은", "푸른", "녹색", "진홍", "금빛", "은빛", "하얀", "검은")
_NICKNAME_THINGS = (
    "태양", "달", "별", "번개", "오로라", "불꽃", "용암", "유성", "수정",
    "이슬", "눈송이", "빙하", "모래알", "물방울", "혜성", "노을", "빗줄기", "서리",
)


def generate_nickname(user_number: int, rng: random.Random | None = None) -> str:
    """Default nickname for a new member, unique through ``user_number``."""
    rng = rng or random
    return f"빛나는 {rng.choice(_NICKNAME_COLOURS)} {rng.choice(_NICKNAME_THINGS)}의 핀 {user_number}"


class MemberService:
    """Resolve, create and mutate members.

    Every mutation commits on its own and is retried when SQLAlchemy's
    version check reports a concurrent update.
    """

    def __init__(
        self,
        db: AsyncSession,
        config: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.db = db
        self.config = config or settings
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    @property
    def rejoin_hold(self) -> timedelta:
        return timedelta(days=self.config.rejoin_hold_days)

    @property
    def nickname_cooldown(self) -> timedelta:
        return timedelta(days=self.config.nickname_change_cooldown_days)

    # --- Lookup ---

    async def get(self, member_id: int) -> Member | None:
        # populate_existing: rows must be re-read after a rolled-back attempt
        return await self.db.get(Member, member_id, populate_existing=True)

    async def get_or_raise(self, member_id: int) -> Member:
        member = await self.get(member_id)
        if member is None:
            raise MemberNotFoundError(f"Member {member_id} does not exist")
        return member

    async def find_by_email(self, email: str) -> Member | None:
        result = await self.db.execute(
            select(Member).where(Member.email == email).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_by_provider_identity(
        self, provider: AuthProvider, provider_user_id: str
    ) -> Member | None:
        result = await self.db.execute(
            select(Member)
            .where(Member.provider == provider, Member.provider_user_id == provider_user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    # --- Optimistic retry ---

    async def _with_retry(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        attempts = self.config.optimistic_retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                return await func()
            except (StaleDataError, IntegrityError) as e:
                await self.db.rollback()
                logger.warning(f"{operation} conflicted (attempt {attempt}/{attempts}): {e}")
        raise ConcurrentUpdateError(f"{operation} kept conflicting after {attempts} attempts")

    async def _mutate(self, member_id: int, operation: str, apply: Callable[[Member], None]) -> Member:
        async def attempt() -> Member:
            member = await self.get_or_raise(member_id)
            apply(member)
            await self.db.commit()
            return member

        return await self._with_retry(operation, attempt)

    # --- Login ---

    async def resolve_or_create(
        self,
        email: str,
        provider_user_id: str,
        provider: AuthProvider,
    ) -> Member:
        """Find the member for a provider login, or register a new one.

        Raises:
            WithdrawnMemberError: the email belongs to a withdrawn member
                still inside the rejoin hold.
            IdentityConflictError: the email is registered with another
                provider identity. Nothing is modified.
            ProviderIdentityInUseError: the provider identity is registered
                under a different email.
        """
        return await self._with_retry(
            "resolve_or_create",
            lambda: self._resolve_or_create_once(email, provider_user_id, provider),
        )

    async def _resolve_or_create_once(
        self,
        email: str,
        provider_user_id: str,
        provider: AuthProvider,
    ) -> Member:
        now = self._now()
        existing = await self.find_by_email(email)

        if existing is not None:
            same_identity = (
                existing.provider == provider and existing.provider_user_id == provider_user_id
            )

            if existing.is_deleted:
                if existing.is_rejoin_blocked(self.rejoin_hold, now):
                    logger.info(f"Rejoin blocked for withdrawn member {existing.id}")
                    raise WithdrawnMemberError(existing.rejoin_available_at(self.rejoin_hold))
                if not same_identity:
                    self._log_conflict(existing, provider)
                    raise IdentityConflictError(email, existing.provider.value, provider.value)

                existing.restore()
                existing.record_login()
                await self.db.commit()
                logger.info(f"Restored withdrawn member {existing.id} on login")
                return existing

            if same_identity:
                existing.record_login()
                await self.db.commit()
                logger.info(f"Member {existing.id} logged in (login_count={existing.login_count})")
                return existing

            self._log_conflict(existing, provider)
            raise IdentityConflictError(email, existing.provider.value, provider.value)

        linked = await self.find_by_provider_identity(provider, provider_user_id)
        if linked is not None:
            logger.warning(
                f"{provider.value} identity of member {linked.id} now reports a different email; login rejected"
            )
            raise ProviderIdentityInUseError(provider.value, linked.id)

        result = await self.db.execute(select(func.max(Member.user_number)))
        user_number = (result.scalar() or 0) + 1
        member = Member(
            provider=provider,
            provider_user_id=provider_user_id,
            email=email,
            nickname=generate_nickname(user_number),
            user_number=user_number,
            role="BASIC",
            login_count=1,
            visit_count=1,
            is_deleted=False,
        )
        self.db.add(member)
        await self.db.commit()
        logger.info(f"Registered member {member.id} (user_number={user_number}, provider={provider.value})")
        return member

    @staticmethod
    def _log_conflict(existing: Member, attempted: AuthProvider) -> None:
        logger.warning(
            f"Email of member {existing.id} is registered with {existing.provider.value}; "
            f"{attempted.value} login rejected"
        )

    # --- Nickname ---

    async def validate_nickname(self, nickname: str, member_id: int) -> None:
        """Length, banned words and uniqueness among other members.

        Raises:
            NicknameValidationError: length or content rules failed.
            NicknameTakenError: another member uses the nickname.
        """
        nickname = nickname.strip() if nickname else ""
        low, high = self.config.nickname_min_length, self.config.nickname_max_length
        if not low <= len(nickname) <= high:
            raise NicknameValidationError(f"Nickname must be {low} to {high} characters")

        lowered = nickname.lower()
        if any(word.lower() in lowered for word in self.config.nickname_banned_words if word):
            raise NicknameValidationError("Nickname contains a banned word")

        result = await self.db.execute(
            select(Member.id).where(Member.nickname == nickname, Member.id != member_id).limit(1)
        )
        if result.scalar_one_or_none() is not None:
            raise NicknameTakenError("Nickname is already in use")

    async def update_nickname(self, member_id: int, new_nickname: str) -> Member:
        """Change a nickname within the quota and cooldown.

        Raises:
            NicknameChangeError: quota exhausted or cooldown still running.
            NicknameValidationError, NicknameTakenError: invalid nickname.
            ConcurrentUpdateError: version conflicts persisted.
        """
        max_changes = self.config.max_nickname_changes
        cooldown = self.nickname_cooldown
        new_nickname = new_nickname.strip() if new_nickname else ""

        async def attempt() -> Member:
            now = self._now()
            member = await self.get_or_raise(member_id)
            if (member.nickname_change_count or 0) >= max_changes:
                raise NicknameChangeError.reached_max_count(max_changes)
            if not member.can_change_nickname(now, max_changes=max_changes, cooldown=cooldown):
                raise NicknameChangeError.too_soon(
                    member.next_nickname_change_at(cooldown), cooldown.days
                )

            await self.validate_nickname(new_nickname, member_id)

            old = member.nickname
            member.apply_nickname_change(new_nickname, now, max_changes=max_changes, cooldown=cooldown)
            await self.db.commit()
            logger.info(
                f"Member {member_id} nickname changed {old!r} -> {new_nickname!r} "
                f"({member.nickname_change_count}/{max_changes})"
            )
            return member

        return await self._with_retry("update_nickname", attempt)

    async def get_nickname_change_info(self, member_id: int) -> NicknameChangeInfo:
        member = await self.get_or_raise(member_id)
        cooldown = self.nickname_cooldown
        return NicknameChangeInfo(
            can_change=member.can_change_nickname(
                self._now(), max_changes=self.config.max_nickname_changes, cooldown=cooldown
            ),
            change_count=member.nickname_change_count or 0,
            max_change_count=self.config.max_nickname_changes,
            last_change_at=member.last_nickname_change_at,
            next_available_at=member.next_nickname_change_at(cooldown),
        )

    # --- Withdrawal ---

    async def withdraw(self, member_id: int) -> Member:
        """Soft-delete a member.

        Raises:
            MemberStateError: already withdrawn.
        """

        def apply(member: Member) -> None:
            if member.is_deleted:
                raise MemberStateError(f"Member {member_id} is already withdrawn")
            member.soft_delete(self._now())

        member = await self._mutate(member_id, "withdraw", apply)
        logger.info(f"Member {member_id} withdrawn")
        return member

    async def restore(self, member_id: int) -> Member:
        """Reactivate a withdrawn member.

        Raises:
            MemberStateError: member is already active.
        """

        def apply(member: Member) -> None:
            if not member.is_deleted:
                raise MemberStateError(f"Member {member_id} is already active")
            member.restore()

        member = await self._mutate(member_id, "restore", apply)
        logger.info(f"Member {member_id} restored")
        return member

    # --- Preferences ---

    async def update_marketing_agreement(self, member_id: int, agreed: bool) -> Member:
        def apply(member: Member) -> None:
            if member.marketing_agreed != agreed:
                logger.info(
                    f"Member {member_id} marketing agreement {member.marketing_agreed} -> {agreed}"
                )
            member.marketing_agreed = agreed

        return await self._mutate(member_id, "update_marketing_agreement", apply)

    # --- Counts ---

    async def count_total(self) -> int:
        result = await self.db.execute(select(func.count(Member.id)))
        return result.scalar() or 0

    async def count_active(self) -> int:
        result = await self.db.execute(
            select(func.count(Member.id)).where(Member.is_deleted.is_(False))
        )
        return result.scalar() or 0

    async def count_withdrawn(self) -> int:
        result = await self.db.execute(
            select(func.count(Member.id)).where(Member.is_deleted.is_(True))
        )
        return result.scalar() or 0
