"""Refresh token store - at most one live refresh token per member."""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from authcore.core.logging import token_preview
from authcore.models.base import utcnow
from authcore.models.refresh_token import RefreshToken
from authcore.services.errors import RefreshTokenNotFoundError

logger = logging.getLogger(__name__)


class RefreshTokenService:
    """Persistence for refresh tokens."""

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] | None = None):
        self.db = db
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    async def save(
        self,
        member_id: int,
        token: str,
        expires_at: datetime,
        *,
        refresh_count: int = 0,
        last_used_at: datetime | None = None,
    ) -> RefreshToken:
        """Replace the member's refresh token.

        Delete and insert commit together. A concurrent login for the same
        member surfaces as an IntegrityError; it is rolled back and the save
        retried once so the member still ends with exactly one row.

        ``refresh_count`` and ``last_used_at`` carry usage across a rotation.
        """
        fields = {"refresh_count": refresh_count, "last_used_at": last_used_at}
        try:
            return await self._replace(member_id, token, expires_at, fields)
        except IntegrityError as e:
            await self.db.rollback()
            logger.warning(f"Refresh token save for member {member_id} collided, retrying: {e}")
            try:
                return await self._replace(member_id, token, expires_at, fields)
            except Exception:
                await self.db.rollback()
                raise
        except Exception:
            await self.db.rollback()
            raise

    async def _replace(
        self, member_id: int, token: str, expires_at: datetime, fields: dict
    ) -> RefreshToken:
        await self.db.execute(delete(RefreshToken).where(RefreshToken.member_id == member_id))
        record = RefreshToken(member_id=member_id, token=token, expires_at=expires_at, **fields)
        self.db.add(record)
        await self.db.commit()
        logger.debug(f"Saved refresh token {token_preview(token)} for member {member_id}")
        return record

    async def find_by_token(self, token: str) -> RefreshToken:
        """Live record for ``token``.

        Raises:
            RefreshTokenNotFoundError: no record, or the record has expired.
        """
        result = await self.db.execute(select(RefreshToken).where(RefreshToken.token == token))
        record = result.scalar_one_or_none()
        if record is None or record.is_expired(self._now()):
            raise RefreshTokenNotFoundError("Refresh token not found or expired")
        return record

    async def find_by_member_id(self, member_id: int) -> RefreshToken | None:
        result = await self.db.execute(
            select(RefreshToken).where(RefreshToken.member_id == member_id)
        )
        return result.scalar_one_or_none()

    async def find_valid_by_member_id(self, member_id: int) -> RefreshToken | None:
        record = await self.find_by_member_id(member_id)
        if record is None or not record.is_valid(self._now()):
            return None
        return record

    async def delete_by_member_id(self, member_id: int) -> int:
        result = await self.db.execute(
            delete(RefreshToken).where(RefreshToken.member_id == member_id)
        )
        await self.db.commit()
        return result.rowcount or 0

    async def delete_by_token(self, token: str) -> int:
        result = await self.db.execute(delete(RefreshToken).where(RefreshToken.token == token))
        await self.db.commit()
        return result.rowcount or 0

    async def record_usage(self, member_id: int) -> bool:
        """Bump ``refresh_count`` and ``last_used_at`` on the member's record."""
        record = await self.find_by_member_id(member_id)
        if record is None:
            return False
        record.record_usage(self._now())
        await self.db.commit()
        return True

    async def delete_expired(self) -> int:
        """Remove every expired record. Returns the number deleted."""
        result = await self.db.execute(
            delete(RefreshToken).where(RefreshToken.expires_at < self._now())
        )
        await self.db.commit()
        deleted = result.rowcount or 0
        if deleted:
            logger.info(f"Deleted {deleted} expired refresh tokens")
        return deleted

    async def count_expiring_soon(self, window: timedelta) -> int:
        """Live records that expire within ``window``."""
        now = self._now()
        result = await self.db.execute(
            select(func.count(RefreshToken.id)).where(
                RefreshToken.expires_at >= now,
                RefreshToken.expires_at < now + window,
            )
        )
        return result.scalar() or 0
