"""Revocation registry - blacklisted access tokens.

Lookups hit the primary key (SHA-256 of the token), so ``is_revoked`` is
a single indexed read on every authenticated request.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from authcore.core.config import settings
from authcore.core.logging import token_preview
from authcore.models.base import utcnow
from authcore.models.token_blacklist import TokenBlacklist, hash_token
from authcore.services.auth import TokenError, TokenIssuer

logger = logging.getLogger(__name__)

DEFAULT_REASON = "LOGOUT"


class TokenBlacklistService:
    """Blacklist writes, lookups and compaction."""

    def __init__(
        self,
        db: AsyncSession,
        issuer: TokenIssuer | None = None,
        grace: timedelta | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.db = db
        self._clock = clock or utcnow
        self.issuer = issuer or TokenIssuer(clock=clock)
        self.grace = grace if grace is not None else timedelta(days=settings.blacklist_grace_days)

    def _now(self) -> datetime:
        return self._clock()

    async def revoke(
        self,
        token: str,
        reason: str = DEFAULT_REASON,
        member_id: int | None = None,
    ) -> bool:
        """Blacklist a token until its own expiry.

        Only tokens that decode (valid signature, not expired) are accepted.
        Revoking the same token twice leaves a single entry.
        """
        try:
            claims = self.issuer.decode(token)
        except TokenError as e:
            logger.info(f"Refusing to blacklist undecodable token {token_preview(token)}: {e}")
            return False

        token_hash = hash_token(token)
        if await self.db.get(TokenBlacklist, token_hash) is not None:
            logger.debug(f"Token {token_preview(token)} already blacklisted")
            return True

        self.db.add(
            TokenBlacklist(
                token_hash=token_hash,
                blacklisted_at=self._now(),
                expires_at=claims.expires_at,
                reason=reason,
                member_id=member_id if member_id is not None else claims.member_id,
            )
        )
        try:
            await self.db.commit()
        except IntegrityError:
            # Concurrent revoke of the same token already wrote the row
            await self.db.rollback()
            logger.debug(f"Token {token_preview(token)} blacklisted concurrently")
            return True

        logger.info(f"Blacklisted token {token_preview(token)} (reason={reason})")
        return True

    async def is_revoked(self, token: str) -> bool:
        if not token:
            return False
        return await self.db.get(TokenBlacklist, hash_token(token)) is not None

    async def compact(self, now: datetime | None = None) -> int:
        """Delete entries whose token expired and whose grace period elapsed.

        Returns the number of rows removed.
        """
        now = now or self._now()
        result = await self.db.execute(
            delete(TokenBlacklist).where(
                TokenBlacklist.expires_at < now,
                TokenBlacklist.blacklisted_at < now - self.grace,
            )
        )
        await self.db.commit()
        deleted = result.rowcount or 0
        if deleted:
            logger.info(f"Compacted {deleted} blacklist entries")
        return deleted

    async def find_by_member_id(self, member_id: int) -> list[TokenBlacklist]:
        result = await self.db.execute(
            select(TokenBlacklist)
            .where(TokenBlacklist.member_id == member_id)
            .order_by(TokenBlacklist.blacklisted_at.desc())
        )
        return list(result.scalars().all())

    async def count_total(self) -> int:
        result = await self.db.execute(select(func.count()).select_from(TokenBlacklist))
        return result.scalar() or 0

    async def count_active(self) -> int:
        """Entries whose token has not expired yet."""
        result = await self.db.execute(
            select(func.count()).select_from(TokenBlacklist).where(
                TokenBlacklist.expires_at >= self._now()
            )
        )
        return result.scalar() or 0

    async def count_expired(self) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(TokenBlacklist).where(
                TokenBlacklist.expires_at < self._now()
            )
        )
        return result.scalar() or 0
