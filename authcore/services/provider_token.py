"""Provider token bridge - stored upstream credentials for one provider.

Holds the encrypted access/refresh tokens a provider issued to a member,
refreshes them on demand and revokes them on unlink. Provider failures
come back as typed results; they never stop the local operation.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from authcore.core.config import Settings, settings
from authcore.models.base import utcnow
from authcore.models.member import AuthProvider
from authcore.models.provider_token import ProviderToken
from authcore.services.crypto import CryptoError, decrypt_from_base64, encrypt_to_base64
from authcore.services.oauth_client import (
    ProviderOAuthClient,
    ProviderResult,
    ProviderUnavailable,
    RevokeReport,
    build_oauth_client,
)

logger = logging.getLogger(__name__)

ACCESS_FIELD = "access_token"
REFRESH_FIELD = "refresh_token"


class ProviderTokenState(str, Enum):
    NO_RECORD = "NO_RECORD"
    ACCESS_VALID = "ACCESS_VALID"
    ACCESS_EXPIRED_REFRESH_VALID = "ACCESS_EXPIRED_REFRESH_VALID"
    ACCESS_EXPIRED_REFRESH_INVALID = "ACCESS_EXPIRED_REFRESH_INVALID"


def token_aad(provider: AuthProvider, member_id: int, field: str) -> str:
    """AAD binding a ciphertext to its provider, member and column."""
    return f"provider_token:{provider.value}:{member_id}:{field}"


class ProviderTokenBridge:
    """Stored tokens for one provider plus the client that talks to it."""

    def __init__(
        self,
        provider: AuthProvider,
        client: ProviderOAuthClient,
        db: AsyncSession,
        clock: Callable[[], datetime] | None = None,
    ):
        self.provider = provider
        self.client = client
        self.db = db
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def _encrypt(self, member_id: int, field: str, value: str) -> str:
        return encrypt_to_base64(value, aad=token_aad(self.provider, member_id, field))

    def _decrypt(self, record: ProviderToken, field: str, encrypted: str | None) -> str | None:
        if not encrypted:
            return None
        try:
            return decrypt_from_base64(
                encrypted, aad=token_aad(self.provider, record.member_id, field)
            )
        except CryptoError as e:
            logger.error(
                f"Could not decrypt {self.provider.value} {field} for member {record.member_id}: {e}"
            )
            return None

    # --- Persistence ---

    async def save_tokens(
        self,
        member_id: int,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
        refresh_expires_at: datetime | None = None,
    ) -> ProviderToken:
        """Insert or update the member's tokens for this provider.

        A blank or missing refresh token keeps the stored one; providers
        often omit it from refresh responses.
        """
        record = await self.find_by_member_id(member_id)
        if record is None:
            record = ProviderToken(member_id=member_id, provider=self.provider)
            self.db.add(record)

        record.encrypted_access_token = self._encrypt(member_id, ACCESS_FIELD, access_token)
        record.expires_at = expires_at
        if refresh_token and refresh_token.strip():
            record.encrypted_refresh_token = self._encrypt(member_id, REFRESH_FIELD, refresh_token)
            record.refresh_token_expires_at = refresh_expires_at

        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        logger.debug(f"Saved {self.provider.value} tokens for member {member_id}")
        return record

    async def find_by_member_id(self, member_id: int) -> ProviderToken | None:
        result = await self.db.execute(
            select(ProviderToken).where(
                ProviderToken.member_id == member_id,
                ProviderToken.provider == self.provider,
            )
        )
        return result.scalar_one_or_none()

    async def find_valid_by_member_id(self, member_id: int) -> ProviderToken | None:
        """The record if either token is still usable.

        An expired access token with a live refresh token still counts:
        unlink needs the refresh token to reach the provider.
        """
        record = await self.find_by_member_id(member_id)
        if record is None:
            return None
        if self.state(record) == ProviderTokenState.ACCESS_EXPIRED_REFRESH_INVALID:
            return None
        return record

    def get_access_token(self, record: ProviderToken) -> str | None:
        return self._decrypt(record, ACCESS_FIELD, record.encrypted_access_token)

    def get_refresh_token(self, record: ProviderToken) -> str | None:
        return self._decrypt(record, REFRESH_FIELD, record.encrypted_refresh_token)

    # --- State ---

    def is_expired(self, record: ProviderToken, now: datetime | None = None) -> bool:
        """Whether the access token has expired.

        A record without an expiry is treated as not expired.
        """
        if record.expires_at is None:
            return False
        return (now or self._now()) > record.expires_at

    def has_usable_refresh_token(self, record: ProviderToken, now: datetime | None = None) -> bool:
        if not record.encrypted_refresh_token:
            return False
        if record.refresh_token_expires_at is None:
            return True
        return (now or self._now()) <= record.refresh_token_expires_at

    def needs_refresh(
        self,
        record: ProviderToken,
        window: timedelta | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Whether the access token expires within ``window``."""
        if record.expires_at is None:
            return False
        if window is None:
            window = timedelta(seconds=settings.provider_refresh_lookahead_seconds)
        return record.expires_at <= (now or self._now()) + window

    def state(self, record: ProviderToken | None, now: datetime | None = None) -> ProviderTokenState:
        if record is None:
            return ProviderTokenState.NO_RECORD
        now = now or self._now()
        if record.encrypted_access_token and not self.is_expired(record, now):
            return ProviderTokenState.ACCESS_VALID
        if self.has_usable_refresh_token(record, now):
            return ProviderTokenState.ACCESS_EXPIRED_REFRESH_VALID
        return ProviderTokenState.ACCESS_EXPIRED_REFRESH_INVALID

    # --- Provider operations ---

    async def refresh_access_token(self, member_id: int) -> ProviderResult[ProviderToken]:
        """Mint a new provider access token from the stored refresh token."""
        record = await self.find_by_member_id(member_id)
        refresh_token = self.get_refresh_token(record) if record else None
        if not refresh_token:
            logger.info(f"No {self.provider.value} refresh token stored for member {member_id}")
            return ProviderResult.unavailable(
                ProviderUnavailable(
                    provider=self.provider,
                    operation="refresh_access_token",
                    detail="no refresh token stored",
                )
            )

        result = await self.client.refresh_access_token(refresh_token)
        if not result.ok:
            return ProviderResult.unavailable(result.failure)

        tokens = result.value
        now = self._now()
        record = await self.save_tokens(
            member_id,
            tokens.access_token,
            tokens.refresh_token,
            tokens.expires_at(now),
            tokens.refresh_expires_at(now),
        )
        logger.info(f"Refreshed {self.provider.value} access token for member {member_id}")
        return ProviderResult.success(record)

    async def invalidate_access_token(self, member_id: int) -> bool:
        """Clear the access token in place and mark it expired now."""
        record = await self.find_by_member_id(member_id)
        if record is None:
            return False
        record.encrypted_access_token = None
        record.expires_at = self._now()
        await self.db.commit()
        return True

    async def delete_by_member_id(self, member_id: int) -> int:
        result = await self.db.execute(
            delete(ProviderToken).where(
                ProviderToken.member_id == member_id,
                ProviderToken.provider == self.provider,
            )
        )
        await self.db.commit()
        return result.rowcount or 0

    async def unlink(self, member_id: int) -> RevokeReport:
        """Smart-revoke the stored tokens, then drop the local record.

        The local record is deleted whatever the provider answers.
        """
        record = await self.find_by_member_id(member_id)
        access_token = None
        refresh_token = None
        if record is not None:
            now = self._now()
            if not self.is_expired(record, now):
                access_token = self.get_access_token(record)
            if self.has_usable_refresh_token(record, now):
                refresh_token = self.get_refresh_token(record)

        report = await self.client.smart_revoke_token(access_token, refresh_token)
        if not report.revoked:
            logger.warning(
                f"{self.provider.value} tokens for member {member_id} could not be revoked upstream; "
                "removing local record anyway"
            )

        if record is not None:
            await self.delete_by_member_id(member_id)
        return report

    # --- Sweep queries ---

    async def find_expiring(self, within: timedelta) -> list[ProviderToken]:
        """Records with a refresh token whose access token expires within ``within``."""
        threshold = self._now() + within
        result = await self.db.execute(
            select(ProviderToken).where(
                ProviderToken.provider == self.provider,
                ProviderToken.encrypted_refresh_token.isnot(None),
                ProviderToken.expires_at.isnot(None),
                ProviderToken.expires_at < threshold,
            )
        )
        return list(result.scalars().all())

    async def find_expired_unrefreshable(self) -> list[ProviderToken]:
        """Records whose access token expired and that cannot be refreshed."""
        now = self._now()
        result = await self.db.execute(
            select(ProviderToken).where(
                ProviderToken.provider == self.provider,
                ProviderToken.expires_at.isnot(None),
                ProviderToken.expires_at < now,
                or_(
                    ProviderToken.encrypted_refresh_token.is_(None),
                    ProviderToken.refresh_token_expires_at < now,
                ),
            )
        )
        return list(result.scalars().all())


def get_provider_bridge(
    provider: AuthProvider,
    db: AsyncSession,
    config: Settings | None = None,
    clock: Callable[[], datetime] | None = None,
) -> ProviderTokenBridge:
    """Bridge for ``provider`` using a client built from settings."""
    return ProviderTokenBridge(provider, build_oauth_client(provider, config), db, clock=clock)
