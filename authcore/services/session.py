"""Auth session service - the interface other parts of the service use.

Ties identity resolution, token issuance, the refresh store, the
blacklist and the provider bridges together into login, authenticate,
refresh, logout and withdrawal flows.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from authcore.core.config import Settings, settings
from authcore.core.retry import RetryConfig, run_best_effort
from authcore.models.base import utcnow
from authcore.models.member import AuthProvider, Member
from authcore.schemas.auth import AuthResponse
from authcore.services.auth import (
    REFRESH_TOKEN,
    TokenClaims,
    TokenIssuer,
    TokenPair,
    TokenRevokedError,
    WrongTokenTypeError,
)
from authcore.services.errors import MemberStateError, RefreshTokenNotFoundError
from authcore.services.member import MemberService
from authcore.services.oauth_client import RevokeReport
from authcore.services.provider_token import ProviderTokenBridge, get_provider_bridge
from authcore.services.refresh_token import RefreshTokenService
from authcore.services.token_blacklist import TokenBlacklistService
from authcore.services.webhook_alerting import alert_persistence_failure, alert_unlink_failure

logger = logging.getLogger(__name__)

# Side writes during login retry quickly; the user is waiting
SIDE_WRITE_RETRY = RetryConfig(max_retries=3, base_delay=0.2, max_delay=2.0)


@dataclass
class LogoutResult:
    """What ``revoke_session`` managed to do."""

    blacklisted: bool = False
    refresh_tokens_deleted: int = 0
    provider_report: RevokeReport | None = None


class AuthSessionService:
    """Login, token and session operations for one database session."""

    def __init__(
        self,
        db: AsyncSession,
        config: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
        issuer: TokenIssuer | None = None,
        bridges: dict[AuthProvider, ProviderTokenBridge] | None = None,
        retry_config: RetryConfig | None = None,
    ):
        self.db = db
        self.config = config or settings
        self._clock = clock or utcnow
        self.issuer = issuer or TokenIssuer(self.config, clock=clock)
        self.members = MemberService(db, self.config, clock=clock)
        self.refresh_tokens = RefreshTokenService(db, clock=clock)
        self.blacklist = TokenBlacklistService(db, issuer=self.issuer, clock=clock)
        self._bridges: dict[AuthProvider, ProviderTokenBridge] = dict(bridges or {})
        self.retry_config = retry_config or SIDE_WRITE_RETRY

    def bridge(self, provider: AuthProvider) -> ProviderTokenBridge:
        if provider not in self._bridges:
            self._bridges[provider] = get_provider_bridge(
                provider, self.db, self.config, clock=self._clock
            )
        return self._bridges[provider]

    # --- Identity and issuance ---

    async def resolve_or_create_identity(
        self,
        email: str,
        provider_user_id: str,
        provider: AuthProvider,
    ) -> Member:
        return await self.members.resolve_or_create(email, provider_user_id, provider)

    async def issue_token_pair(self, member: Member) -> TokenPair:
        """Mint tokens and store the refresh token.

        Storing is best-effort: if it keeps failing the pair is still
        returned and operators are alerted.
        """
        member_id = member.id
        pair = self.issuer.issue_pair(member_id, member.role)
        stored = await run_best_effort(
            "refresh_token.save",
            self.refresh_tokens.save,
            member_id,
            pair.refresh_token,
            pair.refresh_expires_at,
            config=self.retry_config,
            on_failure=alert_persistence_failure,
        )
        if not stored:
            logger.error(f"Issued tokens for member {member_id} without a stored refresh token")
        return pair

    async def login_with_provider(self, provider: AuthProvider, code: str) -> AuthResponse:
        """Complete a provider login from its authorization code.

        Raises:
            ProviderLoginError: code exchange or user-info lookup failed.
            IdentityConflictError, WithdrawnMemberError: from identity resolution.
        """
        bridge = self.bridge(provider)
        provider_tokens = await bridge.client.exchange_code(code)
        user_info = await bridge.client.fetch_user_info(provider_tokens.access_token)

        member = await self.resolve_or_create_identity(
            user_info.email, user_info.provider_user_id, provider
        )
        # A failed side write rolls the session back and expires ``member``
        profile = {
            "member_id": member.id,
            "email": member.email,
            "nickname": member.nickname,
            "login_count": member.login_count,
        }
        pair = await self.issue_token_pair(member)

        now = self._clock()
        await run_best_effort(
            f"{provider.value.lower()}_token.save",
            bridge.save_tokens,
            profile["member_id"],
            provider_tokens.access_token,
            provider_tokens.refresh_token,
            provider_tokens.expires_at(now),
            provider_tokens.refresh_expires_at(now),
            config=self.retry_config,
            on_failure=alert_persistence_failure,
        )

        logger.info(f"{provider.value} login completed for member {profile['member_id']}")
        return AuthResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=int(self.issuer.access_validity.total_seconds()),
            **profile,
        )

    # --- Request path ---

    def validate(self, token: str) -> TokenClaims | None:
        """Access-token claims, or None for anything invalid. Never raises."""
        return self.issuer.validate(token)

    async def is_revoked(self, token: str) -> bool:
        return await self.blacklist.is_revoked(token)

    async def authenticate(self, access_token: str) -> TokenClaims:
        """Claims of a valid, unrevoked access token.

        Raises:
            TokenError: any subclass; callers deny on all of them.
        """
        claims = self.issuer.decode(access_token)
        if not claims.is_access:
            raise WrongTokenTypeError("Not an access token")
        if await self.blacklist.is_revoked(access_token):
            raise TokenRevokedError("Token has been revoked")
        return claims

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new pair, rotating the refresh token.

        Raises:
            TokenError: the refresh token does not decode or is not a refresh token.
            RefreshTokenNotFoundError: no stored record matches.
            MemberNotFoundError, MemberStateError: owner missing or withdrawn.
        """
        claims = self.issuer.decode(refresh_token)
        if claims.token_type != REFRESH_TOKEN:
            raise WrongTokenTypeError("Not a refresh token")

        record = await self.refresh_tokens.find_by_token(refresh_token)
        if record.member_id != claims.member_id:
            raise RefreshTokenNotFoundError("Refresh token does not belong to its subject")

        member = await self.members.get_or_raise(claims.member_id)
        if member.is_deleted:
            raise MemberStateError(f"Member {member.id} is withdrawn")

        pair = self.issuer.issue_pair(member.id, member.role)
        await self.refresh_tokens.save(
            member.id,
            pair.refresh_token,
            pair.refresh_expires_at,
            refresh_count=(record.refresh_count or 0) + 1,
            last_used_at=self._clock(),
        )
        logger.info(f"Rotated refresh token for member {member.id}")
        return pair

    # --- Logout and withdrawal ---

    async def revoke_session(
        self,
        access_token: str | None,
        member_id: int | None = None,
        *,
        refresh_token: str | None = None,
        revoke_provider: bool = True,
    ) -> LogoutResult:
        """Log out: blacklist the access token, drop the refresh record and
        revoke provider tokens.

        The member comes from ``member_id``, else a valid access token, else
        a valid refresh token. An invalid or expired access token is not
        blacklisted but the other steps still run. A refresh token that no
        longer decodes is deleted by value.

        With ``revoke_provider`` the provider tokens are smart-revoked. For
        Kakao this calls ``/v1/user/unlink``, which disconnects the app from
        the member's Kakao account; pass ``revoke_provider=False`` for a plain
        logout that keeps the link.
        """
        result = LogoutResult()
        if access_token:
            claims = self.validate(access_token)
            if claims is not None:
                result.blacklisted = await self.blacklist.revoke(
                    access_token, reason="LOGOUT", member_id=claims.member_id
                )
                member_id = member_id if member_id is not None else claims.member_id

        if member_id is None and refresh_token:
            refresh_claims = self.issuer.validate(refresh_token, expected=REFRESH_TOKEN)
            if refresh_claims is not None:
                member_id = refresh_claims.member_id
            else:
                result.refresh_tokens_deleted = await self.refresh_tokens.delete_by_token(refresh_token)

        if member_id is None:
            logger.info("Logout without an identifiable member; nothing else to revoke")
            return result

        result.refresh_tokens_deleted = await self.refresh_tokens.delete_by_member_id(member_id)

        if revoke_provider:
            member = await self.members.get(member_id)
            if member is not None:
                result.provider_report = await self.bridge(member.provider).unlink(member_id)

        logger.info(f"Session revoked for member {member_id}")
        return result

    async def request_nickname_change(self, member_id: int, nickname: str) -> Member:
        return await self.members.update_nickname(member_id, nickname)

    async def withdraw(self, member_id: int, access_token: str | None = None) -> RevokeReport:
        """Withdraw a member: unlink the provider, revoke the session, soft-delete.

        Provider failures are reported, never raised; the local withdrawal
        always completes.

        Raises:
            MemberNotFoundError: no such member.
            MemberStateError: already withdrawn.
        """
        member = await self.members.get_or_raise(member_id)
        if member.is_deleted:
            raise MemberStateError(f"Member {member_id} is already withdrawn")

        report = await self.bridge(member.provider).unlink(member_id)
        if report.attempted and not report.revoked:
            await alert_unlink_failure(
                member.provider.value,
                member_id,
                [str(failure) for failure in report.failures],
            )

        if access_token:
            await self.blacklist.revoke(access_token, reason="WITHDRAW", member_id=member_id)

        await self.members.withdraw(member_id)
        await self.refresh_tokens.delete_by_member_id(member_id)
        logger.info(
            f"Member {member_id} withdrew ({member.provider.value} unlink "
            f"{'succeeded' if report.revoked else 'failed'})"
        )
        return report

    async def restore(self, member_id: int) -> Member:
        return await self.members.restore(member_id)
