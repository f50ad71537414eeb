"""Tests for AuthSessionService login, refresh and logout flows."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from authcore.core.retry import RetryConfig
from authcore.models import AuthProvider
from authcore.schemas.provider import ProviderTokenResponse, ProviderUserInfo
from authcore.services.auth import (
    InvalidTokenError,
    TokenExpiredError,
    TokenRevokedError,
    WrongTokenTypeError,
)
from authcore.services.errors import MemberStateError, RefreshTokenNotFoundError
from authcore.services.oauth_client import ProviderUnavailable, RevokeReport, RevokeTier
from authcore.services.provider_token import ProviderTokenBridge
from authcore.services.session import AuthSessionService

NO_RETRY = RetryConfig(max_retries=0, base_delay=0, jitter=False)


def _fake_client(provider: AuthProvider = AuthProvider.KAKAO, revoked: bool = True) -> MagicMock:
    client = MagicMock()
    client.exchange_code = AsyncMock(
        return_value=ProviderTokenResponse(
            access_token="p-access", refresh_token="p-refresh", expires_in=3600
        )
    )
    client.fetch_user_info = AsyncMock(
        return_value=ProviderUserInfo(email="login@example.com", provider_user_id="p-1")
    )
    client.smart_revoke_token = AsyncMock(
        return_value=RevokeReport(
            provider=provider,
            revoked=revoked,
            tier=RevokeTier.ACCESS_TOKEN if revoked else None,
            attempted=[RevokeTier.ACCESS_TOKEN],
            failures=[]
            if revoked
            else [
                ProviderUnavailable(
                    provider=provider,
                    operation="revoke_token",
                    status_code=401,
                    tier=RevokeTier.ACCESS_TOKEN,
                )
            ],
        )
    )
    return client


@pytest.fixture
def kakao_client() -> MagicMock:
    return _fake_client()


@pytest.fixture
def service(db_session, clock, kakao_client) -> AuthSessionService:
    bridges = {
        AuthProvider.KAKAO: ProviderTokenBridge(
            AuthProvider.KAKAO, kakao_client, db_session, clock=clock
        ),
        AuthProvider.GOOGLE: ProviderTokenBridge(
            AuthProvider.GOOGLE, _fake_client(AuthProvider.GOOGLE), db_session, clock=clock
        ),
    }
    return AuthSessionService(db_session, clock=clock, bridges=bridges, retry_config=NO_RETRY)


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_with_provider(self, service, kakao_client, clock):
        response = await service.login_with_provider(AuthProvider.KAKAO, "auth-code")

        kakao_client.exchange_code.assert_awaited_once_with("auth-code")
        kakao_client.fetch_user_info.assert_awaited_once_with("p-access")
        assert response.email == "login@example.com"
        assert response.login_count == 1
        assert response.expires_in == 30 * 60

        claims = await service.authenticate(response.access_token)
        assert claims.member_id == response.member_id

        stored = await service.refresh_tokens.find_by_token(response.refresh_token)
        assert stored.member_id == response.member_id

        record = await service.bridge(AuthProvider.KAKAO).find_by_member_id(response.member_id)
        assert service.bridge(AuthProvider.KAKAO).get_refresh_token(record) == "p-refresh"
        assert record.expires_at == clock() + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_refresh_save_failure_does_not_unwind_login(self, service):
        error = OperationalError("INSERT", {}, Exception("db down"))
        with (
            patch.object(service.refresh_tokens, "save", AsyncMock(side_effect=error)),
            patch(
                "authcore.services.session.alert_persistence_failure", new=AsyncMock()
            ) as mock_alert,
        ):
            response = await service.login_with_provider(AuthProvider.KAKAO, "auth-code")

        assert response.access_token
        assert response.refresh_token
        assert (await service.authenticate(response.access_token)).member_id == response.member_id
        mock_alert.assert_awaited_once_with("refresh_token.save", error)

    @pytest.mark.asyncio
    async def test_provider_save_failure_does_not_unwind_login(self, service):
        bridge = service.bridge(AuthProvider.KAKAO)
        error = OperationalError("INSERT", {}, Exception("db down"))
        with (
            patch.object(bridge, "save_tokens", AsyncMock(side_effect=error)),
            patch("authcore.services.session.alert_persistence_failure", new=AsyncMock()),
        ):
            response = await service.login_with_provider(AuthProvider.KAKAO, "auth-code")

        stored = await service.refresh_tokens.find_by_token(response.refresh_token)
        assert stored.member_id == response.member_id


class TestAuthenticate:
    @pytest.mark.asyncio
    async def test_revoked_token_rejected(self, service, member_factory):
        member = await member_factory()
        pair = await service.issue_token_pair(member)

        await service.blacklist.revoke(pair.access_token)

        assert await service.is_revoked(pair.access_token) is True
        with pytest.raises(TokenRevokedError):
            await service.authenticate(pair.access_token)

    @pytest.mark.asyncio
    async def test_refresh_token_rejected_as_access(self, service, member_factory):
        member = await member_factory()
        pair = await service.issue_token_pair(member)

        with pytest.raises(WrongTokenTypeError):
            await service.authenticate(pair.refresh_token)
        assert service.validate(pair.refresh_token) is None

    @pytest.mark.asyncio
    async def test_expired_access_token(self, service, member_factory, clock):
        member = await member_factory()
        pair = await service.issue_token_pair(member)
        clock.advance(minutes=31)

        with pytest.raises(TokenExpiredError):
            await service.authenticate(pair.access_token)
        assert service.validate(pair.access_token) is None

    @pytest.mark.asyncio
    async def test_garbage_rejected(self, service):
        with pytest.raises(InvalidTokenError):
            await service.authenticate("garbage")


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_rotates_token(self, service, member_factory, clock):
        member = await member_factory()
        member_id = member.id
        pair = await service.issue_token_pair(member)
        clock.advance(hours=1)

        new_pair = await service.refresh(pair.refresh_token)

        assert new_pair.refresh_token != pair.refresh_token
        assert (await service.authenticate(new_pair.access_token)).member_id == member_id
        with pytest.raises(RefreshTokenNotFoundError):
            await service.refresh(pair.refresh_token)

        record = await service.refresh_tokens.find_by_member_id(member_id)
        assert record.refresh_count == 1
        assert record.last_used_at == clock()

    @pytest.mark.asyncio
    async def test_access_token_cannot_refresh(self, service, member_factory):
        member = await member_factory()
        pair = await service.issue_token_pair(member)

        with pytest.raises(WrongTokenTypeError):
            await service.refresh(pair.access_token)

    @pytest.mark.asyncio
    async def test_unstored_refresh_token_rejected(self, service, member_factory):
        member = await member_factory()
        refresh = service.issuer.issue_pair(member.id, member.role).refresh_token

        with pytest.raises(RefreshTokenNotFoundError):
            await service.refresh(refresh)

    @pytest.mark.asyncio
    async def test_withdrawn_member_cannot_refresh(self, service, member_factory):
        member = await member_factory()
        member_id = member.id
        pair = await service.issue_token_pair(member)
        await service.members.withdraw(member_id)

        with pytest.raises(MemberStateError):
            await service.refresh(pair.refresh_token)


class TestLogoutAndWithdraw:
    @pytest.mark.asyncio
    async def test_revoke_session(self, service, member_factory, kakao_client, clock):
        member = await member_factory()
        member_id = member.id
        pair = await service.issue_token_pair(member)
        await service.bridge(AuthProvider.KAKAO).save_tokens(
            member_id, "p-access", "p-refresh", clock() + timedelta(hours=1)
        )

        result = await service.revoke_session(pair.access_token)

        assert result.blacklisted is True
        assert result.refresh_tokens_deleted == 1
        assert result.provider_report.revoked is True
        kakao_client.smart_revoke_token.assert_awaited_once_with("p-access", "p-refresh")
        with pytest.raises(TokenRevokedError):
            await service.authenticate(pair.access_token)
        assert await service.refresh_tokens.find_by_member_id(member_id) is None

    @pytest.mark.asyncio
    async def test_revoke_session_with_expired_token(self, service, member_factory, clock):
        member = await member_factory()
        member_id = member.id
        pair = await service.issue_token_pair(member)
        clock.advance(hours=1)

        result = await service.revoke_session(pair.access_token, member_id, revoke_provider=False)

        assert result.blacklisted is False
        assert result.refresh_tokens_deleted == 1
        assert result.provider_report is None

    @pytest.mark.asyncio
    async def test_revoke_session_with_expired_access_and_refresh_token(
        self, service, member_factory, clock
    ):
        member = await member_factory()
        member_id = member.id
        pair = await service.issue_token_pair(member)
        clock.advance(hours=1)

        result = await service.revoke_session(
            pair.access_token, refresh_token=pair.refresh_token, revoke_provider=False
        )

        assert result.blacklisted is False
        assert result.refresh_tokens_deleted == 1
        assert await service.refresh_tokens.find_by_member_id(member_id) is None
        with pytest.raises(RefreshTokenNotFoundError):
            await service.refresh(pair.refresh_token)

    @pytest.mark.asyncio
    async def test_revoke_session_deletes_undecodable_refresh_token(
        self, service, member_factory, clock
    ):
        member = await member_factory()
        member_id = member.id
        pair = await service.issue_token_pair(member)
        clock.advance(days=8)

        result = await service.revoke_session(None, refresh_token=pair.refresh_token)

        assert result.refresh_tokens_deleted == 1
        assert result.provider_report is None
        assert await service.refresh_tokens.find_by_member_id(member_id) is None

    @pytest.mark.asyncio
    async def test_withdraw_completes_when_provider_fails(self, db_session, member_factory, clock):
        client = _fake_client(revoked=False)
        service = AuthSessionService(
            db_session,
            clock=clock,
            bridges={
                AuthProvider.KAKAO: ProviderTokenBridge(
                    AuthProvider.KAKAO, client, db_session, clock=clock
                )
            },
            retry_config=NO_RETRY,
        )
        member = await member_factory()
        member_id = member.id
        pair = await service.issue_token_pair(member)

        with patch("authcore.services.session.alert_unlink_failure", new=AsyncMock()) as mock_alert:
            report = await service.withdraw(member_id, pair.access_token)

        mock_alert.assert_awaited_once_with("KAKAO", member_id, ["access_token: HTTP 401"])

        assert report.revoked is False
        withdrawn = await service.members.get(member_id)
        assert withdrawn.is_deleted is True
        assert await service.is_revoked(pair.access_token) is True
        assert await service.refresh_tokens.find_by_member_id(member_id) is None

    @pytest.mark.asyncio
    async def test_withdraw_twice_rejected(self, service, member_factory):
        member = await member_factory()
        member_id = member.id
        await service.withdraw(member_id)

        with pytest.raises(MemberStateError):
            await service.withdraw(member_id)

    @pytest.mark.asyncio
    async def test_restore_and_nickname_change(self, service, member_factory):
        member = await member_factory()
        member_id = member.id
        await service.withdraw(member_id)

        restored = await service.restore(member_id)
        assert restored.is_deleted is False

        renamed = await service.request_nickname_change(member_id, "renamed")
        assert renamed.nickname == "renamed"
