"""Tests for the provider OAuth clients and smart revoke."""

import httpx
import pytest

from authcore.models.member import AuthProvider
from authcore.services.oauth_client import (
    GoogleOAuthClient,
    KakaoOAuthClient,
    ProviderLoginError,
    RevokeTier,
    build_oauth_client,
)
from tests.conftest import make_response


@pytest.fixture
def kakao() -> KakaoOAuthClient:
    return KakaoOAuthClient("kakao-id", "kakao-secret", "https://app.example.com/kakao", timeout=3)


@pytest.fixture
def google() -> GoogleOAuthClient:
    return GoogleOAuthClient("google-id", "google-secret", "https://app.example.com/google", timeout=3)


def _token_json(access: str = "new-access", refresh: str | None = None) -> dict:
    body = {"access_token": access, "token_type": "bearer", "expires_in": 3600}
    if refresh:
        body["refresh_token"] = refresh
    return body


class TestExchangeAndUserInfo:
    @pytest.mark.asyncio
    async def test_exchange_code_posts_form(self, google, mock_http_client):
        mock_http_client.request.return_value = make_response(
            200, json=_token_json("g-access", "g-refresh")
        )

        tokens = await google.exchange_code("auth-code")

        assert tokens.access_token == "g-access"
        assert tokens.refresh_token == "g-refresh"
        method, url = mock_http_client.request.call_args.args
        assert method == "POST"
        assert url == "https://oauth2.googleapis.com/token"
        data = mock_http_client.request.call_args.kwargs["data"]
        assert data["grant_type"] == "authorization_code"
        assert data["code"] == "auth-code"
        assert data["client_secret"] == "google-secret"

    @pytest.mark.asyncio
    async def test_exchange_code_failure_raises(self, kakao, mock_http_client):
        mock_http_client.request.return_value = make_response(400, json={"error": "invalid_grant"})

        with pytest.raises(ProviderLoginError):
            await kakao.exchange_code("bad-code")

    @pytest.mark.asyncio
    async def test_kakao_user_info(self, kakao, mock_http_client):
        mock_http_client.request.return_value = make_response(
            200, json={"id": 12345, "kakao_account": {"email": "k@example.com"}}
        )

        info = await kakao.fetch_user_info("k-access")

        assert info.email == "k@example.com"
        assert info.provider_user_id == "12345"
        headers = mock_http_client.request.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer k-access"

    @pytest.mark.asyncio
    async def test_user_info_without_email_raises(self, google, mock_http_client):
        mock_http_client.request.return_value = make_response(200, json={"id": "g-1"})

        with pytest.raises(ProviderLoginError):
            await google.fetch_user_info("g-access")


class TestRefreshAndRevoke:
    @pytest.mark.asyncio
    async def test_refresh_success(self, google, mock_http_client):
        mock_http_client.request.return_value = make_response(200, json=_token_json())

        result = await google.refresh_access_token("g-refresh")

        assert result.ok
        assert result.value.access_token == "new-access"
        data = mock_http_client.request.call_args.kwargs["data"]
        assert data == {
            "client_id": "google-id",
            "grant_type": "refresh_token",
            "refresh_token": "g-refresh",
            "client_secret": "google-secret",
        }

    @pytest.mark.asyncio
    async def test_refresh_http_error_is_typed_failure(self, google, mock_http_client):
        mock_http_client.request.return_value = make_response(400, text="invalid_grant")

        result = await google.refresh_access_token("g-refresh")

        assert not result.ok
        assert result.failure.status_code == 400
        assert result.failure.provider == AuthProvider.GOOGLE
        assert "invalid_grant" in result.failure.detail

    @pytest.mark.asyncio
    async def test_timeout_is_typed_failure(self, kakao, mock_http_client):
        mock_http_client.request.side_effect = httpx.ReadTimeout("timed out")

        result = await kakao.revoke_token("k-access")

        assert not result.ok
        assert result.failure.status_code is None
        assert result.failure.detail == "timeout"

    @pytest.mark.asyncio
    async def test_google_revoke_sends_form_token(self, google, mock_http_client):
        mock_http_client.request.return_value = make_response(200)

        result = await google.revoke_token("g-access")

        assert result.ok
        method, url = mock_http_client.request.call_args.args
        assert url == "https://oauth2.googleapis.com/revoke"
        assert mock_http_client.request.call_args.kwargs["data"] == {"token": "g-access"}

    @pytest.mark.asyncio
    async def test_kakao_unlink_uses_bearer(self, kakao, mock_http_client):
        mock_http_client.request.return_value = make_response(200, json={"id": 1})

        result = await kakao.revoke_token("k-access")

        assert result.ok
        method, url = mock_http_client.request.call_args.args
        assert url == "https://kapi.kakao.com/v1/user/unlink"
        assert mock_http_client.request.call_args.kwargs["headers"] == {
            "Authorization": "Bearer k-access"
        }


class TestSmartRevoke:
    @pytest.mark.asyncio
    async def test_tier_one_short_circuits(self, google, mock_http_client):
        mock_http_client.request.return_value = make_response(200)

        report = await google.smart_revoke_token("g-access", "g-refresh")

        assert report.revoked and bool(report)
        assert report.tier == RevokeTier.ACCESS_TOKEN
        assert report.attempted == [RevokeTier.ACCESS_TOKEN]
        assert mock_http_client.request.call_count == 1

    @pytest.mark.asyncio
    async def test_access_token_only_revoked_in_one_call(self, google, mock_http_client):
        mock_http_client.request.return_value = make_response(200)

        report = await google.smart_revoke_token("g-access", None)

        assert report.revoked is True
        assert report.tier == RevokeTier.ACCESS_TOKEN
        assert report.failures == []
        assert mock_http_client.request.call_count == 1
        assert mock_http_client.request.call_args.kwargs["data"] == {"token": "g-access"}

    @pytest.mark.asyncio
    async def test_falls_back_to_refresh_token(self, google, mock_http_client):
        mock_http_client.request.side_effect = [
            make_response(400, text="invalid_token"),
            make_response(200),
        ]

        report = await google.smart_revoke_token("g-access", "g-refresh")

        assert report.revoked
        assert report.tier == RevokeTier.REFRESH_TOKEN
        assert [f.tier for f in report.failures] == [RevokeTier.ACCESS_TOKEN]
        assert str(report.failures[0]) == "access_token: HTTP 400"
        second = mock_http_client.request.call_args_list[1]
        assert second.kwargs["data"] == {"token": "g-refresh"}

    @pytest.mark.asyncio
    async def test_falls_back_to_refreshed_access_token(self, google, mock_http_client):
        mock_http_client.request.side_effect = [
            make_response(400, text="invalid_token"),
            make_response(400, text="invalid_token"),
            make_response(200, json=_token_json("minted")),
            make_response(200),
        ]

        report = await google.smart_revoke_token("g-access", "g-refresh")

        assert report.revoked
        assert report.tier == RevokeTier.REFRESHED_ACCESS_TOKEN
        assert report.attempted == [
            RevokeTier.ACCESS_TOKEN,
            RevokeTier.REFRESH_TOKEN,
            RevokeTier.REFRESHED_ACCESS_TOKEN,
        ]
        last = mock_http_client.request.call_args_list[3]
        assert last.kwargs["data"] == {"token": "minted"}

    @pytest.mark.asyncio
    async def test_kakao_skips_refresh_token_tier(self, kakao, mock_http_client):
        mock_http_client.request.side_effect = [
            make_response(401, text="expired"),
            make_response(200, json=_token_json("minted")),
            make_response(200, json={"id": 1}),
        ]

        report = await kakao.smart_revoke_token("k-access", "k-refresh")

        assert report.revoked
        assert report.tier == RevokeTier.REFRESHED_ACCESS_TOKEN
        assert RevokeTier.REFRESH_TOKEN not in report.attempted
        assert mock_http_client.request.call_count == 3

    @pytest.mark.asyncio
    async def test_every_tier_fails(self, google, mock_http_client):
        mock_http_client.request.return_value = make_response(500, text="boom")

        report = await google.smart_revoke_token("g-access", "g-refresh")

        assert not report.revoked and not bool(report)
        assert report.tier is None
        assert len(report.failures) == 3

    @pytest.mark.asyncio
    async def test_no_tokens_makes_no_calls(self, google, mock_http_client):
        report = await google.smart_revoke_token(None, None)

        assert not report.revoked
        assert report.attempted == []
        mock_http_client.request.assert_not_called()

    @pytest.mark.asyncio
    async def test_refresh_only(self, google, mock_http_client):
        mock_http_client.request.return_value = make_response(200)

        report = await google.smart_revoke_token(None, "g-refresh")

        assert report.revoked
        assert report.tier == RevokeTier.REFRESH_TOKEN


class TestBuildClient:
    def test_builds_per_provider(self):
        assert isinstance(build_oauth_client(AuthProvider.KAKAO), KakaoOAuthClient)
        assert isinstance(build_oauth_client(AuthProvider.GOOGLE), GoogleOAuthClient)
