"""HTTP clients for the external identity providers (Kakao, Google).

Refresh and revoke calls never raise: every transport error, timeout or
non-2xx response becomes a ``ProviderUnavailable`` outcome so callers can
treat "provider unavailable" as a normal result. Code exchange and user
info are part of the login itself and raise ``ProviderLoginError``.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, TypeVar

import httpx
from pydantic import ValidationError

from authcore.core.config import Settings, settings
from authcore.core.logging import token_preview
from authcore.models.member import AuthProvider
from authcore.schemas.provider import (
    GoogleUserInfo,
    KakaoUserInfo,
    ProviderTokenResponse,
    ProviderUserInfo,
)
from authcore.services.errors import AuthCoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

OAUTH_USER_AGENT = "authcore/0.1.0 (OAuth Client)"

# Error bodies are logged for diagnosis, truncated
_MAX_LOGGED_BODY = 500


class ProviderLoginError(AuthCoreError):
    """Code exchange or user-info lookup failed during login."""

    error_code = "PROVIDER_LOGIN_FAILED"


class RevokeTier(str, Enum):
    """Steps of the smart revoke fallback, in execution order."""

    ACCESS_TOKEN = "access_token"
    REFRESH_TOKEN = "refresh_token"
    REFRESHED_ACCESS_TOKEN = "refreshed_access_token"


@dataclass(frozen=True)
class ProviderUnavailable:
    """Why a provider call did not happen."""

    provider: AuthProvider
    operation: str
    status_code: int | None = None
    detail: str = ""
    tier: RevokeTier | None = None

    def __str__(self) -> str:
        step = self.tier.value if self.tier else self.operation
        if self.status_code is not None:
            return f"{step}: HTTP {self.status_code}"
        return f"{step}: {self.detail}"


@dataclass(frozen=True)
class ProviderResult(Generic[T]):
    """Outcome of a provider call: a value, or the reason it failed."""

    value: T | None = None
    failure: ProviderUnavailable | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, value: T | None = None) -> "ProviderResult[T]":
        return cls(value=value)

    @classmethod
    def unavailable(cls, failure: ProviderUnavailable) -> "ProviderResult[T]":
        return cls(failure=failure)


@dataclass
class RevokeReport:
    """Result of ``smart_revoke_token``."""

    provider: AuthProvider
    revoked: bool = False
    tier: RevokeTier | None = None
    attempted: list[RevokeTier] = field(default_factory=list)
    failures: list[ProviderUnavailable] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.revoked


def _get_http_client(timeout: float) -> httpx.AsyncClient:
    """Create an httpx client for provider token/revoke requests."""
    return httpx.AsyncClient(
        timeout=timeout,
        headers={"User-Agent": OAUTH_USER_AGENT},
    )


class ProviderOAuthClient:
    """Shared request handling and the smart revoke fallback."""

    provider: AuthProvider
    token_url: str
    userinfo_url: str
    revoke_url: str
    # Whether the revoke endpoint accepts a refresh token directly
    supports_refresh_token_revoke: bool = True

    def __init__(
        self,
        client_id: str,
        client_secret: str | None,
        redirect_uri: str,
        timeout: float = 10.0,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout

    def _failure(
        self,
        operation: str,
        status_code: int | None = None,
        detail: str = "",
        tier: RevokeTier | None = None,
    ) -> ProviderUnavailable:
        return ProviderUnavailable(
            provider=self.provider,
            operation=operation,
            status_code=status_code,
            detail=detail,
            tier=tier,
        )

    async def _send(
        self,
        operation: str,
        method: str,
        url: str,
        **kwargs,
    ) -> ProviderResult[httpx.Response]:
        """Send one request; timeouts and non-2xx become failures."""
        try:
            async with _get_http_client(self.timeout) as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"{self.provider.value} {operation} timed out after {self.timeout}s: {e}")
            return ProviderResult.unavailable(self._failure(operation, detail="timeout"))
        except httpx.HTTPError as e:
            logger.warning(f"{self.provider.value} {operation} transport error: {e}")
            return ProviderResult.unavailable(self._failure(operation, detail=str(e)))

        if not response.is_success:
            body = response.text[:_MAX_LOGGED_BODY]
            logger.warning(
                f"{self.provider.value} {operation} failed: HTTP {response.status_code} {body}"
            )
            return ProviderResult.unavailable(
                self._failure(operation, status_code=response.status_code, detail=body)
            )
        return ProviderResult.success(response)

    def _token_form(self, **params: str) -> dict[str, str]:
        data = {"client_id": self.client_id, **params}
        if self.client_secret:
            data["client_secret"] = self.client_secret
        return data

    # --- Login ---

    async def exchange_code(self, code: str) -> ProviderTokenResponse:
        """Exchange an authorization code for provider tokens.

        Raises:
            ProviderLoginError: provider rejected the code or was unreachable.
        """
        result = await self._send(
            "exchange_code",
            "POST",
            self.token_url,
            data=self._token_form(
                grant_type="authorization_code",
                redirect_uri=self.redirect_uri,
                code=code,
            ),
        )
        if not result.ok:
            raise ProviderLoginError(f"{self.provider.value} token request failed")
        try:
            return ProviderTokenResponse.model_validate(result.value.json())
        except (ValueError, ValidationError) as e:
            raise ProviderLoginError(
                f"{self.provider.value} token response missing access_token: {e}"
            ) from e

    async def fetch_user_info(self, access_token: str) -> ProviderUserInfo:
        """Look up the signed-in user's email and provider id.

        Raises:
            ProviderLoginError: lookup failed or the account has no email.
        """
        result = await self._send(
            "fetch_user_info",
            "GET",
            self.userinfo_url,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if not result.ok:
            raise ProviderLoginError(f"{self.provider.value} user info request failed")
        try:
            return self._parse_user_info(result.value.json())
        except (ValueError, ValidationError) as e:
            raise ProviderLoginError(f"{self.provider.value} user info invalid: {e}") from e

    def _parse_user_info(self, payload: dict) -> ProviderUserInfo:
        raise NotImplementedError

    # --- Refresh and revoke ---

    async def refresh_access_token(self, refresh_token: str) -> ProviderResult[ProviderTokenResponse]:
        """Mint a new access token with a refresh token (grant_type=refresh_token)."""
        result = await self._send(
            "refresh_access_token",
            "POST",
            self.token_url,
            data=self._token_form(grant_type="refresh_token", refresh_token=refresh_token),
        )
        if not result.ok:
            return ProviderResult.unavailable(result.failure)
        try:
            tokens = ProviderTokenResponse.model_validate(result.value.json())
        except (ValueError, ValidationError) as e:
            logger.warning(f"{self.provider.value} refresh response invalid: {e}")
            return ProviderResult.unavailable(
                self._failure("refresh_access_token", result.value.status_code, "invalid response body")
            )
        logger.info(f"{self.provider.value} access token refreshed")
        return ProviderResult.success(tokens)

    async def revoke_token(self, token: str) -> ProviderResult[None]:
        """Revoke one token with a single HTTP call."""
        result = await self._send("revoke_token", "POST", self.revoke_url, **self._revoke_request(token))
        if not result.ok:
            return ProviderResult.unavailable(result.failure)
        logger.info(f"{self.provider.value} token revoked ({token_preview(token, 8)})")
        return ProviderResult.success()

    def _revoke_request(self, token: str) -> dict:
        raise NotImplementedError

    async def smart_revoke_token(
        self,
        access_token: str | None,
        refresh_token: str | None,
    ) -> RevokeReport:
        """Revoke provider access with a three-step fallback.

        1. revoke the stored access token;
        2. revoke the refresh token directly (if the provider allows it);
        3. mint a fresh access token from the refresh token and revoke that.

        Stops at the first step that succeeds.
        """
        report = RevokeReport(provider=self.provider)

        if access_token:
            report.attempted.append(RevokeTier.ACCESS_TOKEN)
            result = await self.revoke_token(access_token)
            if result.ok:
                return self._revoked(report, RevokeTier.ACCESS_TOKEN)
            report.failures.append(self._tiered(result.failure, RevokeTier.ACCESS_TOKEN))

        if not refresh_token:
            self._log_revoke_failure(report)
            return report

        if self.supports_refresh_token_revoke:
            report.attempted.append(RevokeTier.REFRESH_TOKEN)
            result = await self.revoke_token(refresh_token)
            if result.ok:
                return self._revoked(report, RevokeTier.REFRESH_TOKEN)
            report.failures.append(self._tiered(result.failure, RevokeTier.REFRESH_TOKEN))

        report.attempted.append(RevokeTier.REFRESHED_ACCESS_TOKEN)
        refreshed = await self.refresh_access_token(refresh_token)
        if not refreshed.ok:
            report.failures.append(self._tiered(refreshed.failure, RevokeTier.REFRESHED_ACCESS_TOKEN))
        else:
            result = await self.revoke_token(refreshed.value.access_token)
            if result.ok:
                return self._revoked(report, RevokeTier.REFRESHED_ACCESS_TOKEN)
            report.failures.append(self._tiered(result.failure, RevokeTier.REFRESHED_ACCESS_TOKEN))

        self._log_revoke_failure(report)
        return report

    def _revoked(self, report: RevokeReport, tier: RevokeTier) -> RevokeReport:
        report.revoked = True
        report.tier = tier
        logger.info(f"{self.provider.value} unlink succeeded via {tier.value}")
        return report

    @staticmethod
    def _tiered(failure: ProviderUnavailable, tier: RevokeTier) -> ProviderUnavailable:
        return ProviderUnavailable(
            provider=failure.provider,
            operation=failure.operation,
            status_code=failure.status_code,
            detail=failure.detail,
            tier=tier,
        )

    def _log_revoke_failure(self, report: RevokeReport) -> None:
        if not report.attempted:
            logger.warning(f"{self.provider.value} unlink skipped: no tokens available")
            return
        summary = ", ".join(str(failure) for failure in report.failures)
        logger.warning(f"{self.provider.value} unlink failed on every tier: {summary}")


class KakaoOAuthClient(ProviderOAuthClient):
    """Kakao: token and user-info endpoints plus account unlink."""

    provider = AuthProvider.KAKAO
    userinfo_url = "https://kapi.kakao.com/v2/user/me"
    revoke_url = "https://kapi.kakao.com/v1/user/unlink"
    # Unlink authenticates with an access token only
    supports_refresh_token_revoke = False

    def __init__(
        self,
        client_id: str,
        client_secret: str | None,
        redirect_uri: str,
        timeout: float = 10.0,
        token_url: str = "https://kauth.kakao.com/oauth/token",
    ):
        super().__init__(client_id, client_secret, redirect_uri, timeout)
        self.token_url = token_url

    def _parse_user_info(self, payload: dict) -> ProviderUserInfo:
        return KakaoUserInfo.model_validate(payload).normalise()

    def _revoke_request(self, token: str) -> dict:
        return {"headers": {"Authorization": f"Bearer {token}"}}


class GoogleOAuthClient(ProviderOAuthClient):
    """Google: token, revoke and user-info endpoints."""

    provider = AuthProvider.GOOGLE
    token_url = "https://oauth2.googleapis.com/token"
    userinfo_url = "https://www.googleapis.com/oauth2/v2/userinfo"
    revoke_url = "https://oauth2.googleapis.com/revoke"

    def _parse_user_info(self, payload: dict) -> ProviderUserInfo:
        return GoogleUserInfo.model_validate(payload).normalise()

    def _revoke_request(self, token: str) -> dict:
        return {"data": {"token": token}}


def build_oauth_client(provider: AuthProvider, config: Settings | None = None) -> ProviderOAuthClient:
    """Create the client for a provider from settings."""
    config = config or settings
    if provider == AuthProvider.KAKAO:
        return KakaoOAuthClient(
            client_id=config.kakao_client_id,
            client_secret=config.kakao_client_secret,
            redirect_uri=config.kakao_redirect_uri,
            timeout=config.provider_http_timeout_seconds,
            token_url=config.kakao_token_uri,
        )
    if provider == AuthProvider.GOOGLE:
        return GoogleOAuthClient(
            client_id=config.google_client_id,
            client_secret=config.google_client_secret,
            redirect_uri=config.google_redirect_uri,
            timeout=config.provider_http_timeout_seconds,
        )
    raise ValueError(f"Unsupported provider: {provider}")
