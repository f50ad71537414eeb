"""Schemas for identity provider responses."""

from datetime import UTC, datetime, timedelta

from pydantic import BaseModel, ConfigDict, Field


class ProviderTokenResponse(BaseModel):
    """Token endpoint response (authorization_code or refresh_token grant).

    Kakao and Google both follow RFC 6749 field names; Kakao adds
    ``refresh_token_expires_in``.
    """

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(..., min_length=1)
    refresh_token: str | None = None
    expires_in: int | None = None
    refresh_token_expires_in: int | None = None
    token_type: str | None = None
    scope: str | None = None

    def expires_at(self, now: datetime | None = None) -> datetime | None:
        if self.expires_in is None:
            return None
        return (now or datetime.now(UTC)) + timedelta(seconds=self.expires_in)

    def refresh_expires_at(self, now: datetime | None = None) -> datetime | None:
        if self.refresh_token_expires_in is None:
            return None
        return (now or datetime.now(UTC)) + timedelta(seconds=self.refresh_token_expires_in)


class ProviderUserInfo(BaseModel):
    """Normalised identity returned by a provider."""

    email: str
    provider_user_id: str


class KakaoAccount(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str | None = None


class KakaoUserInfo(BaseModel):
    """``GET /v2/user/me`` response (subset)."""

    model_config = ConfigDict(extra="ignore")

    id: int | str
    kakao_account: KakaoAccount = Field(default_factory=KakaoAccount)

    def normalise(self) -> ProviderUserInfo:
        if not self.kakao_account.email:
            raise ValueError("Kakao account has no email (consent not granted)")
        return ProviderUserInfo(email=self.kakao_account.email, provider_user_id=str(self.id))


class GoogleUserInfo(BaseModel):
    """``GET /oauth2/v2/userinfo`` response (subset)."""

    model_config = ConfigDict(extra="ignore")

    id: str
    email: str | None = None

    def normalise(self) -> ProviderUserInfo:
        if not self.email:
            raise ValueError("Google account has no email (scope not granted)")
        return ProviderUserInfo(email=self.email, provider_user_id=self.id)
