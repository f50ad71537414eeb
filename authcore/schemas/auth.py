"""Pydantic schemas handed to the HTTP layer."""

from datetime import datetime

from pydantic import BaseModel, Field


class TokenResponse(BaseModel):
    """Response from a token refresh."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = Field(..., description="Access token lifetime in seconds")


class AuthResponse(TokenResponse):
    """Response from a completed provider login."""

    member_id: int
    email: str
    nickname: str | None
    login_count: int


class NicknameChangeInfo(BaseModel):
    """Current nickname quota for a member."""

    can_change: bool
    change_count: int
    max_change_count: int
    last_change_at: datetime | None = None
    next_available_at: datetime | None = None
