# authcore Schemas
from authcore.schemas.auth import AuthResponse, NicknameChangeInfo, TokenResponse
from authcore.schemas.provider import (
    GoogleUserInfo,
    KakaoUserInfo,
    ProviderTokenResponse,
    ProviderUserInfo,
)

__all__ = [
    "AuthResponse",
    "GoogleUserInfo",
    "KakaoUserInfo",
    "NicknameChangeInfo",
    "ProviderTokenResponse",
    "ProviderUserInfo",
    "TokenResponse",
]
