# authcore Models
from authcore.models.base import Base, TimestampMixin, UTCDateTime, utcnow
from authcore.models.member import AuthProvider, Member
from authcore.models.provider_token import ProviderToken
from authcore.models.refresh_token import RefreshToken
from authcore.models.token_blacklist import TokenBlacklist, hash_token

__all__ = [
    "AuthProvider",
    "Base",
    "Member",
    "ProviderToken",
    "RefreshToken",
    "TimestampMixin",
    "TokenBlacklist",
    "UTCDateTime",
    "hash_token",
    "utcnow",
]
