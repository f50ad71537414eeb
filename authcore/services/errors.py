"""Domain errors raised by authcore services.

Token errors live in ``authcore.services.auth`` next to the codec that
raises them. Provider failures are not exceptions at all; see
``authcore.services.oauth_client.ProviderUnavailable``.
"""

from datetime import datetime
from enum import Enum


class AuthCoreError(Exception):
    """Base error for member and session operations."""

    error_code = "auth_error"

    def __init__(self, message: str, error_code: str | None = None):
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        super().__init__(message)


class MemberNotFoundError(AuthCoreError):
    """No member with the given id."""

    error_code = "MEMBER_NOT_FOUND"


class MemberStateError(AuthCoreError):
    """Operation not allowed in the member's current state (already withdrawn, already active)."""

    error_code = "MEMBER_STATE_CONFLICT"


class IdentityConflictError(AuthCoreError):
    """The email is already registered under a different provider identity."""

    error_code = "IDENTITY_CONFLICT"

    def __init__(self, email: str, existing_provider: str, attempted_provider: str):
        self.email = email
        self.existing_provider = existing_provider
        self.attempted_provider = attempted_provider
        super().__init__(
            f"Email is already registered with {existing_provider}; "
            f"login with {attempted_provider} rejected"
        )


class ProviderIdentityInUseError(AuthCoreError):
    """The provider identity already belongs to a member with another email."""

    error_code = "PROVIDER_IDENTITY_IN_USE"

    def __init__(self, provider: str, member_id: int):
        self.provider = provider
        self.member_id = member_id
        super().__init__(f"This {provider} account is already linked to another email")


class WithdrawnMemberError(AuthCoreError):
    """A withdrawn member tried to sign in during the rejoin hold."""

    error_code = "MEMBER_WITHDRAWN"

    def __init__(self, rejoin_available_at: datetime | None):
        self.rejoin_available_at = rejoin_available_at
        if rejoin_available_at is not None:
            message = f"Withdrawn members cannot rejoin until {rejoin_available_at.isoformat()}"
        else:
            message = "Withdrawn members cannot rejoin"
        super().__init__(message)


class NicknameChangeCode(str, Enum):
    MAX_COUNT_REACHED = "NICKNAME_MAX_COUNT_REACHED"
    CHANGE_TOO_SOON = "NICKNAME_CHANGE_TOO_SOON"


class NicknameChangeError(AuthCoreError):
    """Structured, user-facing rejection of a nickname change."""

    def __init__(
        self,
        code: NicknameChangeCode,
        message: str,
        next_available_at: datetime | None = None,
    ):
        self.code = code
        self.next_available_at = next_available_at
        super().__init__(message, code.value)

    @classmethod
    def reached_max_count(cls, max_changes: int) -> "NicknameChangeError":
        return cls(
            NicknameChangeCode.MAX_COUNT_REACHED,
            f"All nickname changes have been used (maximum {max_changes})",
        )

    @classmethod
    def too_soon(cls, next_available_at: datetime, cooldown_days: int) -> "NicknameChangeError":
        return cls(
            NicknameChangeCode.CHANGE_TOO_SOON,
            f"Nickname can be changed every {cooldown_days} days. "
            f"Next change available at {next_available_at.isoformat()}",
            next_available_at=next_available_at,
        )


class NicknameValidationError(AuthCoreError):
    """Nickname fails length or content rules."""

    error_code = "NICKNAME_INVALID"


class NicknameTakenError(AuthCoreError):
    """Another member already uses the nickname."""

    error_code = "NICKNAME_TAKEN"


class ConcurrentUpdateError(AuthCoreError):
    """Optimistic version check kept failing after all retries."""

    error_code = "CONCURRENT_UPDATE"


class RefreshTokenNotFoundError(AuthCoreError):
    """No live refresh record matches the presented token."""

    error_code = "REFRESH_TOKEN_NOT_FOUND"
