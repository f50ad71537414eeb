"""JWT issuance and validation for access and refresh tokens."""

import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

import jwt
from jwt.exceptions import (
    DecodeError,
    ExpiredSignatureError,
    PyJWTError,
)
from jwt.exceptions import InvalidSignatureError as JWTSignatureError

from authcore.core.config import Settings, settings
from authcore.core.logging import token_preview

logger = logging.getLogger(__name__)

TokenType = Literal["access", "refresh"]

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"


class TokenError(Exception):
    """JWT token error."""

    pass


class InvalidTokenError(TokenError):
    """JWT token is invalid."""

    pass


class InvalidSignatureError(InvalidTokenError):
    """Signature does not match the signing key."""

    pass


class MalformedTokenError(InvalidTokenError):
    """Token cannot be parsed or is missing required claims."""

    pass


class WrongTokenTypeError(InvalidTokenError):
    """Token is valid but of the wrong kind (refresh where access expected)."""

    pass


class TokenExpiredError(TokenError):
    """JWT token has expired."""

    pass


class TokenRevokedError(TokenError):
    """Token is cryptographically valid but blacklisted."""

    pass


@dataclass(frozen=True)
class TokenClaims:
    """Decoded claims of an access or refresh token."""

    member_id: int
    token_type: TokenType
    issued_at: datetime
    expires_at: datetime
    role: str | None = None
    jti: str | None = None

    @property
    def is_access(self) -> bool:
        return self.token_type == ACCESS_TOKEN

    @property
    def is_refresh(self) -> bool:
        return self.token_type == REFRESH_TOKEN


@dataclass(frozen=True)
class TokenPair:
    """Access + refresh tokens minted together at login or refresh."""

    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"

    @property
    def expires_in(self) -> int:
        return max(0, int((self.access_expires_at - datetime.now(UTC)).total_seconds()))


def encode_claims(
    member_id: int,
    token_type: TokenType,
    validity: timedelta,
    *,
    role: str | None = None,
    now: datetime | None = None,
    config: Settings | None = None,
) -> tuple[str, datetime]:
    """Sign a token and return it with its expiry."""
    config = config or settings
    issued_at = now or datetime.now(UTC)
    expire = issued_at + validity
    payload: dict[str, Any] = {
        "sub": str(member_id),
        "type": token_type,
        "iat": issued_at,
        "exp": expire,
        # jti keeps two tokens minted in the same second distinct
        "jti": secrets.token_hex(16),
    }
    if role is not None:
        payload["role"] = role
    token = jwt.encode(payload, config.jwt_signing_key, algorithm=config.jwt_algorithm)
    # PyJWT 2.x returns str; older type stubs may declare bytes
    return str(token), expire


def create_access_token(
    member_id: int,
    role: str,
    *,
    now: datetime | None = None,
    config: Settings | None = None,
) -> tuple[str, datetime]:
    """Create a short-lived access token."""
    config = config or settings
    return encode_claims(
        member_id,
        ACCESS_TOKEN,
        timedelta(minutes=config.jwt_access_token_expire_minutes),
        role=role,
        now=now,
        config=config,
    )


def create_refresh_token(
    member_id: int,
    *,
    now: datetime | None = None,
    config: Settings | None = None,
) -> tuple[str, datetime]:
    """Create a long-lived refresh token."""
    config = config or settings
    return encode_claims(
        member_id,
        REFRESH_TOKEN,
        timedelta(days=config.jwt_refresh_token_expire_days),
        now=now,
        config=config,
    )


def decode_token(
    token: str,
    *,
    now: datetime | None = None,
    config: Settings | None = None,
) -> TokenClaims:
    """Decode and validate a JWT token.

    Raises:
        TokenExpiredError: ``exp`` is in the past.
        InvalidSignatureError: signed with another key.
        MalformedTokenError: not a JWT, or required claims missing.
    """
    config = config or settings
    if not token or not isinstance(token, str):
        raise MalformedTokenError("Token is empty")

    options: dict[str, Any] = {"require": ["sub", "exp", "iat", "type"]}
    if now is not None:
        # Time claims are checked below against the supplied clock
        options["verify_exp"] = False
        options["verify_iat"] = False

    try:
        payload = jwt.decode(
            token,
            config.jwt_signing_key,
            algorithms=[config.jwt_algorithm],
            options=options,
        )
    except ExpiredSignatureError as e:
        raise TokenExpiredError("Token has expired") from e
    except JWTSignatureError as e:
        raise InvalidSignatureError("Token signature is invalid") from e
    except DecodeError as e:
        raise MalformedTokenError(f"Malformed token: {e}") from e
    except PyJWTError as e:
        raise MalformedTokenError(f"Invalid token: {e}") from e

    token_type = payload.get("type")
    if token_type not in (ACCESS_TOKEN, REFRESH_TOKEN):
        raise MalformedTokenError(f"Unknown token type: {token_type!r}")

    try:
        member_id = int(payload["sub"])
        issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=UTC)
        expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=UTC)
    except (TypeError, ValueError) as e:
        raise MalformedTokenError(f"Invalid token claims: {e}") from e

    if now is not None and now >= expires_at:
        raise TokenExpiredError("Token has expired")

    return TokenClaims(
        member_id=member_id,
        token_type=token_type,
        issued_at=issued_at,
        expires_at=expires_at,
        role=payload.get("role"),
        jti=payload.get("jti"),
    )


def validate_access_token(token: str, **kwargs: Any) -> TokenClaims:
    """Validate an access token and return its claims."""
    claims = decode_token(token, **kwargs)
    if not claims.is_access:
        raise WrongTokenTypeError("Not an access token")
    return claims


def validate_refresh_token(token: str, **kwargs: Any) -> TokenClaims:
    """Validate a refresh token and return its claims."""
    claims = decode_token(token, **kwargs)
    if not claims.is_refresh:
        raise WrongTokenTypeError("Not a refresh token")
    return claims


def is_refresh_token(token: str, **kwargs: Any) -> bool:
    """Whether the token's own ``type`` claim says refresh."""
    try:
        return decode_token(token, **kwargs).is_refresh
    except TokenError:
        return False


class TokenIssuer:
    """Mints and checks token pairs against one configuration and clock."""

    def __init__(
        self,
        config: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config or settings
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock() if self._clock else datetime.now(UTC)

    @property
    def access_validity(self) -> timedelta:
        return timedelta(minutes=self.config.jwt_access_token_expire_minutes)

    @property
    def refresh_validity(self) -> timedelta:
        return timedelta(days=self.config.jwt_refresh_token_expire_days)

    def issue(self, member_id: int, role: str | None, token_type: TokenType, validity: timedelta) -> str:
        token, _ = encode_claims(
            member_id, token_type, validity, role=role, now=self._now(), config=self.config
        )
        return token

    def issue_pair(self, member_id: int, role: str) -> TokenPair:
        """Create access and refresh tokens for a member."""
        now = self._now()
        access, access_exp = create_access_token(member_id, role, now=now, config=self.config)
        refresh, refresh_exp = create_refresh_token(member_id, now=now, config=self.config)
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def decode(self, token: str) -> TokenClaims:
        """Decode with this issuer's clock; raises TokenError subclasses."""
        now = self._now() if self._clock else None
        return decode_token(token, now=now, config=self.config)

    def validate(self, token: str, expected: TokenType = ACCESS_TOKEN) -> TokenClaims | None:
        """Fail-closed validation: claims for a good token, None otherwise."""
        try:
            claims = self.decode(token)
        except TokenExpiredError:
            logger.debug(f"Rejected expired token {token_preview(token)}")
            return None
        except TokenError as e:
            logger.info(f"Rejected invalid token {token_preview(token)}: {e}")
            return None
        except Exception as e:
            # Fail closed on anything the codec did not anticipate
            logger.warning(f"Unexpected error decoding token {token_preview(token)}: {e}")
            return None

        if claims.token_type != expected:
            logger.info(f"Rejected {claims.token_type} token where {expected} was expected")
            return None
        return claims

    def is_refresh_token(self, token: str) -> bool:
        claims = self.validate(token, expected=REFRESH_TOKEN)
        return claims is not None
