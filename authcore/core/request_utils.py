"""Request utility functions for token transport (headers and cookies)."""

import logging
from typing import Literal

from fastapi import Request, Response

from authcore.core.config import Settings, settings

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


def extract_bearer_token(authorization: str | None) -> str | None:
    """Return the token from an ``Authorization: Bearer`` header value."""
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        return None
    token = authorization[len(BEARER_PREFIX) :].strip()
    return token or None


def extract_access_token(request: Request, config: Settings | None = None) -> str | None:
    """Get the access token from a request.

    Priority order:
    1. Authorization: Bearer header
    2. Access-token cookie
    """
    config = config or settings
    token = extract_bearer_token(request.headers.get("Authorization"))
    if token:
        return token
    return request.cookies.get(config.access_cookie_name) or None


def extract_refresh_token(request: Request, config: Settings | None = None) -> str | None:
    """Get the refresh token from its httpOnly cookie."""
    config = config or settings
    return request.cookies.get(config.refresh_cookie_name) or None


def _cookie_policy(config: Settings) -> tuple[bool, Literal["lax", "none"]]:
    # SameSite=None requires Secure, so both relax together in local development
    if config.is_local:
        return False, "lax"
    return True, "none"


def set_refresh_cookie(response: Response, token: str, config: Settings | None = None) -> None:
    """Attach the refresh token as an httpOnly cookie scoped to ``/``."""
    config = config or settings
    secure, samesite = _cookie_policy(config)
    response.set_cookie(
        key=config.refresh_cookie_name,
        value=token,
        max_age=config.jwt_refresh_token_expire_days * 24 * 60 * 60,
        path="/",
        domain=config.cookie_domain,
        secure=secure,
        httponly=True,
        samesite=samesite,
    )


def set_access_cookie(response: Response, token: str, config: Settings | None = None) -> None:
    """Attach the access token as a cookie readable by same-site requests."""
    config = config or settings
    secure, samesite = _cookie_policy(config)
    response.set_cookie(
        key=config.access_cookie_name,
        value=token,
        max_age=config.jwt_access_token_expire_minutes * 60,
        path="/",
        domain=config.cookie_domain,
        secure=secure,
        httponly=False,
        samesite=samesite,
    )


def clear_auth_cookies(response: Response, config: Settings | None = None) -> None:
    """Expire both auth cookies (logout)."""
    config = config or settings
    secure, samesite = _cookie_policy(config)
    for name, httponly in (
        (config.access_cookie_name, False),
        (config.refresh_cookie_name, True),
    ):
        response.delete_cookie(
            key=name,
            path="/",
            domain=config.cookie_domain,
            secure=secure,
            httponly=httponly,
            samesite=samesite,
        )
