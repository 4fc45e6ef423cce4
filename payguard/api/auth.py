"""
API auth helpers.

Supports optional API and metrics tokens via headers, and signed admin
session tokens (HS256) issued by POST /admin/login.
"""

import hmac
from datetime import datetime, timedelta, UTC
from typing import Optional

import jwt
from fastapi import Header, HTTPException, status

from ..config import settings
from ..schemas import AdminIdentity

SESSION_ALGORITHM = "HS256"
SESSION_ISSUER = "payguard-admin"


def _extract_token(authorization: str | None, x_api_key: str | None) -> str | None:
    if x_api_key:
        return x_api_key.strip()
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip()
    return None


def _equals(supplied: str, expected: str) -> bool:
    return hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


def _unauthorized(detail: str = "Unauthorized") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def require_api_token(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
) -> None:
    """Require API token if configured."""
    if not settings.api_token:
        return
    token = _extract_token(authorization, x_api_key)
    if token is None or not _equals(token, settings.api_token):
        raise _unauthorized()


def require_metrics_token(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
) -> None:
    """Require metrics token if configured."""
    if not settings.metrics_token:
        return
    token = _extract_token(authorization, x_api_key)
    if token is None or not _equals(token, settings.metrics_token):
        raise _unauthorized()


def identify_login_key(api_key: str) -> Optional[AdminIdentity]:
    """
    Map a login key to the identity it was issued for.

    ADMIN_TOKEN yields the configured admin with the admin claim.
    Operator keys yield the operator's email without it, so operators
    are authorized only through the email allow-list.

    Returns:
        AdminIdentity, or None if the key matches nothing
    """
    identity = None
    if settings.admin_token and _equals(api_key, settings.admin_token):
        identity = AdminIdentity(admin_id=settings.admin_id, is_admin=True)

    for email, key in settings.operator_key_map.items():
        if _equals(api_key, key) and identity is None:
            identity = AdminIdentity(admin_id=email, email=email, is_admin=False)

    return identity


def create_admin_session(
    admin_id: str,
    email: Optional[str] = None,
    is_admin: bool = True,
    ttl: Optional[timedelta] = None,
) -> str:
    """Sign an admin session token."""
    now = datetime.now(UTC)
    claims = {
        "sub": admin_id,
        "admin": is_admin,
        "iat": now,
        "exp": now + (ttl if ttl is not None else timedelta(minutes=settings.admin_session_ttl_minutes)),
        "iss": SESSION_ISSUER,
    }
    if email:
        claims["email"] = email.lower()
    return jwt.encode(claims, settings.admin_session_secret, algorithm=SESSION_ALGORITHM)


def decode_admin_session(token: str) -> AdminIdentity:
    """
    Verify an admin session token.

    Raises:
        HTTPException: 401 if the token is expired or invalid
    """
    try:
        claims = jwt.decode(
            token,
            settings.admin_session_secret,
            algorithms=[SESSION_ALGORITHM],
            issuer=SESSION_ISSUER,
            options={"require": ["sub", "exp", "iss"]},
        )
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Session expired")
    except jwt.InvalidTokenError:
        raise _unauthorized("Invalid session")

    return AdminIdentity(
        admin_id=str(claims["sub"]),
        email=claims.get("email"),
        is_admin=claims.get("admin") is True,
    )


def authenticate_admin(authorization: str | None) -> AdminIdentity:
    """Resolve the caller's admin identity from the Authorization header."""
    token = _extract_token(authorization, None)
    if not token:
        raise _unauthorized("Authentication required")
    return decode_admin_session(token)
