"""
Admin Security Gateway

Guards every privileged endpoint, in this order:
1. Authenticate the admin session (401, before any rate-limit check)
2. Rate limit on the admin-action tier when enabled (429 with retryAfter),
   and the bulk tier for bulk operations
3. Authorize: admin claim, or bootstrap email allow-list (403)

The allow-list is consulted only after steps 1 and 2, so it can never
bypass rate limiting.
"""

import logging
from typing import Awaitable, Callable

from fastapi import Depends, Header, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse

from ..config import settings
from ..errors import RateLimitExceeded
from ..schemas import AdminIdentity, RateLimitResult
from .auth import authenticate_admin
from .dependencies import Services, get_services

logger = logging.getLogger("payguard.api.gateway")


def raise_if_limited(result: RateLimitResult) -> None:
    """Turn a rejected rate-limit result into RateLimitExceeded."""
    if not result.allowed:
        raise RateLimitExceeded(
            result.message or "Rate limit exceeded",
            retry_after=result.retry_after or 1,
            tier=result.tier.value if result.tier else None,
        )


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 with ``retryAfter`` in the body and a Retry-After header."""
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"error": exc.message, "retryAfter": exc.retry_after},
        headers={
            "Retry-After": str(exc.retry_after),
            "X-RateLimit-Remaining": "0",
        },
    )


def is_authorized(identity: AdminIdentity) -> bool:
    if identity.is_admin:
        return True
    return bool(identity.email) and identity.email.lower() in settings.admin_email_allowlist_set


def require_admin(
    check_rate_limit: bool = True,
    bulk: bool = False,
) -> Callable[..., Awaitable[AdminIdentity]]:
    """
    Build the gateway dependency for an admin endpoint.

    Args:
        check_rate_limit: Consume the admin-action tier
        bulk: Also consume the bulk-operation tier

    Returns:
        FastAPI dependency resolving to the caller's AdminIdentity
    """

    async def gateway(
        response: Response,
        authorization: str | None = Header(default=None),
        services: Services = Depends(get_services),
    ) -> AdminIdentity:
        identity = authenticate_admin(authorization)

        if check_rate_limit:
            result = await services.rate_limiter.check_admin_action_rate_limit(identity.admin_id)
            raise_if_limited(result)
            response.headers["X-RateLimit-Remaining"] = str(result.remaining)

        if bulk:
            result = await services.rate_limiter.check_bulk_operation_rate_limit(identity.admin_id)
            raise_if_limited(result)
            response.headers["X-RateLimit-Bulk-Remaining"] = str(result.remaining)

        if not is_authorized(identity):
            logger.warning("Admin authorization denied: admin_id=%s email=%s", identity.admin_id, identity.email)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")

        return identity

    return gateway
