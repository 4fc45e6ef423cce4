"""
Rate Limit Schemas
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class RateLimitTier(str, Enum):
    """Independently keyed admin rate-limit tiers."""
    LOGIN = "login"
    ADMIN_ACTION = "admin_action"
    BULK_OPERATION = "bulk_operation"


@dataclass(frozen=True)
class TierPolicy:
    """Ceiling and fixed-window length for one tier."""
    limit: int
    window_seconds: int
    message: str


class RateLimitResult(BaseModel):
    """
    Outcome of a rate-limit check.

    Allowed results carry ``remaining``; rejected results carry
    ``retry_after`` (seconds until the window resets) and a message.
    """
    allowed: bool
    remaining: int = Field(default=0, ge=0)
    retry_after: Optional[int] = None
    message: Optional[str] = None
    tier: Optional[RateLimitTier] = None
