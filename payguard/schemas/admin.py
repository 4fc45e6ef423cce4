"""
Admin Session Schemas
"""

from typing import Optional

from pydantic import BaseModel, Field


class AdminLoginRequest(BaseModel):
    """
    Body of POST /admin/login.

    The session identity is derived from the key, never from the body.
    """
    api_key: str = Field(..., min_length=1)


class AdminSession(BaseModel):
    """Signed admin session issued at login."""
    access_token: str
    token_type: str = "bearer"
    expires_in: int = Field(..., description="Seconds until the token expires")


class AdminIdentity(BaseModel):
    """Authenticated caller of an admin endpoint."""
    admin_id: str
    email: Optional[str] = None
    is_admin: bool = False
