from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class RevokeRequest(BaseModel):
    refresh_token_id: str = Field(..., min_length=1, max_length=128)


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    refresh_token_id: str
    refresh_expires_at: datetime
    token_type: str = "bearer"


class PrincipalResponse(BaseModel):
    user_id: str
    is_active: bool
    created_at: datetime


class RefreshSessionInfo(BaseModel):
    id: str
    created_at: datetime
    expires_at: datetime


class RefreshSessionList(BaseModel):
    items: List[RefreshSessionInfo]


class RevokeResponse(BaseModel):
    revoked: bool = False
    count: int = 0
