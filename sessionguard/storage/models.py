from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    """A principal. Only ``id`` and ``is_active`` matter to token handling."""

    id: str
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None


class RefreshTokenState(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


@dataclass
class RefreshTokenRecord:
    id: str
    token: str
    owner_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    revoked: bool = False
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        owner_id: str,
        expires_at: datetime,
        *,
        created_at: Optional[datetime] = None,
    ) -> "RefreshTokenRecord":
        return cls(
            id=str(uuid.uuid4()),
            # 256 bits from the OS CSPRNG
            token=secrets.token_urlsafe(32),
            owner_id=owner_id,
            expires_at=expires_at,
            created_at=created_at or utcnow(),
        )

    @property
    def state(self) -> RefreshTokenState:
        return RefreshTokenState.REVOKED if self.revoked else RefreshTokenState.ACTIVE

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass
class IssuedRefreshToken:
    token: str
    id: str
    expires_at: datetime


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    refresh_token_id: str
    refresh_expires_at: datetime
    token_type: str = "bearer"
