from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.audit import AuditEvent, AuditSink
from sessionguard.service.codec import AccessTokenCodec, TokenError
from sessionguard.service.errors import AuthenticationError, ServerError
from sessionguard.service.expiration import parse_expiration, parse_ttl
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import (
    IssuedRefreshToken,
    RefreshTokenRecord,
    TokenPair,
    User,
)

logger = get_logger(__name__)


class RefreshTokenStore(Protocol):
    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord: ...

    def get_refresh_token_by_value(self, token: str) -> Optional[RefreshTokenRecord]: ...

    def get_refresh_token(self, record_id: str) -> Optional[RefreshTokenRecord]: ...

    def revoke_refresh_token(self, record_id: str, revoked_at: datetime) -> bool: ...

    def rotate_refresh_token(
        self, old_id: str, new_record: RefreshTokenRecord, revoked_at: datetime
    ) -> bool: ...

    def revoke_owner_refresh_tokens(self, owner_id: str, revoked_at: datetime) -> int: ...

    def list_refresh_tokens(
        self, owner_id: str, *, active_only: bool = False
    ) -> List[RefreshTokenRecord]: ...


class PrincipalStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenLifecycleManager:
    """Issues, rotates and revokes access/refresh tokens.

    Refresh tokens are single use. Presenting a token that was already revoked
    is treated as theft: every refresh token of its owner is revoked.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        codec: AccessTokenCodec,
        settings: Settings,
        audit: AuditSink,
        *,
        principals: Optional[PrincipalStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.principals: PrincipalStore = principals if principals is not None else store  # type: ignore[assignment]
        self.codec = codec
        self.settings = settings
        self.audit = audit
        self._clock = clock or _utcnow
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    async def _emit(
        self,
        event: AuditEvent,
        owner_id: str,
        subject_id: str,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        # Audit is best-effort; the state change has already happened.
        try:
            await asyncio.wait_for(
                self.audit.log_action(event, owner_id, subject_id, detail),
                timeout=self.settings.audit_timeout_seconds,
            )
        except asyncio.TimeoutError:
            self.logger.error(
                "audit_sink_timeout",
                audit_event=event.value,
                owner_id=owner_id,
                subject_id=subject_id,
                timeout_seconds=self.settings.audit_timeout_seconds,
            )
        except Exception as exc:
            self.logger.error(
                "audit_sink_failed",
                audit_event=event.value,
                owner_id=owner_id,
                subject_id=subject_id,
                error=str(exc),
            )

    async def issue_access_token(
        self, subject_id: str, scope_id: Optional[str] = None
    ) -> str:
        return self.codec.issue(
            subject_id, scope_id, ttl=parse_ttl(self.settings.access_token_ttl)
        )

    def _new_refresh_record(self, owner_id: str, now: datetime) -> RefreshTokenRecord:
        return RefreshTokenRecord.new(
            owner_id,
            parse_expiration(self.settings.refresh_token_ttl, now=now),
            created_at=now,
        )

    async def issue_refresh_token(self, owner_id: str) -> IssuedRefreshToken:
        record = self._new_refresh_record(owner_id, self._now())
        try:
            saved = self.store.create_refresh_token(record)
        except ConstraintViolation as exc:
            self.logger.error(
                "refresh_token_persist_failed", owner_id=owner_id, error=exc.message
            )
            raise ServerError("failed to persist refresh token", detail=exc.detail) from exc
        await self._emit(
            AuditEvent.REFRESH_TOKEN_CREATED,
            owner_id,
            saved.id,
            {"expires_at": saved.expires_at},
        )
        return IssuedRefreshToken(token=saved.token, id=saved.id, expires_at=saved.expires_at)

    async def issue_token_pair(
        self, subject_id: str, scope_id: Optional[str] = None
    ) -> TokenPair:
        access_token = await self.issue_access_token(subject_id, scope_id)
        refresh = await self.issue_refresh_token(subject_id)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh.token,
            refresh_token_id=refresh.id,
            refresh_expires_at=refresh.expires_at,
        )

    async def validate_access_token(self, token: str) -> Dict[str, Any]:
        try:
            return self.codec.verify(token)
        except TokenError as exc:
            self.logger.info("access_token_rejected", reason=str(exc))
            raise AuthenticationError("invalid or expired access token") from exc

    async def _handle_reuse(self, record: RefreshTokenRecord) -> AuthenticationError:
        revoked = await self.revoke_all_for_owner(record.owner_id)
        self.logger.warning(
            "refresh_token_reuse_detected",
            owner_id=record.owner_id,
            record_id=record.id,
            revoked_count=revoked,
        )
        await self._emit(
            AuditEvent.REFRESH_TOKEN_REUSE_DETECTED,
            record.owner_id,
            record.id,
            {
                "message": "revoked all refresh tokens of the owner after reuse of a revoked token",
                "revoked_count": revoked,
            },
        )
        return AuthenticationError("refresh token has been revoked (possible reuse)")

    async def rotate_on_refresh(self, presented_token: str) -> TokenPair:
        """Exchange a refresh token for a new access/refresh pair.

        Checks run in a fixed order: lookup, reuse, expiry, principal. The
        presented record is then swapped for the new one in a single store
        call that only succeeds while it is still active, so a failed insert
        leaves it usable and of several concurrent presentations only one
        obtains a new pair; the rest are handled as reuse.
        """

        record = (
            self.store.get_refresh_token_by_value(presented_token)
            if presented_token
            else None
        )
        if record is None:
            raise AuthenticationError("invalid refresh token")

        if record.revoked:
            raise await self._handle_reuse(record)

        now = self._now()
        if record.is_expired(now):
            self.logger.info(
                "refresh_token_expired", owner_id=record.owner_id, record_id=record.id
            )
            raise AuthenticationError("refresh token expired")

        user = self.principals.get_user(record.owner_id)
        if user is None:
            raise AuthenticationError("user not found")
        if not user.is_active:
            raise AuthenticationError("user account is inactive")

        # Everything that can fail is done before the old record is consumed
        access_token = await self.issue_access_token(record.owner_id)
        new_record = self._new_refresh_record(record.owner_id, now)
        try:
            rotated = self.store.rotate_refresh_token(record.id, new_record, now)
        except ConstraintViolation as exc:
            self.logger.error(
                "refresh_token_persist_failed", owner_id=record.owner_id, error=exc.message
            )
            raise ServerError("failed to persist refresh token", detail=exc.detail) from exc
        if not rotated:
            # Lost the race to a concurrent rotation of the same token
            raise await self._handle_reuse(record)

        await self._emit(
            AuditEvent.REFRESH_TOKEN_REVOKED,
            record.owner_id,
            record.id,
            {"revoked_at": now, "reason": "rotated"},
        )
        await self._emit(
            AuditEvent.REFRESH_TOKEN_CREATED,
            record.owner_id,
            new_record.id,
            {"expires_at": new_record.expires_at},
        )
        await self._emit(
            AuditEvent.ACCESS_TOKEN_REFRESHED,
            record.owner_id,
            record.id,
            {"new_refresh_token_id": new_record.id},
        )
        self.logger.info(
            "refresh_token_rotated",
            owner_id=record.owner_id,
            record_id=record.id,
            new_record_id=new_record.id,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=new_record.token,
            refresh_token_id=new_record.id,
            refresh_expires_at=new_record.expires_at,
        )

    async def revoke_refresh_token(self, record_id: str) -> bool:
        now = self._now()
        record = self.store.get_refresh_token(record_id)
        changed = self.store.revoke_refresh_token(record_id, now)
        owner_label = record.owner_id if record is not None else record_id
        await self._emit(
            AuditEvent.REFRESH_TOKEN_REVOKED,
            owner_label,
            record_id,
            {"revoked_at": now, "changed": changed},
        )
        return changed

    async def revoke_all_for_owner(self, owner_id: str) -> int:
        now = self._now()
        count = self.store.revoke_owner_refresh_tokens(owner_id, now)
        await self._emit(
            AuditEvent.REFRESH_TOKENS_REVOKED_FOR_USER,
            owner_id,
            owner_id,
            {"revoked_at": now, "count": count},
        )
        return count

    async def resolve_principal(self, token: str) -> User:
        payload = await self.validate_access_token(token)
        user = self.principals.get_user(str(payload.get("sub")))
        if user is None:
            raise AuthenticationError("user not found")
        if not user.is_active:
            raise AuthenticationError("user account is inactive")
        return user

    async def list_active_refresh_tokens(self, owner_id: str) -> List[RefreshTokenRecord]:
        return self.store.list_refresh_tokens(owner_id, active_only=True)


__all__ = [
    "PrincipalStore",
    "RefreshTokenStore",
    "TokenLifecycleManager",
]
