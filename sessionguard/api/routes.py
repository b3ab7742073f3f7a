from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from sessionguard.api.schemas import (
    Envelope,
    PrincipalResponse,
    RefreshSessionInfo,
    RefreshSessionList,
    RevokeRequest,
    RevokeResponse,
    TokenPairResponse,
    TokenRefreshRequest,
)
from sessionguard.logging import get_logger
from sessionguard.service.errors import AuthenticationError
from sessionguard.service.runtime import get_runtime
from sessionguard.storage.models import TokenPair, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError("missing authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("malformed authorization header")
    return token.strip()


async def get_principal(authorization: Optional[str] = Header(None)) -> User:
    runtime = get_runtime()
    return await runtime.tokens.resolve_principal(_bearer_token(authorization))


def _pair_response(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        refresh_token_id=pair.refresh_token_id,
        refresh_expires_at=pair.refresh_expires_at,
        token_type=pair.token_type,
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    pair = await runtime.tokens.rotate_on_refresh(body.refresh_token)
    return Envelope(status="ok", data=_pair_response(pair))


@router.post("/auth/revoke", response_model=Envelope, tags=["auth"])
async def revoke_refresh_token(
    body: RevokeRequest, principal: User = Depends(get_principal)
):
    runtime = get_runtime()
    record = runtime.store.get_refresh_token(body.refresh_token_id)
    if record is None or record.owner_id != principal.id:
        raise HTTPException(status_code=404, detail="refresh token not found")
    changed = await runtime.tokens.revoke_refresh_token(record.id)
    return Envelope(status="ok", data=RevokeResponse(revoked=changed, count=int(changed)))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: User = Depends(get_principal)):
    runtime = get_runtime()
    count = await runtime.tokens.revoke_all_for_owner(principal.id)
    logger.info("logout_all", user_id=principal.id, revoked_count=count)
    return Envelope(status="ok", data=RevokeResponse(revoked=count > 0, count=count))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: User = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            user_id=principal.id,
            is_active=principal.is_active,
            created_at=principal.created_at,
        ),
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: User = Depends(get_principal)):
    runtime = get_runtime()
    records = await runtime.tokens.list_active_refresh_tokens(principal.id)
    return Envelope(
        status="ok",
        data=RefreshSessionList(
            items=[
                RefreshSessionInfo(id=r.id, created_at=r.created_at, expires_at=r.expires_at)
                for r in records
            ]
        ),
    )
