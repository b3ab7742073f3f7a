from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from sessionguard.logging import get_logger
from sessionguard.storage.errors import (
    ConstraintViolation,
    DuplicateTokenValue,
    UnknownOwner,
)
from sessionguard.storage.models import RefreshTokenRecord, User


class MemoryStore:
    """In-memory refresh token and principal store.

    Every read-modify-write runs under one re-entrant lock, so a conditional
    revoke observes and flips ``revoked`` atomically. When ``fs_root`` is given
    the state is mirrored to ``<fs_root>/state/token_store.json`` and reloaded
    on construction.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self._by_token: Dict[str, str] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "token_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # principals
    def create_user(
        self,
        user_id: Optional[str] = None,
        *,
        is_active: bool = True,
        meta: Optional[Dict] = None,
    ) -> User:
        with self._data_lock:
            user_id = user_id or str(uuid.uuid4())
            if user_id in self.users:
                raise ConstraintViolation("user already exists", {"user_id": user_id})
            user = User(id=user_id, is_active=is_active, meta=meta)
            self.users[user_id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            self._persist_state()
            return user

    # refresh tokens
    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._data_lock:
            if record.owner_id not in self.users:
                raise UnknownOwner(record.owner_id)
            if record.id in self.refresh_tokens or record.token in self._by_token:
                raise DuplicateTokenValue(record.id)
            self.refresh_tokens[record.id] = record
            self._by_token[record.token] = record.id
            self._persist_state()
            return record

    def get_refresh_token(self, record_id: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            return self.refresh_tokens.get(record_id)

    def get_refresh_token_by_value(self, token: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record_id = self._by_token.get(token)
            return self.refresh_tokens.get(record_id) if record_id else None

    def revoke_refresh_token(self, record_id: str, revoked_at: datetime) -> bool:
        """Revoke one record if it is still active. Returns True if this call revoked it."""
        with self._data_lock:
            record = self.refresh_tokens.get(record_id)
            if record is None or record.revoked:
                return False
            record.revoked = True
            record.revoked_at = max(revoked_at, record.created_at)
            self._persist_state()
            return True

    def rotate_refresh_token(
        self, old_id: str, new_record: RefreshTokenRecord, revoked_at: datetime
    ) -> bool:
        """Revoke ``old_id`` and store ``new_record`` as one step.

        Returns False without storing anything when ``old_id`` is unknown or
        already revoked. If the insert fails the revocation is undone.
        """
        with self._data_lock:
            record = self.refresh_tokens.get(old_id)
            if record is None or record.revoked:
                return False
            previous_revoked_at = record.revoked_at
            record.revoked = True
            record.revoked_at = max(revoked_at, record.created_at)
            try:
                self.create_refresh_token(new_record)
            except Exception:
                record.revoked = False
                record.revoked_at = previous_revoked_at
                if self.refresh_tokens.get(new_record.id) is new_record:
                    del self.refresh_tokens[new_record.id]
                    self._by_token.pop(new_record.token, None)
                raise
            return True

    def revoke_owner_refresh_tokens(self, owner_id: str, revoked_at: datetime) -> int:
        with self._data_lock:
            changed = 0
            for record in self.refresh_tokens.values():
                if record.owner_id != owner_id or record.revoked:
                    continue
                record.revoked = True
                record.revoked_at = max(revoked_at, record.created_at)
                changed += 1
            if changed:
                self._persist_state()
            return changed

    def list_refresh_tokens(
        self, owner_id: str, *, active_only: bool = False
    ) -> List[RefreshTokenRecord]:
        with self._data_lock:
            records = [
                r
                for r in self.refresh_tokens.values()
                if r.owner_id == owner_id and not (active_only and r.revoked)
            ]
            return sorted(records, key=lambda r: r.created_at, reverse=True)

    # persistence
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist token store state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.refresh_tokens = {
            r["id"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self._by_token = {r.token: r.id for r in self.refresh_tokens.values()}
        self.logger.info(
            "token_store_state_loaded",
            users=len(self.users),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "is_active": user.is_active,
            "created_at": self._serialize_datetime(user.created_at),
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data["created_at"]),
            meta=data.get("meta"),
        )

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        return {
            "id": record.id,
            "token": record.token,
            "owner_id": record.owner_id,
            "created_at": self._serialize_datetime(record.created_at),
            "expires_at": self._serialize_datetime(record.expires_at),
            "revoked": record.revoked,
            "revoked_at": self._serialize_datetime(record.revoked_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=data["id"],
            token=data["token"],
            owner_id=data["owner_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked=bool(data.get("revoked", False)),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
        )
