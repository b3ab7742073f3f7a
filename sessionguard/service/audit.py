from __future__ import annotations

import asyncio
import json
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import redis.asyncio as aioredis

from sessionguard.logging import get_logger, get_correlation_id


class AuditEvent(str, Enum):
    REFRESH_TOKEN_CREATED = "REFRESH_TOKEN_CREATED"
    REFRESH_TOKEN_REVOKED = "REFRESH_TOKEN_REVOKED"
    REFRESH_TOKEN_REUSE_DETECTED = "REFRESH_TOKEN_REUSE_DETECTED"
    REFRESH_TOKENS_REVOKED_FOR_USER = "REFRESH_TOKENS_REVOKED_FOR_USER"
    ACCESS_TOKEN_REFRESHED = "ACCESS_TOKEN_REFRESHED"


class AuditSink(Protocol):
    async def log_action(
        self,
        event: AuditEvent,
        owner_id: str,
        subject_id: str,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None: ...


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


def build_record(
    event: AuditEvent,
    owner_id: str,
    subject_id: str,
    detail: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "ts": datetime.now(timezone.utc).isoformat(),
        "event": AuditEvent(event).value,
        "owner_id": owner_id,
        "subject_id": subject_id,
        "correlation_id": get_correlation_id(),
        "detail": detail or {},
    }


class LoggingAuditSink:
    """Writes audit events to the structured log."""

    def __init__(self) -> None:
        self.logger = get_logger("sessionguard.audit")

    async def log_action(self, event, owner_id, subject_id, detail=None) -> None:
        self.logger.info(
            "audit_event",
            audit_event=AuditEvent(event).value,
            owner_id=owner_id,
            subject_id=subject_id,
            detail=json.loads(json.dumps(detail or {}, default=_json_default)),
        )


class JsonlAuditSink:
    """Append-only newline-delimited JSON audit trail.

    Each record goes to a daily ``audit-YYYYMMDD.log`` file and to a rolling
    ``audit.jsonl`` in ``directory``.
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self._lock = threading.Lock()

    def daily_path(self, ts: datetime) -> Path:
        return self.directory / f"audit-{ts:%Y%m%d}.log"

    def latest_path(self) -> Path:
        return self.directory / "audit.jsonl"

    def _write(self, record: Dict[str, Any]) -> None:
        line = json.dumps(
            record, ensure_ascii=False, separators=(",", ":"), default=_json_default
        )
        self.directory.mkdir(parents=True, exist_ok=True)
        daily = self.daily_path(datetime.now(timezone.utc))
        with self._lock:
            with daily.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
            with self.latest_path().open("a", encoding="utf-8") as f:
                f.write(line + "\n")

    async def log_action(self, event, owner_id, subject_id, detail=None) -> None:
        record = build_record(event, owner_id, subject_id, detail)
        await asyncio.to_thread(self._write, record)


class RedisAuditSink:
    """Appends audit events to a capped Redis stream."""

    DEFAULT_STREAM = "sessionguard:audit"

    def __init__(
        self,
        redis_url: str,
        *,
        stream: str = DEFAULT_STREAM,
        maxlen: int = 100_000,
        socket_timeout: float = 5.0,
    ) -> None:
        self.redis_url = redis_url
        self.stream = stream
        self.maxlen = maxlen
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    async def log_action(self, event, owner_id, subject_id, detail=None) -> None:
        record = build_record(event, owner_id, subject_id, detail)
        fields = {
            key: (
                json.dumps(value, default=_json_default)
                if isinstance(value, dict)
                else ("" if value is None else str(value))
            )
            for key, value in record.items()
        }
        await self.client.xadd(
            self.stream, fields, maxlen=self.maxlen, approximate=True
        )

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()


__all__ = [
    "AuditEvent",
    "AuditSink",
    "JsonlAuditSink",
    "LoggingAuditSink",
    "RedisAuditSink",
    "build_record",
]
