from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Generic, Literal, Optional, TypeVar

from sessionguard.logging import sanitize_error_message

T = TypeVar("T")


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed (401).

    ``message`` is the internal reason (expired, revoked, inactive...). It is
    logged but never returned to HTTP clients verbatim.
    """

    status_code = 401
    error_code = "unauthorized"


class ServerError(ServiceError):
    """Internal failure of a collaborator such as the store or codec (500)."""

    status_code = 500
    error_code = "server_error"


OutcomeKind = Literal["ok", "unauthorized", "internal_failure"]


@dataclass
class Outcome(Generic[T]):
    """Result of a lifecycle operation for callers that branch instead of catching."""

    kind: OutcomeKind
    value: Optional[T] = None
    reason: Optional[str] = None
    cause: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.kind == "ok"


async def capture(call: Awaitable[T]) -> Outcome[T]:
    """Await ``call`` and fold its result or failure into an :class:`Outcome`."""
    try:
        value = await call
    except AuthenticationError as exc:
        return Outcome(kind="unauthorized", reason=exc.message, cause=exc)
    except Exception as exc:
        raw = exc.message if isinstance(exc, ServiceError) else str(exc)
        return Outcome(
            kind="internal_failure", reason=sanitize_error_message(raw), cause=exc
        )
    return Outcome(kind="ok", value=value)


__all__ = [
    "AuthenticationError",
    "Outcome",
    "OutcomeKind",
    "ServerError",
    "ServiceError",
    "capture",
]
