from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from datetime import timedelta
from typing import Any, Optional, Protocol

from sessionguard.logging import get_logger

logger = get_logger(__name__)


class TokenError(Exception):
    """Base class for access token verification failures."""


class InvalidToken(TokenError):
    pass


class ExpiredToken(TokenError):
    pass


class AccessTokenCodec(Protocol):
    def issue(
        self, subject_id: str, scope_id: Optional[str] = None, *, ttl: timedelta
    ) -> str: ...

    def verify(self, token: str) -> dict[str, Any]: ...


class HS256Codec:
    """Compact JWT signed with HMAC-SHA256.

    Only HS256 headers are accepted, and ``iss``/``aud``/``token_type`` must
    match what this codec issues.
    """

    def __init__(
        self,
        secret: str,
        issuer: str,
        audience: str,
        leeway_seconds: int = 0,
    ) -> None:
        if not secret:
            raise ValueError("signing secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(
        self, subject_id: str, scope_id: Optional[str] = None, *, ttl: timedelta
    ) -> str:
        now = int(time.time())
        payload: dict[str, Any] = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject_id,
            "iat": now,
            "exp": now + int(ttl.total_seconds()),
            "jti": str(uuid.uuid4()),
            "token_type": "access",
        }
        if scope_id is not None:
            payload["scope_id"] = scope_id
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str) -> dict[str, Any]:
        if not isinstance(token, str):
            raise InvalidToken("token must be a string")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidToken("malformed token")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidToken("malformed header")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidToken("unsupported algorithm")

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise InvalidToken("signature mismatch")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidToken("malformed payload")
        if not isinstance(payload, dict):
            raise InvalidToken("malformed payload")

        if payload.get("iss") != self.issuer:
            raise InvalidToken("issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise InvalidToken("audience mismatch")
        if payload.get("token_type") != "access":
            raise InvalidToken("not an access token")
        if not payload.get("sub"):
            raise InvalidToken("missing subject")

        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            raise InvalidToken("missing expiry")
        if exp_ts <= time.time() - self.leeway_seconds:
            raise ExpiredToken("token expired")
        return payload


__all__ = [
    "AccessTokenCodec",
    "ExpiredToken",
    "HS256Codec",
    "InvalidToken",
    "TokenError",
]
