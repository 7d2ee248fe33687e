from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from stoneridge.config import Settings
from stoneridge.logging import get_logger
from stoneridge.service.clock import Clock
from stoneridge.service.errors import InvalidTokenError
from stoneridge.service.principals import Principal, subject_for

logger = get_logger(__name__)


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    role: str
    principal_id: str
    issued_at: datetime
    expires_at: datetime


class TokenService:
    """Stateless HS256 bearer tokens.

    Access and refresh tokens carry the same claims and differ only in
    ``exp``; the kind picks the lifetime and nothing else. Expiry is strict
    (``now >= exp`` is expired) with no skew allowance.
    """

    def __init__(self, settings: Settings, clock: Clock) -> None:
        if not settings.jwt_secret:
            raise ValueError("TokenService requires a JWT secret")
        self.settings = settings
        self.clock = clock
        self._secret = settings.jwt_secret.encode()

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    def ttl_for(self, kind: TokenKind) -> timedelta:
        return self.access_ttl if kind is TokenKind.ACCESS else self.refresh_ttl

    def mint(
        self, principal: Principal, kind: TokenKind, ttl: Optional[timedelta] = None
    ) -> str:
        now = self.clock.now()
        lifetime = ttl if ttl is not None else self.ttl_for(kind)
        payload = {
            "sub": subject_for(principal),
            "role": principal.role,
            "uid": principal.id,
            "iss": self.settings.jwt_issuer,
            "iat": int(now.timestamp()),
            "exp": int((now + lifetime).timestamp()),
        }
        return self._encode_jwt(payload)

    def mint_access(self, principal: Principal) -> str:
        return self.mint(principal, TokenKind.ACCESS)

    def mint_refresh(self, principal: Principal) -> str:
        return self.mint(principal, TokenKind.REFRESH)

    def validate(self, token: str, expected_subject: Optional[str] = None) -> TokenClaims:
        """Check signature, issuer, expiry and optionally the subject.

        Every failure raises ``InvalidTokenError`` with the same message.
        """
        payload = self._decode_jwt(token)
        if payload is None:
            raise InvalidTokenError("Invalid token")
        subject = payload.get("sub")
        exp = payload.get("exp")
        if not isinstance(subject, str) or not subject:
            raise InvalidTokenError("Invalid token")
        try:
            exp_ts = float(exp)
            iat_ts = float(payload.get("iat", 0))
        except (TypeError, ValueError):
            raise InvalidTokenError("Invalid token")
        if self.clock.now().timestamp() >= exp_ts:
            logger.info("token_expired", subject=subject)
            raise InvalidTokenError("Invalid token")
        if expected_subject is not None and not hmac.compare_digest(
            subject.encode(), expected_subject.encode()
        ):
            logger.warning("token_subject_mismatch")
            raise InvalidTokenError("Invalid token")
        return TokenClaims(
            subject=subject,
            role=str(payload.get("role", "")),
            principal_id=str(payload.get("uid", "")),
            issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
        )

    def peek_subject(self, token: str) -> str:
        """Read ``sub`` without checking the signature; the result is untrusted."""
        try:
            _, payload_b64, _ = token.split(".")
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError, AttributeError):
            raise InvalidTokenError("Invalid token")
        subject = payload.get("sub") if isinstance(payload, dict) else None
        if not isinstance(subject, str) or not subject:
            raise InvalidTokenError("Invalid token")
        return subject

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict) or payload.get("iss") != self.settings.jwt_issuer:
            return None
        return payload
