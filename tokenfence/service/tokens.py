from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

from tokenfence.config import Settings
from tokenfence.logging import get_logger
from tokenfence.service.errors import (
    TokenExpired,
    TokenMalformed,
    TokenSignatureInvalid,
)

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

_HEADER = {"alg": "HS256", "typ": "JWT"}


class TokenSubject(Protocol):
    id: str
    email: str
    role: str


@dataclass(frozen=True)
class TokenClaims:
    subject_id: Optional[str]
    subject_email: Optional[str]
    role: Optional[str]
    issued_at: Optional[float]
    expires_at: Optional[int]
    token_type: Optional[str]
    jti: Optional[str]

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenClaims":
        return cls(
            subject_id=_as_str(payload.get("sub")),
            subject_email=_as_str(payload.get("email")),
            role=_as_str(payload.get("role")),
            issued_at=_as_float(payload.get("iat")),
            expires_at=_as_int(payload.get("exp")),
            token_type=_as_str(payload.get("token_type")),
            jti=_as_str(payload.get("jti")),
        )


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    expires_at: datetime


def _as_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _split(token: str) -> tuple[str, str, str]:
    if not isinstance(token, str):
        raise TokenMalformed()
    parts = token.split(".")
    if len(parts) != 3 or not all(parts):
        raise TokenMalformed()
    return parts[0], parts[1], parts[2]


def _read_payload(payload_b64: str) -> dict[str, Any]:
    try:
        payload = json.loads(_decode_segment(payload_b64))
    except (ValueError, TypeError):
        raise TokenMalformed()
    if not isinstance(payload, dict):
        raise TokenMalformed()
    return payload


class TokenCodec:
    """Issues and verifies HS256 access/refresh credentials.

    Access and refresh credentials are signed with different keys and carry
    different lifetimes, so neither can stand in for the other. ``iat`` keeps
    sub-second precision so a fence written in the same second as a login
    still orders correctly against it.
    """

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        issuer: str,
        audience: str,
        clock: Callable[[], float] = time.time,
        leeway_seconds: int = 0,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("both signing keys are required")
        if access_secret == refresh_secret:
            raise ValueError("access and refresh signing keys must differ")
        self._keys = {
            ACCESS: access_secret.encode(),
            REFRESH: refresh_secret.encode(),
        }
        self._ttls = {ACCESS: int(access_ttl_seconds), REFRESH: int(refresh_ttl_seconds)}
        self.issuer = issuer
        self.audience = audience
        self._clock = clock
        self.leeway_seconds = leeway_seconds

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Callable[[], float] = time.time
    ) -> "TokenCodec":
        return cls(
            access_secret=settings.jwt_secret,
            refresh_secret=settings.jwt_refresh_secret,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            clock=clock,
            leeway_seconds=settings.jwt_clock_skew_leeway_seconds,
        )

    @property
    def access_ttl_seconds(self) -> int:
        return self._ttls[ACCESS]

    @property
    def refresh_ttl_seconds(self) -> int:
        return self._ttls[REFRESH]

    def _sign(self, token_type: str, signing_input: str) -> str:
        digest = hmac.new(
            self._keys[token_type], signing_input.encode(), hashlib.sha256
        ).digest()
        return _encode_segment(digest)

    def _encode(self, subject: TokenSubject, token_type: str, now: float) -> str:
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject.id,
            "email": subject.email,
            "role": subject.role,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": int(now) + self._ttls[token_type],
        }
        header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(token_type, signing_input)}"

    def issue(self, subject: TokenSubject) -> TokenPair:
        """Issue a fresh access/refresh pair for ``subject``."""
        now = self._clock()
        access = self._encode(subject, ACCESS, now)
        refresh = self._encode(subject, REFRESH, now)
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            expires_in=self._ttls[ACCESS],
            expires_at=datetime.fromtimestamp(
                int(now) + self._ttls[ACCESS], tz=timezone.utc
            ),
        )

    def issue_access(self, subject: TokenSubject) -> str:
        return self._encode(subject, ACCESS, self._clock())

    def verify_access(self, token: str, *, check_expiry: bool = True) -> TokenClaims:
        return self._verify(token, ACCESS, check_expiry=check_expiry)

    def verify_refresh(self, token: str, *, check_expiry: bool = True) -> TokenClaims:
        return self._verify(token, REFRESH, check_expiry=check_expiry)

    def _verify(self, token: str, token_type: str, *, check_expiry: bool) -> TokenClaims:
        header_b64, payload_b64, sig_b64 = _split(token)

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            raise TokenMalformed()
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenMalformed()

        expected_sig = self._sign(token_type, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenSignatureInvalid()

        payload = _read_payload(payload_b64)
        if payload.get("token_type") != token_type:
            raise TokenMalformed()
        if payload.get("iss") != self.issuer:
            raise TokenMalformed()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenMalformed()

        claims = TokenClaims.from_payload(payload)
        if claims.subject_id is None or claims.expires_at is None:
            raise TokenMalformed()
        if check_expiry and claims.expires_at <= self._clock() - self.leeway_seconds:
            raise TokenExpired()
        return claims

    def decode_unsafe(self, token: str) -> Optional[TokenClaims]:
        """Read claims without checking the signature.

        Only for ledger bookkeeping (expiry, subject, issued-at); never for
        authorization decisions.
        """
        try:
            _, payload_b64, _ = _split(token)
            return TokenClaims.from_payload(_read_payload(payload_b64))
        except TokenMalformed:
            return None
