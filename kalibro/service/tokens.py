from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from kalibro.logging import get_logger

logger = get_logger(__name__)

_CLAIM_FIELDS = frozenset(
    {"sub", "username", "email", "role", "sid", "kind", "iat", "exp", "iss", "jti"}
)


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class TokenError(str, Enum):
    SIGNATURE_INVALID = "signature_invalid"
    EXPIRED = "expired"
    KIND_MISMATCH = "kind_mismatch"


@dataclass(frozen=True)
class TokenSubject:
    """Identity copied into a token at issuance."""

    user_id: str
    username: str
    email: str
    role: str
    session_id: Optional[str] = None


@dataclass(frozen=True)
class TokenClaims:
    sub: str
    username: str
    email: str
    role: str
    sid: Optional[str]
    kind: TokenKind
    iat: int
    exp: int
    iss: str
    jti: str

    @property
    def user_id(self) -> str:
        return self.sub

    @property
    def session_id(self) -> Optional[str]:
        return self.sid

    def remaining_seconds(self, now: float) -> int:
        return max(0, int(self.exp - now))

    def to_payload(self) -> dict[str, Any]:
        return {
            "sub": self.sub,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "sid": self.sid,
            "kind": self.kind.value,
            "iat": self.iat,
            "exp": self.exp,
            "iss": self.iss,
            "jti": self.jti,
        }

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["TokenClaims"]:
        """Build claims from a decoded payload; None unless the shape is exact."""
        if not isinstance(payload, dict) or set(payload.keys()) != _CLAIM_FIELDS:
            return None
        try:
            kind = TokenKind(payload["kind"])
        except ValueError:
            return None
        text_fields = ("sub", "username", "email", "role", "iss", "jti")
        if not all(isinstance(payload[name], str) and payload[name] for name in text_fields):
            return None
        sid = payload["sid"]
        if sid is not None and not isinstance(sid, str):
            return None
        iat, exp = payload["iat"], payload["exp"]
        if isinstance(iat, bool) or isinstance(exp, bool):
            return None
        if not isinstance(iat, int) or not isinstance(exp, int) or exp <= iat:
            return None
        return cls(
            sub=payload["sub"],
            username=payload["username"],
            email=payload["email"],
            role=payload["role"],
            sid=sid,
            kind=kind,
            iat=iat,
            exp=exp,
            iss=payload["iss"],
            jti=payload["jti"],
        )


@dataclass(frozen=True)
class TokenVerification:
    claims: Optional[TokenClaims] = None
    error: Optional[TokenError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.claims is not None


class TokenCodec:
    """Signs and verifies HS256 tokens with one secret per token kind."""

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        issuer: str = "kalibro-library",
        access_ttl_seconds: int = 15 * 60,
        refresh_ttl_seconds: int = 7 * 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("both signing secrets are required")
        self._secrets = {
            TokenKind.ACCESS: access_secret.encode(),
            TokenKind.REFRESH: refresh_secret.encode(),
        }
        self.issuer = issuer
        self.ttl_seconds = {
            TokenKind.ACCESS: int(access_ttl_seconds),
            TokenKind.REFRESH: int(refresh_ttl_seconds),
        }
        self._clock = clock

    def issue(self, subject: TokenSubject, kind: TokenKind) -> str:
        now = int(self._clock())
        claims = TokenClaims(
            sub=str(subject.user_id),
            username=subject.username,
            email=subject.email,
            role=subject.role,
            sid=subject.session_id,
            kind=kind,
            iat=now,
            exp=now + self.ttl_seconds[kind],
            iss=self.issuer,
            jti=secrets.token_hex(16),
        )
        return self._encode(claims.to_payload(), self._secrets[kind])

    def verify(self, token: str, expected_kind: TokenKind) -> TokenVerification:
        payload = self._decode(token, self._secrets[expected_kind])
        claims = TokenClaims.from_payload(payload) if payload is not None else None
        if claims is None or claims.iss != self.issuer:
            return TokenVerification(error=TokenError.SIGNATURE_INVALID)
        if self._clock() > claims.exp:
            return TokenVerification(error=TokenError.EXPIRED)
        if claims.kind != expected_kind:
            logger.warning(
                "token_kind_mismatch",
                expected=expected_kind.value,
                actual=claims.kind.value,
                jti=claims.jti,
            )
            return TokenVerification(error=TokenError.KIND_MISMATCH)
        return TokenVerification(claims=claims)

    @staticmethod
    def fingerprint(token: str) -> str:
        return hashlib.sha256(token.encode()).hexdigest()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: bytes) -> str:
        return self._encode_segment(
            hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: dict[str, Any], secret: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _decode(self, token: str, secret: bytes) -> Optional[dict[str, Any]]:
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to block algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            return json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None


__all__ = [
    "TokenClaims",
    "TokenCodec",
    "TokenError",
    "TokenKind",
    "TokenSubject",
    "TokenVerification",
]
