from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def from_timestamp(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _parse_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class AccountRole(str, Enum):
    ADMIN = "admin"
    STAFF = "staff"
    STUDENT = "student"
    FACULTY = "faculty"


@dataclass
class Account:
    id: str
    username: str
    email: str
    role: str = AccountRole.STUDENT.value
    is_active: bool = True
    name: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class AccountCredential:
    account_id: str
    password_hash: str
    last_updated_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class ClientMeta:
    """Request metadata recorded alongside a session."""

    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


@dataclass
class SessionRecord:
    id: str
    user_id: str
    access_fingerprint: str
    refresh_fingerprint: str
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    is_active: bool = True

    def to_json(self) -> str:
        payload = asdict(self)
        for key in ("created_at", "last_used_at", "expires_at"):
            payload[key] = payload[key].isoformat()
        return json.dumps(payload, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "SessionRecord":
        payload = json.loads(raw)
        return cls(
            id=str(payload["id"]),
            user_id=str(payload["user_id"]),
            access_fingerprint=payload["access_fingerprint"],
            refresh_fingerprint=payload["refresh_fingerprint"],
            created_at=_parse_datetime(payload["created_at"]),
            last_used_at=_parse_datetime(payload["last_used_at"]),
            expires_at=_parse_datetime(payload["expires_at"]),
            user_agent=payload.get("user_agent"),
            ip_address=payload.get("ip_address"),
            is_active=bool(payload.get("is_active", True)),
        )


@dataclass
class OtpRecord:
    purpose: str
    identifier: str
    code: str
    expires_at: datetime
    attempts: int = 0

    def to_json(self) -> str:
        # attempts live in a separate counter key
        return json.dumps(
            {
                "purpose": self.purpose,
                "identifier": self.identifier,
                "code": self.code,
                "expires_at": self.expires_at.isoformat(),
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, raw: str, *, attempts: int = 0) -> "OtpRecord":
        payload = json.loads(raw)
        return cls(
            purpose=payload["purpose"],
            identifier=payload["identifier"],
            code=str(payload["code"]),
            expires_at=_parse_datetime(payload["expires_at"]),
            attempts=attempts,
        )


@dataclass(frozen=True)
class RateLimitState:
    count: int
    reset_at: Optional[datetime] = None


@dataclass
class SecurityEvent:
    id: str
    type: str
    user_id: Optional[str]
    timestamp: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        payload = asdict(self)
        payload["timestamp"] = self.timestamp.isoformat()
        return json.dumps(payload, separators=(",", ":"), default=str)

    @classmethod
    def from_json(cls, raw: str) -> "SecurityEvent":
        payload = json.loads(raw)
        return cls(
            id=payload["id"],
            type=payload["type"],
            user_id=payload.get("user_id"),
            timestamp=_parse_datetime(payload["timestamp"]),
            ip_address=payload.get("ip_address"),
            user_agent=payload.get("user_agent"),
            details=payload.get("details") or {},
        )
