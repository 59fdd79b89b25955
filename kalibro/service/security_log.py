from __future__ import annotations

import secrets
import time
from enum import Enum
from typing import Any, Callable, List, Optional

from kalibro.logging import get_logger
from kalibro.storage.errors import StoreUnavailable
from kalibro.storage.kv import KeyValueStore
from kalibro.storage.models import ClientMeta, SecurityEvent, from_timestamp

logger = get_logger(__name__)


class SecurityEventType(str, Enum):
    LOGIN = "login"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    LOGOUT_ERROR = "logout_error"
    TOKEN_REFRESH = "token_refresh"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    PASSWORD_RESET = "password_reset"
    REGISTRATION = "registration"


def event_key(event_id: str) -> str:
    return f"security_log:{event_id}"


def user_events_key(user_id: str) -> str:
    return f"user:{user_id}:security_log"


class SecurityLog:
    """Audit trail of auth events kept in the key-value store."""

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        ttl_seconds: int = 30 * 24 * 60 * 60,
        max_per_user: int = 100,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.kv = kv
        self.ttl_seconds = ttl_seconds
        self.max_per_user = max_per_user
        self._clock = clock

    async def record(
        self,
        event_type: SecurityEventType,
        user_id: Optional[str],
        client_meta: Optional[ClientMeta] = None,
        **details: Any,
    ) -> SecurityEvent:
        meta = client_meta or ClientMeta()
        event = SecurityEvent(
            id=secrets.token_hex(16),
            type=event_type.value,
            user_id=str(user_id) if user_id is not None else None,
            timestamp=from_timestamp(self._clock()),
            ip_address=meta.ip_address,
            user_agent=(meta.user_agent or "")[:200] or None,
            details=details,
        )
        logger.info(
            "security_event",
            event_type=event.type,
            user_id=event.user_id,
            ip_address=event.ip_address,
            **details,
        )
        try:
            await self.kv.set_with_ttl(event_key(event.id), event.to_json(), self.ttl_seconds)
            if event.user_id is not None:
                await self.kv.push_to_list(
                    user_events_key(event.user_id), event.id, self.max_per_user
                )
        except StoreUnavailable as exc:
            logger.warning("security_event_store_failed", event_type=event.type, error=str(exc))
        return event

    async def recent_for_user(self, user_id: str, limit: int = 20) -> List[SecurityEvent]:
        try:
            event_ids = await self.kv.list_range(user_events_key(str(user_id)), 0, limit - 1)
            events: List[SecurityEvent] = []
            for event_id in event_ids:
                raw = await self.kv.get(event_key(event_id))
                if raw:
                    events.append(SecurityEvent.from_json(raw))
        except StoreUnavailable as exc:
            logger.warning("security_event_read_failed", user_id=user_id, error=str(exc))
            return []
        return events


__all__ = ["SecurityEventType", "SecurityLog"]
