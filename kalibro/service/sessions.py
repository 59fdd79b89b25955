from __future__ import annotations

import secrets
import time
from typing import Callable, List, Optional

from kalibro.logging import get_logger
from kalibro.service.tokens import TokenCodec, TokenKind
from kalibro.storage.errors import StoreUnavailable
from kalibro.storage.kv import KeyValueStore
from kalibro.storage.models import ClientMeta, SessionRecord, from_timestamp

logger = get_logger(__name__)


def session_key(session_id: str) -> str:
    return f"session:{session_id}"


def user_sessions_key(user_id: str) -> str:
    return f"user:{user_id}:sessions"


class SessionStore:
    """Server-side session records keyed by a random id.

    Sessions are an audit and revocation aid. Every operation logs and
    swallows ``StoreUnavailable`` so a cache outage never blocks login or
    logout.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        ttl_seconds: int = 7 * 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.kv = kv
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    @staticmethod
    def new_session_id() -> str:
        return secrets.token_hex(32)

    def _remaining_ttl(self, record: SessionRecord) -> int:
        return int(record.expires_at.timestamp() - self._clock())

    async def create(
        self,
        user_id: str,
        access_token: str,
        refresh_token: str,
        client_meta: Optional[ClientMeta] = None,
        *,
        session_id: Optional[str] = None,
    ) -> str:
        session_id = session_id or self.new_session_id()
        meta = client_meta or ClientMeta()
        now = self._clock()
        record = SessionRecord(
            id=session_id,
            user_id=str(user_id),
            access_fingerprint=TokenCodec.fingerprint(access_token),
            refresh_fingerprint=TokenCodec.fingerprint(refresh_token),
            created_at=from_timestamp(now),
            last_used_at=from_timestamp(now),
            expires_at=from_timestamp(now + self.ttl_seconds),
            user_agent=meta.user_agent,
            ip_address=meta.ip_address,
        )
        try:
            await self.kv.set_with_ttl(
                session_key(session_id), record.to_json(), self.ttl_seconds
            )
            index_key = user_sessions_key(record.user_id)
            await self.kv.add_to_set(index_key, session_id)
            # The index lives no longer than its newest session
            await self.kv.expire(index_key, self.ttl_seconds)
        except StoreUnavailable as exc:
            logger.warning(
                "session_create_failed", session_id=session_id, user_id=record.user_id, error=str(exc)
            )
        return session_id

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        try:
            raw = await self.kv.get(session_key(session_id))
        except StoreUnavailable as exc:
            logger.warning("session_lookup_failed", session_id=session_id, error=str(exc))
            return None
        if not raw:
            return None
        try:
            return SessionRecord.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("session_record_corrupt", session_id=session_id, error=str(exc))
            return None

    async def _rewrite(self, record: SessionRecord) -> bool:
        ttl = self._remaining_ttl(record)
        if ttl <= 0:
            return False
        try:
            return await self.kv.set_with_ttl(session_key(record.id), record.to_json(), ttl)
        except StoreUnavailable as exc:
            logger.warning("session_write_failed", session_id=record.id, error=str(exc))
            return False

    async def touch(self, session_id: str) -> None:
        record = await self.get(session_id)
        if record is None:
            return
        record.last_used_at = from_timestamp(self._clock())
        await self._rewrite(record)

    async def rotate_access_fingerprint(self, session_id: str, new_access_token: str) -> bool:
        record = await self.get(session_id)
        if record is None:
            return False
        record.access_fingerprint = TokenCodec.fingerprint(new_access_token)
        record.last_used_at = from_timestamp(self._clock())
        return await self._rewrite(record)

    async def revoke(self, session_id: str, kind: TokenKind) -> None:
        record = await self.get(session_id)
        if record is None:
            return
        if kind == TokenKind.ACCESS:
            # Keep the record for audit; it can no longer refresh
            record.is_active = False
            await self._rewrite(record)
            logger.info("session_deactivated", session_id=session_id, user_id=record.user_id)
            return
        try:
            await self.kv.delete(session_key(session_id))
            await self.kv.remove_from_set(user_sessions_key(record.user_id), session_id)
        except StoreUnavailable as exc:
            logger.warning("session_revoke_failed", session_id=session_id, error=str(exc))
            return
        logger.info("session_deleted", session_id=session_id, user_id=record.user_id)

    async def list_for_user(self, user_id: str) -> List[SessionRecord]:
        try:
            session_ids = await self.kv.members_of(user_sessions_key(str(user_id)))
        except StoreUnavailable as exc:
            logger.warning("session_list_failed", user_id=user_id, error=str(exc))
            return []
        now = self._clock()
        sessions: List[SessionRecord] = []
        for session_id in session_ids:
            record = await self.get(session_id)
            if record is None:
                continue
            if record.is_active and record.expires_at.timestamp() > now:
                sessions.append(record)
        sessions.sort(key=lambda item: item.created_at)
        return sessions

    async def revoke_all_for_user(self, user_id: str) -> int:
        index_key = user_sessions_key(str(user_id))
        try:
            session_ids = await self.kv.members_of(index_key)
            if session_ids:
                await self.kv.delete(*[session_key(sid) for sid in session_ids])
            await self.kv.delete(index_key)
        except StoreUnavailable as exc:
            logger.warning("session_revoke_all_failed", user_id=user_id, error=str(exc))
            return 0
        logger.info("sessions_revoked_all", user_id=user_id, count=len(session_ids))
        return len(session_ids)

    async def cleanup_expired(self) -> int:
        """Prune per-user index entries whose session record is gone.

        Records expire on their own with the key TTL, but the
        ``user:{id}:sessions`` sets only shrink on explicit revocation.
        Scans every index, so it belongs in a maintenance job and never on a
        request path. Returns the number of index entries removed.
        """
        removed = 0
        try:
            index_keys = await self.kv.scan_keys(user_sessions_key("*"))
        except StoreUnavailable as exc:
            logger.warning("session_cleanup_failed", error=str(exc))
            return 0
        now = self._clock()
        for index_key in index_keys:
            try:
                session_ids = await self.kv.members_of(index_key)
            except StoreUnavailable as exc:
                logger.warning("session_cleanup_failed", index_key=index_key, error=str(exc))
                continue
            for session_id in session_ids:
                try:
                    raw = await self.kv.get(session_key(session_id))
                    if raw:
                        record = await self.get(session_id)
                        if record is not None and record.expires_at.timestamp() > now:
                            continue
                        await self.kv.delete(session_key(session_id))
                    await self.kv.remove_from_set(index_key, session_id)
                except StoreUnavailable as exc:
                    logger.warning("session_cleanup_failed", session_id=session_id, error=str(exc))
                    continue
                removed += 1
        logger.info("session_cleanup_complete", scanned=len(index_keys), removed=removed)
        return removed


__all__ = ["SessionStore", "session_key", "user_sessions_key"]
