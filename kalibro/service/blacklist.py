from __future__ import annotations

from kalibro.logging import get_logger
from kalibro.service.tokens import TokenKind
from kalibro.storage.errors import StoreUnavailable
from kalibro.storage.kv import KeyValueStore

logger = get_logger(__name__)

_SENTINEL = "1"


def blacklist_key(raw_token: str, kind: TokenKind = TokenKind.ACCESS) -> str:
    return f"blacklist:{kind.value}:{raw_token}"


class RevocationLedger:
    """Negative cache of explicitly revoked raw tokens.

    Entries expire with the token they revoke. Store outages read as "not
    blacklisted" and are logged for operators.
    """

    def __init__(self, kv: KeyValueStore) -> None:
        self.kv = kv

    async def blacklist(
        self,
        raw_token: str,
        remaining_ttl_seconds: int,
        *,
        kind: TokenKind = TokenKind.ACCESS,
    ) -> bool:
        if remaining_ttl_seconds <= 0:
            return False
        try:
            return await self.kv.set_with_ttl(
                blacklist_key(raw_token, kind), _SENTINEL, int(remaining_ttl_seconds)
            )
        except StoreUnavailable as exc:
            logger.warning("blacklist_write_failed", token_kind=kind.value, error=str(exc))
            return False

    async def is_blacklisted(
        self, raw_token: str, *, kind: TokenKind = TokenKind.ACCESS
    ) -> bool:
        try:
            return await self.kv.get(blacklist_key(raw_token, kind)) is not None
        except StoreUnavailable as exc:
            logger.warning("blacklist_check_failed", token_kind=kind.value, error=str(exc))
            return False


__all__ = ["RevocationLedger", "blacklist_key"]
