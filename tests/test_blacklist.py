"""Tests for the revocation ledger."""

from conftest import OutageStore
from kalibro.service.blacklist import RevocationLedger, blacklist_key
from kalibro.service.tokens import TokenKind
from kalibro.storage.kv import RedisKeyValueStore


class TestRevocationLedger:
    async def test_blacklisted_token_is_reported_until_ttl(self, kv, clock):
        ledger = RevocationLedger(kv)
        assert await ledger.blacklist("tok", 30) is True
        assert await ledger.is_blacklisted("tok") is True
        clock.advance(30)
        assert await ledger.is_blacklisted("tok") is False

    async def test_non_positive_ttl_is_a_noop(self, kv):
        ledger = RevocationLedger(kv)
        assert await ledger.blacklist("tok", 0) is False
        assert await ledger.blacklist("tok", -5) is False
        assert await ledger.is_blacklisted("tok") is False

    async def test_kinds_are_separate_namespaces(self, kv):
        ledger = RevocationLedger(kv)
        await ledger.blacklist("tok", 30, kind=TokenKind.REFRESH)
        assert await ledger.is_blacklisted("tok", kind=TokenKind.REFRESH) is True
        assert await ledger.is_blacklisted("tok") is False
        assert await kv.get(blacklist_key("tok", TokenKind.REFRESH)) == "1"

    async def test_unconfigured_store_reads_as_not_blacklisted(self):
        ledger = RevocationLedger(RedisKeyValueStore(None))
        assert await ledger.blacklist("tok", 30) is False
        assert await ledger.is_blacklisted("tok") is False

    async def test_outage_reads_as_not_blacklisted(self, clock):
        kv = OutageStore(clock=clock, down=False)
        ledger = RevocationLedger(kv)
        await ledger.blacklist("tok", 30)
        kv.down = True
        assert await ledger.is_blacklisted("tok") is False
        assert await ledger.blacklist("other", 30) is False
