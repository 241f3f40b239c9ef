"""Unit tests for the revocation ledger.

Covers blacklist lifetime, per-subject fences, rotation claims and the
fail-open / fail-closed policies applied when the TTL store is down.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from tokenfence.service.revocation import (
    BLACKLIST_PREFIX,
    FailurePolicy,
    RevocationLedger,
    token_digest,
)
from tokenfence.service.tokens import TokenCodec
from tokenfence.storage.errors import StoreUnavailable
from tokenfence.storage.ttl_store import MemoryTTLStore


@pytest.fixture
def subject():
    return SimpleNamespace(id="user-1", email="a@x.com", role="user")


def _codec(clock, access_ttl=900, leeway=0):
    return TokenCodec(
        access_secret="access-secret-for-ledger-tests-0123456789",
        refresh_secret="refresh-secret-for-ledger-tests-0123456789",
        access_ttl_seconds=access_ttl,
        refresh_ttl_seconds=3600,
        issuer="tokenfence",
        audience="tokenfence-users",
        leeway_seconds=leeway,
        clock=clock,
    )


@pytest.fixture
def codec(clock):
    return _codec(clock)


@pytest.fixture
def store(clock):
    return MemoryTTLStore(clock=clock)


@pytest.fixture
def ledger(store, codec, clock):
    return RevocationLedger(store, codec, fence_ttl_seconds=3600, clock=clock)


class _DownStore:
    """TTL store whose every command fails."""

    def __init__(self):
        error = StoreUnavailable("test")
        for name in ("get", "set", "set_if_absent", "delete", "exists", "scan_keys", "ttl"):
            setattr(self, name, AsyncMock(side_effect=error))


class TestBlacklist:
    async def test_fresh_token_not_blacklisted(self, ledger, codec, subject):
        token = codec.issue_access(subject)
        assert await ledger.is_blacklisted(token) is False
        assert await ledger.is_revoked(token) is False

    async def test_blacklist_lives_exactly_as_long_as_the_token(self, store, clock, subject):
        codec = _codec(clock, access_ttl=1)
        ledger = RevocationLedger(store, codec, fence_ttl_seconds=3600, clock=clock)
        token = codec.issue_access(subject)

        assert await ledger.blacklist(token, "logout") is True
        assert await ledger.is_blacklisted(token) is True
        assert await store.ttl(ledger.blacklist_key(token)) == 1

        clock.advance(1)
        assert await ledger.is_blacklisted(token) is False

    async def test_blacklist_outlives_expiry_leeway(self, store, clock, subject):
        codec = _codec(clock, access_ttl=60, leeway=30)
        ledger = RevocationLedger(store, codec, fence_ttl_seconds=3600, clock=clock)
        token = codec.issue_access(subject)
        await ledger.blacklist(token, "logout")

        clock.advance(70)

        # Still accepted by the codec, so the entry must still be there
        codec.verify_access(token)
        assert await ledger.is_blacklisted(token) is True
        assert await ledger.is_revoked(token) is True

        clock.advance(20)
        assert await ledger.is_blacklisted(token) is False

    async def test_token_inside_leeway_can_still_be_blacklisted(self, store, clock, subject):
        codec = _codec(clock, access_ttl=60, leeway=30)
        ledger = RevocationLedger(store, codec, fence_ttl_seconds=3600, clock=clock)
        token = codec.issue_access(subject)
        clock.advance(75)

        assert await ledger.blacklist(token, "logout") is True
        assert await store.ttl(ledger.blacklist_key(token)) == 15

    async def test_entry_is_keyed_by_digest_and_records_reason(self, ledger, codec, subject):
        token = codec.issue_access(subject)
        await ledger.blacklist(token, "logout")

        info = await ledger.get_blacklist_info(token)

        assert ledger.blacklist_key(token) == f"{BLACKLIST_PREFIX}{token_digest(token)}"
        assert token not in ledger.blacklist_key(token)
        assert info["reason"] == "logout"
        assert info["subject_id"] == "user-1"

    async def test_expired_or_garbage_token_is_not_written(self, ledger, codec, subject, clock, store):
        token = codec.issue_access(subject)
        clock.advance(900)

        assert await ledger.blacklist(token, "logout") is False
        assert await ledger.blacklist("garbage", "logout") is False
        assert await store.scan_keys(f"{BLACKLIST_PREFIX}*") == []

    async def test_blacklist_is_idempotent(self, ledger, codec, subject):
        token = codec.issue_access(subject)
        await ledger.blacklist(token, "logout")
        await ledger.blacklist(token, "logout")
        assert await ledger.is_blacklisted(token) is True

    async def test_blacklist_pair(self, ledger, codec, subject):
        pair = codec.issue(subject)
        await ledger.blacklist_pair(pair.access_token, pair.refresh_token, "logout")
        assert await ledger.is_blacklisted(pair.access_token) is True
        assert await ledger.is_blacklisted(pair.refresh_token) is True

        other = codec.issue(subject)
        await ledger.blacklist_pair(other.access_token, None, "logout")
        assert await ledger.is_blacklisted(other.refresh_token) is False

    async def test_remove_from_blacklist(self, ledger, codec, subject):
        token = codec.issue_access(subject)
        await ledger.blacklist(token, "logout")
        assert await ledger.remove_from_blacklist(token) is True
        assert await ledger.is_blacklisted(token) is False


class TestFence:
    async def test_fence_rejects_earlier_and_admits_later_tokens(self, ledger, codec, subject, clock):
        before = codec.issue_access(subject)
        clock.advance(0.001)
        await ledger.fence_user("user-1", "password_change")
        clock.advance(0.001)
        after = codec.issue_access(subject)

        assert await ledger.is_fenced_out(before) is True
        assert await ledger.is_fenced_out(after) is False
        assert await ledger.is_revoked(before) is True

    async def test_fence_is_per_subject(self, ledger, codec, clock):
        other = SimpleNamespace(id="user-2", email="b@x.com", role="user")
        token = codec.issue_access(other)
        clock.advance(1)
        await ledger.fence_user("user-1", "password_change")
        assert await ledger.is_fenced_out(token) is False

    async def test_fence_expires_with_its_ttl(self, ledger, codec, subject, clock):
        token = codec.issue_access(subject)
        clock.advance(1)
        await ledger.fence_user("user-1", "password_change")
        clock.advance(3600)
        assert await ledger.get_fence("user-1") is None
        assert await ledger.is_fenced_out(token) is False

    async def test_fence_outlives_expiry_leeway(self, store, clock, subject):
        codec = _codec(clock, leeway=30)
        ledger = RevocationLedger(store, codec, fence_ttl_seconds=3600, clock=clock)
        await ledger.fence_user("user-1", "password_change")
        assert ledger.fence_ttl_seconds == 3630
        assert await store.ttl(ledger.fence_key("user-1")) == 3630

    async def test_clear_fence(self, ledger, codec, subject, clock):
        token = codec.issue_access(subject)
        clock.advance(1)
        await ledger.fence_user("user-1", "admin")
        assert await ledger.clear_fence("user-1") is True
        assert await ledger.is_fenced_out(token) is False


class TestRotationClaim:
    async def test_only_first_claim_succeeds(self, ledger, codec, subject):
        refresh = codec.issue(subject).refresh_token

        assert await ledger.claim_for_rotation(refresh) is True
        assert await ledger.claim_for_rotation(refresh) is False
        assert await ledger.is_blacklisted(refresh) is True

    async def test_claim_of_blacklisted_token_fails(self, ledger, codec, subject):
        refresh = codec.issue(subject).refresh_token
        await ledger.blacklist(refresh, "logout")
        assert await ledger.claim_for_rotation(refresh) is False


class TestFailurePolicy:
    async def test_reads_fail_open_by_default(self, codec, subject, clock):
        ledger = RevocationLedger(_DownStore(), codec, fence_ttl_seconds=60, clock=clock)
        token = codec.issue_access(subject)

        assert await ledger.is_blacklisted(token) is False
        assert await ledger.is_fenced_out(token) is False

    async def test_reads_can_fail_closed(self, codec, subject, clock):
        ledger = RevocationLedger(
            _DownStore(),
            codec,
            fence_ttl_seconds=60,
            clock=clock,
            read_policy=FailurePolicy.FAIL_CLOSED,
        )
        token = codec.issue_access(subject)

        assert await ledger.is_blacklisted(token) is True
        assert await ledger.is_blacklisted(token, policy=FailurePolicy.FAIL_OPEN) is False

    async def test_writes_fail_closed_by_default(self, codec, subject, clock):
        ledger = RevocationLedger(_DownStore(), codec, fence_ttl_seconds=60, clock=clock)
        token = codec.issue_access(subject)

        with pytest.raises(StoreUnavailable):
            await ledger.blacklist(token, "logout")
        with pytest.raises(StoreUnavailable):
            await ledger.fence_user("user-1", "password_change")
        with pytest.raises(StoreUnavailable):
            await ledger.claim_for_rotation(codec.issue(subject).refresh_token)

    async def test_write_override_fail_open_returns_false(self, codec, subject, clock):
        ledger = RevocationLedger(_DownStore(), codec, fence_ttl_seconds=60, clock=clock)
        token = codec.issue_access(subject)

        assert await ledger.blacklist(token, "logout", policy=FailurePolicy.FAIL_OPEN) is False
