from __future__ import annotations

import hashlib
import math
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from tokenfence.config import RevocationPolicy
from tokenfence.logging import get_logger
from tokenfence.service.tokens import TokenClaims, TokenCodec
from tokenfence.storage.errors import StoreUnavailable
from tokenfence.storage.ttl_store import TTLStore

logger = get_logger(__name__)

BLACKLIST_PREFIX = "token:blacklist:"
FENCE_PREFIX = "token:fence:"

# Re-exported under the name callers use when passing a per-call override
FailurePolicy = RevocationPolicy


def token_digest(token: str) -> str:
    """Stable, non-reversible identifier for a credential."""
    return hashlib.sha256(token.encode()).hexdigest()


class RevocationLedger:
    """Blacklist entries and per-subject fences kept in the TTL store.

    Every entry self-expires: a blacklist entry lives until the credential it
    shadows would have expired, a fence lives as long as the longest-lived
    credential it may need to reject.

    Store failures are resolved by an explicit ``FailurePolicy``. Reads
    default to FAIL_OPEN (treat as not revoked), writes to FAIL_CLOSED
    (raise ``StoreUnavailable``). Both can be overridden per call.
    """

    def __init__(
        self,
        store: TTLStore,
        codec: TokenCodec,
        *,
        fence_ttl_seconds: int,
        clock: Callable[[], float] = time.time,
        read_policy: FailurePolicy = FailurePolicy.FAIL_OPEN,
        write_policy: FailurePolicy = FailurePolicy.FAIL_CLOSED,
    ) -> None:
        self.store = store
        self.codec = codec
        # Entries outlive the codec's expiry leeway
        self.leeway_seconds = int(codec.leeway_seconds)
        self.fence_ttl_seconds = int(fence_ttl_seconds) + self.leeway_seconds
        self._clock = clock
        self.read_policy = FailurePolicy(read_policy)
        self.write_policy = FailurePolicy(write_policy)

    @staticmethod
    def blacklist_key(token: str) -> str:
        return f"{BLACKLIST_PREFIX}{token_digest(token)}"

    @staticmethod
    def fence_key(subject_id: str) -> str:
        return f"{FENCE_PREFIX}{subject_id}"

    def _remaining_lifetime(self, claims: Optional[TokenClaims]) -> int:
        if claims is None or claims.expires_at is None:
            return 0
        return math.ceil(claims.expires_at + self.leeway_seconds - self._clock())

    def _entry(self, claims: TokenClaims, reason: str) -> dict[str, Any]:
        return {
            "reason": reason,
            "blacklisted_at": datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat(),
            "subject_id": claims.subject_id,
            "subject_email": claims.subject_email,
        }

    def _read_failed(
        self, event: str, exc: StoreUnavailable, policy: Optional[FailurePolicy], **fields: Any
    ) -> bool:
        effective = FailurePolicy(policy or self.read_policy)
        logger.warning(event, policy=effective.value, error=str(exc), **fields)
        # FAIL_CLOSED reads treat an unknown state as revoked
        return effective is FailurePolicy.FAIL_CLOSED

    def _write_failed(
        self, event: str, exc: StoreUnavailable, policy: Optional[FailurePolicy], **fields: Any
    ) -> None:
        effective = FailurePolicy(policy or self.write_policy)
        if effective is FailurePolicy.FAIL_CLOSED:
            logger.error(event, policy=effective.value, error=str(exc), **fields)
            raise exc
        logger.warning(event, policy=effective.value, error=str(exc), **fields)

    async def blacklist(
        self, token: str, reason: str, *, policy: Optional[FailurePolicy] = None
    ) -> bool:
        """Shadow ``token`` until its own expiry.

        Returns False without touching the store when the credential cannot
        be decoded or has already expired.
        """
        claims = self.codec.decode_unsafe(token)
        ttl = self._remaining_lifetime(claims)
        if ttl <= 0:
            logger.debug("blacklist_skipped", reason=reason, expired=claims is not None)
            return False
        digest = token_digest(token)
        try:
            await self.store.set(
                f"{BLACKLIST_PREFIX}{digest}", self._entry(claims, reason), ttl
            )
        except StoreUnavailable as exc:
            self._write_failed(
                "blacklist_write_failed", exc, policy,
                token_digest=digest[:12], subject_id=claims.subject_id,
            )
            return False
        logger.info(
            "token_blacklisted",
            reason=reason,
            token_digest=digest[:12],
            subject_id=claims.subject_id,
            jti=claims.jti,
            ttl_seconds=ttl,
        )
        return True

    async def blacklist_pair(
        self,
        access_token: str,
        refresh_token: Optional[str],
        reason: str,
        *,
        policy: Optional[FailurePolicy] = None,
    ) -> None:
        await self.blacklist(access_token, reason, policy=policy)
        if refresh_token:
            await self.blacklist(refresh_token, reason, policy=policy)

    async def claim_for_rotation(
        self, token: str, *, policy: Optional[FailurePolicy] = None
    ) -> bool:
        """Atomically blacklist a refresh credential that is being rotated.

        Exactly one caller can claim a given credential; every later caller
        gets False, the same answer as for a credential blacklisted earlier.
        """
        claims = self.codec.decode_unsafe(token)
        ttl = self._remaining_lifetime(claims)
        if ttl <= 0:
            return False
        digest = token_digest(token)
        try:
            claimed = await self.store.set_if_absent(
                f"{BLACKLIST_PREFIX}{digest}", self._entry(claims, "rotation"), ttl
            )
        except StoreUnavailable as exc:
            self._write_failed(
                "rotation_claim_failed", exc, policy,
                token_digest=digest[:12], subject_id=claims.subject_id,
            )
            return False
        if not claimed:
            logger.warning(
                "refresh_token_replayed",
                token_digest=digest[:12],
                subject_id=claims.subject_id,
            )
        return claimed

    async def is_blacklisted(
        self, token: str, *, policy: Optional[FailurePolicy] = None
    ) -> bool:
        digest = token_digest(token)
        try:
            return await self.store.exists(f"{BLACKLIST_PREFIX}{digest}")
        except StoreUnavailable as exc:
            return self._read_failed(
                "blacklist_check_failed", exc, policy, token_digest=digest[:12]
            )

    async def fence_user(
        self, subject_id: str, reason: str, *, policy: Optional[FailurePolicy] = None
    ) -> float:
        """Reject every credential of ``subject_id`` issued before now."""
        invalidated_at = self._clock()
        try:
            await self.store.set(
                self.fence_key(subject_id),
                {"invalidated_at": invalidated_at, "reason": reason},
                self.fence_ttl_seconds,
            )
        except StoreUnavailable as exc:
            self._write_failed("fence_write_failed", exc, policy, subject_id=subject_id)
            return invalidated_at
        logger.info(
            "user_fenced",
            subject_id=subject_id,
            reason=reason,
            ttl_seconds=self.fence_ttl_seconds,
        )
        return invalidated_at

    async def get_fence(self, subject_id: str) -> Optional[dict[str, Any]]:
        record = await self.store.get(self.fence_key(subject_id))
        return record if isinstance(record, dict) else None

    async def is_fenced_out(
        self, token: str, *, policy: Optional[FailurePolicy] = None
    ) -> bool:
        claims = self.codec.decode_unsafe(token)
        if claims is None or claims.subject_id is None or claims.issued_at is None:
            return False
        try:
            fence = await self.get_fence(claims.subject_id)
        except StoreUnavailable as exc:
            return self._read_failed(
                "fence_check_failed", exc, policy, subject_id=claims.subject_id
            )
        if not fence:
            return False
        try:
            invalidated_at = float(fence.get("invalidated_at"))
        except (TypeError, ValueError):
            logger.warning("fence_record_invalid", subject_id=claims.subject_id)
            return False
        return claims.issued_at < invalidated_at

    async def is_revoked(self, token: str) -> bool:
        return await self.is_blacklisted(token) or await self.is_fenced_out(token)

    async def get_blacklist_info(self, token: str) -> Optional[dict[str, Any]]:
        record = await self.store.get(self.blacklist_key(token))
        return record if isinstance(record, dict) else None

    async def remove_from_blacklist(self, token: str) -> bool:
        """Administrative path: lift an individual revocation early."""
        removed = await self.store.delete([self.blacklist_key(token)])
        logger.info("blacklist_entry_removed", token_digest=token_digest(token)[:12])
        return removed > 0

    async def clear_fence(self, subject_id: str) -> bool:
        """Administrative path: drop a subject's fence before it expires."""
        removed = await self.store.delete([self.fence_key(subject_id)])
        logger.info("user_fence_cleared", subject_id=subject_id)
        return removed > 0
