from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from tokenfence.logging import get_logger
from tokenfence.service.errors import (
    AuthenticationError,
    ForbiddenError,
    InvalidCredential,
    Revoked,
    UNIFORM_AUTH_MESSAGE,
    ValidationError,
)
from tokenfence.service.revocation import RevocationLedger, token_digest
from tokenfence.service.tokens import TokenClaims, TokenCodec, TokenPair
from tokenfence.storage.models import User

logger = get_logger(__name__)

_PASSWORD_ALGO = "argon2id"


class AuthStore(Protocol):
    def create_user(self, email: str, *, role: str = "user", is_active: bool = True) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def touch_last_login(self, user_id: str) -> None: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str]
    role: str
    access_token: str
    claims: TokenClaims


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AuthService:
    """Login, verification, logout, password change and refresh.

    Holds no revocation state of its own: every decision is derived from the
    signed credential plus the ledger entries in the shared TTL store.
    """

    def __init__(
        self,
        store: AuthStore,
        codec: TokenCodec,
        ledger: RevocationLedger,
    ) -> None:
        self.store: AuthStore = store
        self.codec = codec
        self.ledger = ledger
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    # -- passwords -------------------------------------------------------

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), _PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against the stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != _PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def save_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self.hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    # -- account lifecycle -----------------------------------------------

    async def register(
        self, email: str, password: str, *, role: str = "user"
    ) -> tuple[User, TokenPair]:
        user = self.store.create_user(normalize_email(email), role=role)
        self.save_password(user.id, password)
        self.logger.info("user_registered", user_id=user.id, role=role)
        return user, self.codec.issue(user)

    async def login(self, email: str, password: str) -> tuple[User, TokenPair]:
        user = self.store.get_user_by_email(normalize_email(email))
        if not user or not self.verify_password(user.id, password):
            self.logger.info("login_failed", user_id=user.id if user else None)
            raise AuthenticationError("invalid email or password")
        if not user.is_active:
            self.logger.info("login_rejected_inactive", user_id=user.id)
            raise AuthenticationError("account is deactivated")
        self.store.touch_last_login(user.id)
        tokens = self.codec.issue(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return user, tokens

    # -- verification ----------------------------------------------------

    async def _check_not_revoked(self, token: str, claims: TokenClaims) -> None:
        if await self.ledger.is_blacklisted(token):
            self.logger.info(
                "credential_rejected",
                reason="blacklisted",
                token_type=claims.token_type,
                subject_id=claims.subject_id,
                jti=claims.jti,
            )
            raise Revoked("blacklisted")
        if await self.ledger.is_fenced_out(token):
            self.logger.info(
                "credential_rejected",
                reason="fenced",
                token_type=claims.token_type,
                subject_id=claims.subject_id,
                jti=claims.jti,
            )
            raise Revoked("fenced")

    def _log_invalid(self, exc: InvalidCredential, token_type: str) -> None:
        self.logger.info("credential_rejected", reason=exc.reason, token_type=token_type)

    async def verify(self, token: str) -> TokenClaims:
        """Signature and expiry, then blacklist, then fence; first failure wins."""
        try:
            claims = self.codec.verify_access(token)
        except InvalidCredential as exc:
            self._log_invalid(exc, "access")
            raise
        await self._check_not_revoked(token, claims)
        return claims

    async def verify_token(self, token: str) -> bool:
        try:
            await self.verify(token)
        except AuthenticationError:
            return False
        return True

    def extract_bearer(self, header: Optional[str]) -> str:
        """Return the credential from an ``Authorization: Bearer`` header."""
        scheme, _, credential = (header or "").partition(" ")
        if scheme.lower() != "bearer" or not credential.strip():
            self.logger.info("credential_rejected", reason="missing_bearer")
            raise InvalidCredential("missing_bearer")
        return credential.strip()

    def _role_allows(self, role: Optional[str], required: str) -> bool:
        if role == required:
            return True
        if role == "admin" and required in {"admin", "user"}:
            return True
        return False

    async def authenticate(
        self,
        authorization: Optional[str],
        *,
        required_role: Optional[str] = None,
    ) -> AuthContext:
        token = self.extract_bearer(authorization)
        claims = await self.verify(token)
        if required_role and not self._role_allows(claims.role, required_role):
            raise ForbiddenError(
                f"{required_role} access required",
                detail={"required_role": required_role},
            )
        return AuthContext(
            user_id=claims.subject_id,
            email=claims.subject_email,
            role=claims.role or "user",
            access_token=token,
            claims=claims,
        )

    # -- revocation ------------------------------------------------------

    async def logout(self, access_token: str, refresh_token: Optional[str] = None) -> None:
        """Blacklist the caller's credentials; repeating it is a no-op."""
        # Signature is required so forged tokens cannot be written into the ledger
        try:
            access_claims = self.codec.verify_access(access_token, check_expiry=False)
        except InvalidCredential as exc:
            self._log_invalid(exc, "access")
            raise
        owned_refresh: Optional[str] = None
        if refresh_token:
            try:
                refresh_claims = self.codec.verify_refresh(refresh_token, check_expiry=False)
            except InvalidCredential as exc:
                self.logger.warning("logout_refresh_ignored", reason=exc.reason)
            else:
                if refresh_claims.subject_id != access_claims.subject_id:
                    self.logger.warning(
                        "logout_refresh_ignored",
                        reason="subject_mismatch",
                        subject_id=access_claims.subject_id,
                    )
                else:
                    owned_refresh = refresh_token
        await self.ledger.blacklist_pair(access_token, owned_refresh, "logout")
        self.logger.info("logout", subject_id=access_claims.subject_id)

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> None:
        """Replace the password, then fence every credential issued before now."""
        user = self.store.get_user(user_id)
        if not user or not user.is_active:
            raise AuthenticationError(UNIFORM_AUTH_MESSAGE)
        if not self.verify_password(user_id, current_password):
            raise AuthenticationError("current password is incorrect")
        if current_password == new_password:
            raise ValidationError(
                "new password must differ from the current password",
                detail={"field": "newPassword"},
            )
        self.save_password(user_id, new_password)
        # A failed fence write propagates: the password changed but old sessions survive
        await self.ledger.fence_user(user_id, "password_change")
        self.logger.info("password_changed", user_id=user_id)

    # -- refresh ---------------------------------------------------------

    async def _verify_refresh(self, refresh_token: str) -> tuple[TokenClaims, User]:
        try:
            claims = self.codec.verify_refresh(refresh_token)
        except InvalidCredential as exc:
            self._log_invalid(exc, "refresh")
            raise
        await self._check_not_revoked(refresh_token, claims)
        user = self.store.get_user(claims.subject_id)
        if not user or not user.is_active:
            self.logger.info("refresh_rejected_user", subject_id=claims.subject_id)
            raise Revoked("subject_inactive")
        return claims, user

    async def refresh(self, refresh_token: str) -> str:
        """Issue a new access credential; the refresh credential stays valid."""
        _, user = await self._verify_refresh(refresh_token)
        self.logger.info("access_token_refreshed", subject_id=user.id)
        return self.codec.issue_access(user)

    async def rotate(self, refresh_token: str) -> TokenPair:
        """Consume a refresh credential and issue a brand-new pair."""
        claims, user = await self._verify_refresh(refresh_token)
        if not await self.ledger.claim_for_rotation(refresh_token):
            raise Revoked("replayed")
        self.logger.info(
            "refresh_token_rotated",
            subject_id=user.id,
            jti=claims.jti,
            token_digest=token_digest(refresh_token)[:12],
        )
        return self.codec.issue(user)
