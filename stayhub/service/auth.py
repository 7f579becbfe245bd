from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from stayhub.config import Settings
from stayhub.logging import get_logger, redact_email
from stayhub.service.email import EmailKind
from stayhub.service.errors import (
    AccountBannedError,
    EmailAlreadyVerifiedError,
    EmailDeliveryError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    InvalidResetTokenError,
    InvalidTokenError,
    MissingFieldsError,
    UserExistsError,
    UserNotFoundError,
    ValidationError,
)
from stayhub.service.tokens import TokenClaims, TokenCodec, TokenError, TokenKind
from stayhub.service import validation
from stayhub.storage.errors import DuplicateIdentity
from stayhub.storage.models import Account, RevocationRecord, utcnow

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"

# Keys a user may change on their own profile; everything else is ignored.
PROFILE_UPDATE_FIELDS = (
    "dob",
    "gender",
    "preferred_utilities",
    "preferred_price_range",
    "avatar",
    "verification_document",
)


class AccountStore(Protocol):
    def create_account(
        self,
        account: Account,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
    ) -> Account: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def update_account(self, account_id: str, **patch: Any) -> Optional[Account]: ...

    def list_accounts(
        self, *, role: Optional[str] = None, limit: int = 100, offset: int = 0
    ) -> List[Account]: ...

    def delete_account(self, account_id: str) -> bool: ...

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, account_id: str) -> Optional[Tuple[str, str]]: ...


class RevocationStore(Protocol):
    async def revoke_token(self, token: str, expires_at: datetime) -> None: ...

    async def get_revoked_token(self, token: str) -> Optional[RevocationRecord]: ...

    async def is_token_revoked(self, token: str) -> bool: ...


class EmailSender(Protocol):
    async def send_templated(
        self, to: str, kind: EmailKind, data: Mapping[str, Any]
    ) -> None: ...


@dataclass
class AuthResult:
    account: Dict[str, Any]
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


def format_account_response(account: Account) -> Dict[str, Any]:
    """Public view of an account.

    Built from an explicit allowlist so that credential material can never
    leak through a new attribute; every account leaving the service passes
    through here.
    """
    price = account.preferred_price_range
    return {
        "id": account.id,
        "email": account.email,
        "name": account.name,
        "phone": account.phone,
        "address": account.address.to_dict(),
        "role": account.role,
        "is_verified": account.is_verified,
        "is_banned": account.is_banned,
        "dob": account.dob.isoformat() if account.dob else None,
        "gender": account.gender,
        "avatar": account.avatar,
        "preferred_utilities": list(account.preferred_utilities),
        "preferred_price_range": (
            {"min": price.min, "max": price.max} if price else None
        ),
        "verification_document": account.verification_document,
        "rating": account.rating,
        "notification_email": account.notification_email,
        "last_login": account.last_login.isoformat() if account.last_login else None,
        "created_at": account.created_at.isoformat(),
        "updated_at": account.updated_at.isoformat(),
    }


class SessionManager:
    """Registration, login, token lifecycle and password management.

    The manager is the only component that writes password hashes or issues
    and revokes tokens. Issued tokens are not stored; only revocations are.
    """

    def __init__(
        self,
        store: AccountStore,
        revocations: RevocationStore,
        codec: TokenCodec,
        email: EmailSender,
        settings: Settings,
    ) -> None:
        self.store = store
        self.revocations = revocations
        self.codec = codec
        self.email = email
        self.settings = settings
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            type=Type.ID,
        )
        self.logger = logger

    # password hashing
    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    async def _store_password(self, account_id: str, password: str) -> None:
        pwd_hash, algo = await asyncio.to_thread(self._hash_password, password)
        self.store.save_password(account_id, pwd_hash, algo)

    async def verify_password(self, account_id: str, password: str) -> bool:
        """Verify an account's password against its stored hash."""
        record = self.store.get_password_record(account_id)
        if not record:
            self.logger.warning("password_record_missing", account_id=account_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", account_id=account_id, algo=algo)
            return False
        try:
            return await asyncio.to_thread(self._pwd_hasher.verify, stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    # token helpers
    def _issue_session(self, account: Account) -> AuthResult:
        return AuthResult(
            account=format_account_response(account),
            access_token=self.codec.issue_access_token(account.id, account.role),
            refresh_token=self.codec.issue_refresh_token(account.id),
            expires_in=self.codec.ttl_seconds(TokenKind.ACCESS),
        )

    def _verification_link(self, token: str) -> str:
        return f"{self.settings.frontend_url.rstrip('/')}/api/auth/verify-email/{token}"

    def _reset_link(self, token: str) -> str:
        return f"{self.settings.frontend_url.rstrip('/')}/reset-password?token={token}"

    async def _dispatch_email(
        self, to: str, kind: EmailKind, data: Mapping[str, Any]
    ) -> bool:
        """Send a templated email; delivery failure is logged, never raised."""
        try:
            await self.email.send_templated(to, kind, data)
        except EmailDeliveryError as exc:
            self.logger.warning(
                "email_dispatch_failed",
                to=redact_email(to),
                kind=kind.value,
                error=exc.message,
            )
            return False
        return True

    def _revocation_deadline(self, claims: TokenClaims) -> datetime:
        # The codec still accepts a token for the leeway window after exp
        return claims.expires_at + timedelta(seconds=self.settings.jwt_leeway_seconds)

    async def _consume_token(self, token: str, claims: TokenClaims) -> None:
        await self.revocations.revoke_token(token, self._revocation_deadline(claims))

    # registration and login
    async def register(
        self,
        name: Optional[str],
        email: Optional[str],
        phone: Optional[str],
        password: Optional[str],
        address: Any,
    ) -> AuthResult:
        validation.require_fields(
            {
                "name": name,
                "email": email,
                "phone": phone,
                "password": password,
                "address": address,
            },
            ("name", "email", "phone", "password", "address"),
        )
        parsed_address = validation.validate_address(address)
        normalized_email = validation.validate_email(email)
        clean_phone = validation.validate_phone(phone)
        validation.validate_password(password)
        clean_name = validation.validate_name(name)

        if self.store.get_account_by_email(normalized_email):
            raise UserExistsError("User already exists")

        pwd_hash, algo = await asyncio.to_thread(self._hash_password, password)
        try:
            account = self.store.create_account(
                Account.new(normalized_email, clean_name, clean_phone, parsed_address),
                password_hash=pwd_hash,
                password_algo=algo,
            )
        except DuplicateIdentity:
            # Lost a race with a concurrent registration of the same email
            self.logger.info(
                "register_duplicate_identity", email=redact_email(normalized_email)
            )
            raise UserExistsError("User already exists") from None
        self.logger.info("account_registered", account_id=account.id, role=account.role)

        result = self._issue_session(account)
        verification_token = self.codec.issue_verification_token(account.id)
        await self._dispatch_email(
            account.email,
            EmailKind.REGISTRATION,
            {"name": account.name, "verificationLink": self._verification_link(verification_token)},
        )
        return result

    async def login(self, email: Optional[str], password: Optional[str]) -> AuthResult:
        validation.require_fields(
            {"email": email, "password": password}, ("email", "password")
        )
        account = self.store.get_account_by_email(validation.normalize_email(email))
        if not account or not await self.verify_password(account.id, password):
            # Same error either way so callers cannot enumerate accounts
            self.logger.info(
                "login_rejected",
                reason="unknown_identity" if not account else "bad_password",
            )
            raise InvalidCredentialsError()
        if account.is_banned:
            self.logger.info("login_rejected", reason="banned", account_id=account.id)
            raise AccountBannedError("Your account has been banned")
        account = self.store.update_account(account.id, last_login=utcnow()) or account
        self.logger.info("login_succeeded", account_id=account.id)
        return self._issue_session(account)

    # email verification
    async def verify_email(self, token: Optional[str]) -> Dict[str, Any]:
        if not token:
            raise MissingFieldsError("Verification token is required")
        try:
            claims = self.codec.verify(token, TokenKind.VERIFICATION)
        except TokenError as exc:
            self.logger.info("email_verification_rejected", reason=type(exc).__name__)
            raise InvalidTokenError("Invalid or expired verification token") from None
        if await self.is_revoked(token):
            self.logger.info("email_verification_rejected", reason="already_used")
            raise InvalidTokenError("Invalid or expired verification token")
        account = self.store.get_account(claims.identity)
        if not account:
            raise UserNotFoundError("User not found")
        account = self.store.update_account(account.id, is_verified=True) or account
        await self._consume_token(token, claims)
        self.logger.info("email_verified", account_id=account.id)
        return format_account_response(account)

    async def send_verification_email(self, email: Optional[str]) -> None:
        if not email:
            raise MissingFieldsError("Email is required")
        account = self.store.get_account_by_email(validation.normalize_email(email))
        if not account:
            raise UserNotFoundError("User not found")
        if account.is_verified:
            raise EmailAlreadyVerifiedError("Email already verified")
        token = self.codec.issue_verification_token(account.id)
        await self._dispatch_email(
            account.email,
            EmailKind.VERIFICATION,
            {"name": account.name, "verificationLink": self._verification_link(token)},
        )
        self.logger.info("email_verification_requested", account_id=account.id)

    async def resend_verification_email(self, email: Optional[str]) -> None:
        await self.send_verification_email(email)

    # token lifecycle
    async def refresh(self, refresh_token: Optional[str]) -> AuthResult:
        """Exchange a refresh token for a new access and refresh token pair.

        The presented refresh token is revoked once the new pair is minted, so
        each refresh token is accepted at most once.
        """
        if not refresh_token:
            raise MissingFieldsError("Refresh token is required")
        try:
            claims = self.codec.verify(refresh_token, TokenKind.REFRESH)
        except TokenError as exc:
            self.logger.info("refresh_rejected", reason=type(exc).__name__)
            raise InvalidRefreshTokenError("Invalid or expired refresh token") from None
        if await self.is_revoked(refresh_token):
            self.logger.warning("refresh_rejected", reason="revoked", account_id=claims.identity)
            raise InvalidRefreshTokenError("Invalid or expired refresh token")
        account = self.store.get_account(claims.identity)
        if not account:
            raise UserNotFoundError("User not found")
        if account.is_banned:
            raise AccountBannedError("Your account has been banned")
        result = self._issue_session(account)
        await self._consume_token(refresh_token, claims)
        self.logger.info("tokens_refreshed", account_id=account.id)
        return result

    async def revoke_token(self, token: Optional[str]) -> None:
        """Place ``token`` on the revocation list until the codec would reject it.

        Only the claims are decoded; the signature is not checked because
        revoking a token that would fail verification anyway is harmless.
        """
        if not token:
            raise MissingFieldsError("Token is required")
        try:
            claims = self.codec.decode_unverified(token)
        except TokenError:
            raise InvalidTokenError("Invalid token") from None
        deadline = self._revocation_deadline(claims)
        if deadline <= utcnow():
            self.logger.info("revoke_skipped_expired", token_type=claims.token_type)
            return
        await self.revocations.revoke_token(token, deadline)
        self.logger.info(
            "token_revoked", account_id=claims.identity, token_type=claims.token_type
        )

    async def logout(self, account_id: str, token: str) -> None:
        await self.revoke_token(token)
        self.logger.info("logout", account_id=account_id)

    async def is_revoked(self, token: str) -> bool:
        """Revocation lookup; an unreachable store counts as revoked."""
        try:
            return await self.revocations.is_token_revoked(token)
        except Exception as exc:
            self.logger.error(
                "revocation_lookup_failed", error_type=type(exc).__name__, error=str(exc)
            )
            return True

    # passwords
    async def change_password(
        self,
        account_id: str,
        new_password: Optional[str],
        *,
        current_password: Optional[str] = None,
    ) -> None:
        if not new_password:
            raise MissingFieldsError("New password is required")
        account = self.store.get_account(account_id)
        if not account:
            raise UserNotFoundError("User not found")
        validation.validate_password(new_password)
        if current_password is not None and not await self.verify_password(
            account.id, current_password
        ):
            raise InvalidCredentialsError("Current password is incorrect")
        await self._store_password(account.id, new_password)
        self.logger.info("password_changed", account_id=account.id)

    async def forgot_password(self, email: Optional[str]) -> None:
        """Mail a reset link if the account exists; unknown emails look the same."""
        if not email:
            raise MissingFieldsError("Email is required")
        normalized = validation.validate_email(email)
        account = self.store.get_account_by_email(normalized)
        if not account:
            self.logger.info("password_reset_unknown_email", email=redact_email(normalized))
            return
        token = self.codec.issue_reset_token(account.id)
        await self._dispatch_email(
            account.email,
            EmailKind.PASSWORD_RESET,
            {"name": account.name, "resetLink": self._reset_link(token)},
        )
        self.logger.info("password_reset_requested", account_id=account.id)

    async def reset_password(
        self, token: Optional[str], new_password: Optional[str]
    ) -> None:
        validation.require_fields(
            {"token": token, "new_password": new_password}, ("token", "new_password")
        )
        validation.validate_password(new_password)
        try:
            claims = self.codec.verify(token, TokenKind.RESET)
        except TokenError as exc:
            self.logger.info("password_reset_rejected", reason=type(exc).__name__)
            raise InvalidResetTokenError("Invalid or expired reset token") from None
        if await self.is_revoked(token):
            self.logger.info("password_reset_rejected", reason="already_used")
            raise InvalidResetTokenError("Invalid or expired reset token")
        account = self.store.get_account(claims.identity)
        if not account:
            raise UserNotFoundError("User not found")
        await self._store_password(account.id, new_password)
        await self._consume_token(token, claims)
        self.logger.info("password_reset_completed", account_id=account.id)

    # outbound mail on request
    async def send_templated_email(
        self,
        email: Optional[str],
        template_type: Optional[str],
        template_data: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Send one templated email; unlike the auth flows, failure is raised."""
        validation.require_fields(
            {"email": email, "template_type": template_type}, ("email", "template_type")
        )
        recipient = validation.validate_email(email)
        try:
            kind = EmailKind(template_type.strip().upper())
        except ValueError:
            raise ValidationError(
                "Unknown email template",
                detail={"field": "template_type", "allowed": [k.value for k in EmailKind]},
            ) from None
        await self.email.send_templated(recipient, kind, dict(template_data or {}))
        self.logger.info("templated_email_sent", to=redact_email(recipient), kind=kind.value)

    # profile
    def _require_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise UserNotFoundError("User not found")
        return account

    def get_profile(self, account_id: str) -> Dict[str, Any]:
        return format_account_response(self._require_account(account_id))

    def update_profile(self, account_id: str, patch: Mapping[str, Any]) -> Dict[str, Any]:
        self._require_account(account_id)
        changes: Dict[str, Any] = {}
        for key in PROFILE_UPDATE_FIELDS:
            if key not in patch or patch[key] is None:
                continue
            value = patch[key]
            if key == "dob":
                value = _parse_date(value)
            elif key == "gender":
                value = validation.validate_gender(value)
            elif key == "preferred_utilities":
                value = validation.validate_utilities(value)
            elif key == "preferred_price_range":
                value = validation.validate_price_range(value)
            changes[key] = value
        account = self.store.update_account(account_id, **changes)
        if not account:
            raise UserNotFoundError("User not found")
        self.logger.info("profile_updated", account_id=account_id, fields=sorted(changes))
        return format_account_response(account)

    # administration
    def list_accounts(
        self, *, role: Optional[str] = None, limit: int = 100, offset: int = 0
    ) -> List[Dict[str, Any]]:
        if role:
            role = validation.validate_role(role)
        accounts = self.store.list_accounts(role=role, limit=limit, offset=offset)
        return [format_account_response(a) for a in accounts]

    def get_account(self, account_id: str) -> Dict[str, Any]:
        return format_account_response(self._require_account(account_id))

    def admin_update_account(
        self,
        account_id: str,
        *,
        is_banned: Optional[bool] = None,
        is_verified: Optional[bool] = None,
        role: Optional[str] = None,
    ) -> Dict[str, Any]:
        self._require_account(account_id)
        changes: Dict[str, Any] = {}
        if is_banned is not None:
            changes["is_banned"] = is_banned
        if is_verified is not None:
            changes["is_verified"] = is_verified
        if role is not None:
            changes["role"] = validation.validate_role(role)
        account = self.store.update_account(account_id, **changes)
        if not account:
            raise UserNotFoundError("User not found")
        self.logger.info("account_admin_updated", account_id=account_id, fields=sorted(changes))
        return format_account_response(account)

    def delete_account(self, account_id: str) -> None:
        if not self.store.delete_account(account_id):
            raise UserNotFoundError("User not found")
        self.logger.info("account_deleted", account_id=account_id)


def _parse_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError("Invalid date of birth", detail={"field": "dob"}) from None
