from __future__ import annotations

import hashlib
import json
import threading
import time
from dataclasses import replace
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from stayhub.logging import get_logger
from stayhub.storage.errors import ConstraintViolation, DuplicateIdentity
from stayhub.storage.models import (
    DEFAULT_AVATAR_URL,
    Account,
    Address,
    PriceRange,
    RevocationRecord,
    utcnow,
)

# Fields callers may patch through update_account; id and email are fixed.
_MUTABLE_FIELDS = frozenset(
    {
        "name",
        "phone",
        "address",
        "role",
        "is_verified",
        "is_banned",
        "dob",
        "gender",
        "avatar",
        "preferred_utilities",
        "preferred_price_range",
        "verification_document",
        "rating",
        "notification_email",
        "last_login",
    }
)


class MemoryStore:
    """In-process credential store with a JSON snapshot under ``fs_root``."""

    def __init__(self, fs_root: str = "/tmp/stayhub", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        # lower(email) -> account id; the uniqueness check and the O(1) lookup
        self.email_index: Dict[str, str] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _key(email: str) -> str:
        return email.strip().lower()

    def verify_connection(self) -> None:
        if self.persist and not self.fs_root.is_dir():
            raise FileNotFoundError(self.fs_root)

    # accounts
    def create_account(
        self,
        account: Account,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
    ) -> Account:
        """Add an account and, when given, its credential as a single write."""
        key = self._key(account.email)
        with self._data_lock:
            if key in self.email_index:
                raise DuplicateIdentity(account.email)
            stored = replace(account, email=key)
            self.accounts[stored.id] = stored
            self.email_index[key] = stored.id
            if password_hash is not None:
                self.credentials[stored.id] = (password_hash, password_algo or "")
            try:
                self._persist_state()
            except RuntimeError:
                self.accounts.pop(stored.id, None)
                self.email_index.pop(key, None)
                self.credentials.pop(stored.id, None)
                raise
            return replace(stored)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account_id = self.email_index.get(self._key(email))
            account = self.accounts.get(account_id) if account_id else None
            return replace(account) if account else None

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def update_account(self, account_id: str, **patch: Any) -> Optional[Account]:
        unknown = set(patch) - _MUTABLE_FIELDS
        if unknown:
            raise ConstraintViolation(
                "unknown account fields", {"fields": sorted(unknown)}
            )
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            updated = replace(account, **patch, updated_at=utcnow())
            self.accounts[account_id] = updated
            self._persist_state()
            return replace(updated)

    def list_accounts(
        self, *, role: Optional[str] = None, limit: int = 100, offset: int = 0
    ) -> List[Account]:
        with self._data_lock:
            results = [
                a for a in self.accounts.values() if not role or a.role == role
            ]
            ordered = sorted(results, key=lambda a: a.created_at, reverse=True)
            return [replace(a) for a in ordered[offset : offset + limit]]

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            account = self.accounts.pop(account_id, None)
            if not account:
                return False
            self.email_index.pop(self._key(account.email), None)
            self.credentials.pop(account_id, None)
            self._persist_state()
            return True

    # credentials
    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for credentials", {"account_id": account_id}
                )
            # One hash per account; the previous one stops working immediately
            self.credentials[account_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(account_id)

    # persistence
    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "credentials": [
                {
                    "account_id": account_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for account_id, creds in self.credentials.items()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.email_index = {
            self._key(a.email): a.id for a in self.accounts.values()
        }
        self.credentials = {
            entry["account_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.logger.info("memory_store_loaded", accounts=len(self.accounts))
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_account(self, account: Account) -> dict:
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
            "last_login": self._serialize_datetime(account.last_login),
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        price = data.get("preferred_price_range")
        return Account(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name", ""),
            phone=data.get("phone", ""),
            address=Address.from_dict(data["address"]),
            role=data.get("role", "renter"),
            is_verified=data.get("is_verified", False),
            is_banned=data.get("is_banned", False),
            dob=date.fromisoformat(data["dob"]) if data.get("dob") else None,
            gender=data.get("gender", "other"),
            avatar=data.get("avatar") or DEFAULT_AVATAR_URL,
            preferred_utilities=list(data.get("preferred_utilities") or []),
            preferred_price_range=PriceRange(**price) if price else None,
            verification_document=data.get("verification_document"),
            rating=data.get("rating", 0),
            notification_email=data.get("notification_email", True),
            last_login=self._deserialize_datetime(data.get("last_login")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )


class MemoryRevocationStore:
    """Process-local revocation list used when Redis is unavailable.

    Records are keyed by a digest of the token. A lookup drops an expired
    record on sight, and ``revoke_token`` sweeps the whole list at most once
    per ``sweep_interval_seconds`` so tokens never presented again are still
    evicted, mirroring the Redis key TTL.
    """

    def __init__(self, *, sweep_interval_seconds: float = 60.0) -> None:
        self._records: Dict[str, RevocationRecord] = {}
        self._lock = threading.Lock()
        self.sweep_interval_seconds = sweep_interval_seconds
        self._last_sweep = time.monotonic()

    @staticmethod
    def _digest(token: str) -> str:
        return hashlib.sha256(token.encode()).hexdigest()

    def verify_connection(self) -> None:
        return None

    async def revoke_token(self, token: str, expires_at: datetime) -> None:
        with self._lock:
            self._records[self._digest(token)] = RevocationRecord(
                token=token, expires_at=expires_at
            )
        if time.monotonic() - self._last_sweep >= self.sweep_interval_seconds:
            self.purge_expired()

    async def get_revoked_token(self, token: str) -> Optional[RevocationRecord]:
        digest = self._digest(token)
        with self._lock:
            record = self._records.get(digest)
            if record and record.is_expired():
                self._records.pop(digest, None)
                return None
            return record

    async def is_token_revoked(self, token: str) -> bool:
        return await self.get_revoked_token(token) is not None

    def purge_expired(self) -> int:
        now = utcnow()
        with self._lock:
            self._last_sweep = time.monotonic()
            expired = [k for k, r in self._records.items() if r.is_expired(now)]
            for key in expired:
                self._records.pop(key, None)
        return len(expired)

    async def close(self) -> None:
        return None
