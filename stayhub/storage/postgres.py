from __future__ import annotations

import json
from dataclasses import fields
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from stayhub.logging import get_logger
from stayhub.storage.errors import ConstraintViolation, DuplicateIdentity
from stayhub.storage.models import (
    DEFAULT_AVATAR_URL,
    Account,
    Address,
    PriceRange,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_account (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        name TEXT NOT NULL,
        phone TEXT NOT NULL,
        address JSONB NOT NULL,
        role TEXT NOT NULL DEFAULT 'renter',
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_banned BOOLEAN NOT NULL DEFAULT FALSE,
        dob DATE,
        gender TEXT NOT NULL DEFAULT 'other',
        avatar TEXT,
        preferred_utilities TEXT[] NOT NULL DEFAULT '{}',
        preferred_price_range JSONB,
        verification_document TEXT,
        rating DOUBLE PRECISION NOT NULL DEFAULT 0,
        notification_email BOOLEAN NOT NULL DEFAULT TRUE,
        last_login TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_account_email_key ON app_account (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS account_credential (
        account_id UUID PRIMARY KEY REFERENCES app_account(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

_JSON_COLUMNS = {"address", "preferred_price_range"}
_MUTABLE_COLUMNS = {f.name for f in fields(Account)} - {"id", "email", "created_at", "updated_at"}


class PostgresStore:
    """Postgres-backed credential store."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = fs_root
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the account tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    @staticmethod
    def _column_value(name: str, value: Any) -> Any:
        if name == "address" and isinstance(value, Address):
            return json.dumps(value.to_dict())
        if name == "preferred_price_range":
            if value is None:
                return None
            return json.dumps({"min": value.min, "max": value.max})
        return value

    @staticmethod
    def _account_from_row(row: dict) -> Account:
        address = row["address"]
        if isinstance(address, str):
            address = json.loads(address)
        price = row.get("preferred_price_range")
        if isinstance(price, str):
            price = json.loads(price)
        return Account(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            phone=row["phone"],
            address=Address.from_dict(address),
            role=row.get("role", "renter"),
            is_verified=bool(row.get("is_verified", False)),
            is_banned=bool(row.get("is_banned", False)),
            dob=row.get("dob"),
            gender=row.get("gender", "other"),
            avatar=row.get("avatar") or DEFAULT_AVATAR_URL,
            preferred_utilities=list(row.get("preferred_utilities") or []),
            preferred_price_range=PriceRange(**price) if price else None,
            verification_document=row.get("verification_document"),
            rating=float(row.get("rating") or 0),
            notification_email=bool(row.get("notification_email", True)),
            last_login=row.get("last_login"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    # accounts
    def create_account(
        self,
        account: Account,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
    ) -> Account:
        """Insert an account, and its credential when given, in one transaction."""
        email = account.email.strip().lower()
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO app_account (
                        id, email, name, phone, address, role, is_verified, is_banned,
                        gender, avatar, preferred_utilities, notification_email,
                        created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account.id,
                        email,
                        account.name,
                        account.phone,
                        json.dumps(account.address.to_dict()),
                        account.role,
                        account.is_verified,
                        account.is_banned,
                        account.gender,
                        account.avatar,
                        list(account.preferred_utilities),
                        account.notification_email,
                        account.created_at,
                        account.updated_at,
                    ),
                ).fetchone()
                if password_hash is not None:
                    conn.execute(
                        """
                        INSERT INTO account_credential (account_id, password_hash, password_algo)
                        VALUES (%s, %s, %s)
                        """,
                        (account.id, password_hash, password_algo or ""),
                    )
        except errors.UniqueViolation:
            raise DuplicateIdentity(email) from None
        return self._account_from_row(row)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_account WHERE lower(email) = lower(%s)",
                (email.strip(),),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account(self, account_id: str) -> Optional[Account]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM app_account WHERE id = %s", (account_id,)
                ).fetchone()
        except errors.InvalidTextRepresentation:
            # not a UUID, so no such account
            return None
        return self._account_from_row(row) if row else None

    def update_account(self, account_id: str, **patch: Any) -> Optional[Account]:
        unknown = set(patch) - _MUTABLE_COLUMNS
        if unknown:
            raise ConstraintViolation(
                "unknown account fields", {"fields": sorted(unknown)}
            )
        if not patch:
            return self.get_account(account_id)
        columns = sorted(patch)
        assignments = ", ".join(f"{name} = %s" for name in columns)
        params = [self._column_value(name, patch[name]) for name in columns]
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_account SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                (*params, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def list_accounts(
        self, *, role: Optional[str] = None, limit: int = 100, offset: int = 0
    ) -> List[Account]:
        query = "SELECT * FROM app_account"
        params: list[Any] = []
        if role:
            query += " WHERE role = %s"
            params.append(role)
        query += " ORDER BY created_at DESC LIMIT %s OFFSET %s"
        params.extend([limit, offset])
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._account_from_row(row) for row in rows]

    def delete_account(self, account_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM app_account WHERE id = %s", (account_id,))
            return cur.rowcount > 0

    # credentials
    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account_credential (account_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (account_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (account_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for credentials", {"account_id": account_id}
            ) from None

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM account_credential WHERE account_id = %s",
                (account_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])
