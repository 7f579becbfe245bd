"""Unit tests for the Redis and Postgres adapters with their backends stubbed."""

import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from stayhub.service.runtime import Runtime, check_rate_limit
from stayhub.storage.errors import ConstraintViolation
from stayhub.storage.models import Account, Address
from stayhub.storage.postgres import PostgresStore
from stayhub.storage.redis_cache import RedisCache


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class RecordingConnection:
    """Stands in for a pooled psycopg connection and records statements."""

    def __init__(self, row, fail_on=None):
        self.row = row
        self.fail_on = fail_on
        self.statements = []
        self.in_transaction = False
        self.rolled_back = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    @contextmanager
    def transaction(self):
        self.in_transaction = True
        try:
            yield
        except Exception:
            self.rolled_back = True
            raise
        finally:
            self.in_transaction = False

    def execute(self, query, params=None):
        statement = " ".join(query.split())
        self.statements.append((statement, self.in_transaction))
        if self.fail_on and self.fail_on in statement:
            raise RuntimeError("credential insert failed")
        return self

    def fetchone(self):
        return self.row


def _account_and_row():
    account = Account.new(
        "host@example.com", "Minh", "0987654321", Address("1 A", "W", "D", "C")
    )
    row = {
        "id": account.id,
        "email": account.email,
        "name": account.name,
        "phone": account.phone,
        "address": account.address.to_dict(),
    }
    return account, row


class TestRedisHelpers:
    def test_revocation_key_hides_token(self):
        key = RedisCache._revocation_key("secret.jwt.value")

        assert key.startswith("auth:revoked:")
        assert "secret" not in key
        assert key == RedisCache._revocation_key("secret.jwt.value")

    def test_ttl_is_clamped(self):
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        future = datetime.now(timezone.utc) + timedelta(minutes=10)

        assert RedisCache._ttl_seconds(past) == 1
        assert 590 <= RedisCache._ttl_seconds(future) <= 600

    def test_ttl_rounds_partial_seconds_up(self):
        soon = datetime.now(timezone.utc) + timedelta(seconds=10, milliseconds=400)

        assert RedisCache._ttl_seconds(soon) == 11

    def test_record_parses_stored_expiry(self):
        stamp = int(time.time()) + 60

        record = RedisCache._record("tok", str(stamp))

        assert record.token == "tok"
        assert int(record.expires_at.timestamp()) == stamp
        assert RedisCache._record("tok", None) is None


class TestRedisRevocation:
    @pytest.fixture
    def cache(self):
        cache = RedisCache.__new__(RedisCache)
        cache.client = MagicMock()
        cache.client.set = AsyncMock()
        cache.client.exists = AsyncMock(return_value=1)
        return cache

    async def test_revoke_sets_key_with_ttl(self, cache):
        expires = datetime.now(timezone.utc) + timedelta(minutes=5)

        await cache.revoke_token("tok", expires)

        args, kwargs = cache.client.set.call_args
        assert args[0] == RedisCache._revocation_key("tok")
        assert args[1] == str(int(expires.timestamp()))
        assert 1 <= kwargs["ex"] <= 300

    async def test_is_revoked_uses_exists(self, cache):
        assert await cache.is_token_revoked("tok") is True
        cache.client.exists.assert_awaited_once_with(RedisCache._revocation_key("tok"))


class TestRuntimeRateLimitDelegation:
    async def test_uses_cache_when_available(self):
        runtime = MagicMock(spec=Runtime)
        runtime.cache = AsyncMock()
        runtime.cache.check_rate_limit = AsyncMock(return_value=(True, 4, 0))

        result = await check_rate_limit(runtime, "login:k", 5, 60, return_remaining=True)

        assert result == (True, 4, 0)
        runtime.cache.check_rate_limit.assert_awaited_once()

    async def test_invalid_window_defaults(self):
        runtime = MagicMock(spec=Runtime)
        runtime.cache = AsyncMock()
        runtime.cache.check_rate_limit = AsyncMock(return_value=True)

        with patch("stayhub.service.runtime.logger") as mock_logger:
            await check_rate_limit(runtime, "login:k", 5, 0)

        assert mock_logger.warning.call_args[0][0] == "rate_limit_invalid_window"
        assert runtime.cache.check_rate_limit.call_args[0][2] == 60


class TestPostgresGuards:
    def _store(self, tmp_path):
        store = PostgresStore.__new__(PostgresStore)
        store.pool = DummyPool()
        store.fs_root = str(tmp_path)
        return store

    def test_update_rejects_unknown_columns_before_query(self, tmp_path):
        store = self._store(tmp_path)

        with pytest.raises(ConstraintViolation) as excinfo:
            store.update_account("acct", password_hash="x", email="y")
        assert excinfo.value.detail == {"fields": ["email", "password_hash"]}


class TestPostgresCreateAccount:
    def _store(self, conn):
        store = PostgresStore.__new__(PostgresStore)
        store.pool = SimpleNamespace(connection=lambda: conn)
        return store

    def test_account_and_credential_share_a_transaction(self):
        account, row = _account_and_row()
        conn = RecordingConnection(row)

        created = self._store(conn).create_account(
            account, password_hash="hash", password_algo="argon2id"
        )

        assert created.id == account.id
        assert [s.split(" (")[0] for s, _ in conn.statements] == [
            "INSERT INTO app_account",
            "INSERT INTO account_credential",
        ]
        assert all(inside for _, inside in conn.statements)

    def test_credential_failure_rolls_back_account(self):
        account, row = _account_and_row()
        conn = RecordingConnection(row, fail_on="account_credential")

        with pytest.raises(RuntimeError):
            self._store(conn).create_account(
                account, password_hash="hash", password_algo="argon2id"
            )

        assert conn.rolled_back
