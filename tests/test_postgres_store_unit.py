"""PostgresStore logic exercised against a scripted connection."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from iamcore.logging import get_logger
from iamcore.storage.common import SecretCipher
from iamcore.storage.errors import ConstraintViolation
from iamcore.storage.models import MfaConfig, OAuthLink, Session
from iamcore.storage.postgres import PostgresStore

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
ACCOUNT_ID = "5d0c4b7e-2f64-4a8e-9d3c-1f2b3a4c5d6e"


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    """Replays queued results and records every statement."""

    def __init__(self, results):
        self.results = list(results)
        self.executed = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        result = self.results.pop(0) if self.results else FakeCursor()
        if isinstance(result, Exception):
            raise result
        return result


class FakePool:
    def __init__(self, *results):
        self.conn = FakeConnection(results)

    def connection(self):
        return self.conn


def _store(pool=None):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit-test"
    store.logger = get_logger("test")
    store.pool = pool or DummyPool()
    store._cipher = SecretCipher("postgres-unit-test-key")
    return store


def _account_row(**overrides):
    row = {
        "id": uuid.uuid4(),
        "email": "pg@example.com",
        "password_hash": "hash",
        "roles": ["user"],
        "tenant_id": "public",
        "is_active": True,
        "failed_attempts": 0,
        "lock_until": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def _session_row(**overrides):
    row = {
        "id": uuid.uuid4(),
        "account_id": uuid.uuid4(),
        "refresh_token_hash": "new-hash",
        "created_at": NOW,
        "expires_at": NOW + timedelta(days=7),
        "revoked": False,
    }
    row.update(overrides)
    return row


class TestSessions:
    def test_non_uuid_session_id_skips_database(self):
        assert _store().get_session("not-a-uuid") is None

    def test_rotate_is_conditional_update(self):
        pool = FakePool(FakeCursor([_session_row()]))
        store = _store(pool)
        rotated = store.rotate_session(
            str(uuid.uuid4()),
            expected_hash="old-hash",
            new_hash="new-hash",
            expires_at=NOW + timedelta(days=7),
            now=NOW,
        )
        assert rotated.refresh_token_hash == "new-hash"
        sql, params = pool.conn.executed[0]
        assert "WHERE id = %s AND refresh_token_hash = %s AND NOT revoked" in sql
        assert params[4] == "old-hash"

    def test_lost_rotation_returns_none(self):
        store = _store(FakePool(FakeCursor([])))
        assert (
            store.rotate_session(
                str(uuid.uuid4()), expected_hash="a", new_hash="b", expires_at=NOW, now=NOW
            )
            is None
        )

    def test_duplicate_session_maps_to_constraint_violation(self):
        store = _store(FakePool(errors.UniqueViolation("duplicate key")))
        with pytest.raises(ConstraintViolation):
            store.create_session(Session.new(str(uuid.uuid4()), "h", now=NOW))

    def test_revoke_all_excluding_current(self):
        pool = FakePool(FakeCursor(rowcount=3))
        keep = str(uuid.uuid4())
        assert _store(pool).revoke_account_sessions(ACCOUNT_ID, now=NOW, except_session_id=keep) == 3
        _, params = pool.conn.executed[0]
        assert params == (NOW, ACCOUNT_ID, keep, keep)


class TestAccounts:
    def test_bootstrap_roles_for_empty_table(self):
        pool = FakePool(
            FakeCursor(),
            FakeCursor([{"taken": False}]),
            FakeCursor([_account_row(roles=["super_admin"])]),
        )
        account = _store(pool).create_account(
            "PG@Example.com", "hash", bootstrap_roles=("super_admin",), now=NOW
        )
        assert account.roles == ["super_admin"]
        statements = [sql for sql, _ in pool.conn.executed]
        assert statements[0].startswith("SELECT pg_advisory_xact_lock")
        insert_params = pool.conn.executed[2][1]
        assert insert_params[1] == "pg@example.com"
        assert insert_params[6] == ["super_admin"]

    def test_default_roles_when_accounts_exist(self):
        pool = FakePool(FakeCursor(), FakeCursor([{"taken": True}]), FakeCursor([_account_row()]))
        _store(pool).create_account("pg@example.com", "hash", bootstrap_roles=("super_admin",))
        assert pool.conn.executed[2][1][6] == ["user"]

    def test_duplicate_email(self):
        pool = FakePool(errors.UniqueViolation("duplicate key value"))
        with pytest.raises(ConstraintViolation) as excinfo:
            _store(pool).create_account("pg@example.com", "hash")
        assert excinfo.value.detail == {"field": "email"}

    def test_failure_while_locked_returns_current_row(self):
        locked = _account_row(failed_attempts=5, lock_until=NOW + timedelta(minutes=10))
        pool = FakePool(FakeCursor([]), FakeCursor([locked]))
        account = _store(pool).record_login_failure(
            ACCOUNT_ID, now=NOW, max_attempts=5, lock_duration=timedelta(minutes=30)
        )
        assert account.failed_attempts == 5
        assert account.lock_until == NOW + timedelta(minutes=10)
        first_sql, first_params = pool.conn.executed[0]
        assert "FOR UPDATE" in first_sql
        assert first_params["lock_until"] == NOW + timedelta(minutes=30)

    def test_delete_refuses_live_sessions(self):
        pool = FakePool(FakeCursor([{"live": True}]))
        with pytest.raises(ConstraintViolation):
            _store(pool).delete_account(ACCOUNT_ID, now=NOW)
        assert len(pool.conn.executed) == 1


class TestSecretsAtRest:
    def test_mfa_secret_encrypted_on_write(self):
        pool = FakePool(FakeCursor())
        _store(pool).save_mfa_config(MfaConfig(account_id="acct", secret="JBSWY3DPEHPK3PXP"))
        params = pool.conn.executed[0][1]
        assert params[3] != "JBSWY3DPEHPK3PXP"

    def test_mfa_secret_decrypted_on_read(self):
        store = _store()
        ciphertext = store._cipher.encrypt("JBSWY3DPEHPK3PXP")
        store.pool = FakePool(
            FakeCursor([{"account_id": "acct", "enabled": True, "mfa_type": "totp", "secret": ciphertext}])
        )
        assert store.get_mfa_config("acct").secret == "JBSWY3DPEHPK3PXP"

    def test_oauth_tokens_encrypted(self):
        pool = FakePool(FakeCursor())
        link = OAuthLink(
            id="l1", account_id="acct", provider="google", provider_subject="s", access_token="at"
        )
        returned = _store(pool).save_oauth_link(link)
        params = pool.conn.executed[0][1]
        assert params[6] != "at"
        assert returned.access_token == "at"


class TestOneTimeSecrets:
    def test_backup_code_consumption(self):
        assert _store(FakePool(FakeCursor([{"account_id": "acct"}]))).consume_backup_code("acct", "h")
        assert not _store(FakePool(FakeCursor([]))).consume_backup_code("acct", "h")

    def test_totp_step_guard(self):
        pool = FakePool(FakeCursor([]))
        assert _store(pool).advance_totp_step("acct", 7) is False
        assert "last_totp_step < %s" in pool.conn.executed[0][0]

    def test_challenge_uses_skip_locked(self):
        pool = FakePool(FakeCursor([{"id": "c1"}]))
        assert _store(pool).consume_mfa_challenge("acct", "sms", "h", now=NOW) is True
        assert "FOR UPDATE SKIP LOCKED" in pool.conn.executed[0][0]


class TestSweep:
    def test_counts_per_table(self):
        pool = FakePool(FakeCursor(rowcount=2), FakeCursor(rowcount=0), FakeCursor(rowcount=1))
        counts = _store(pool).sweep_expired(NOW)
        assert counts == {"sessions": 2, "reset_tokens": 0, "mfa_challenges": 1}
        tables = [sql.split()[2] for sql, _ in pool.conn.executed]
        assert tables == ["auth_session", "password_reset_token", "mfa_challenge"]


class TestNonUuidIds:
    """Malformed ids behave like unknown ids instead of reaching the database."""

    def test_account_lookups(self):
        store = _store()
        assert store.get_account("not-a-uuid") is None
        assert store.update_password("not-a-uuid", "hash") is None
        assert store.record_login_success("not-a-uuid", now=NOW) is None
        assert (
            store.record_login_failure(
                "not-a-uuid", now=NOW, max_attempts=5, lock_duration=timedelta(minutes=30)
            )
            is None
        )
        assert store.delete_account("not-a-uuid", now=NOW) is False

    def test_session_queries(self):
        store = _store()
        assert store.revoke_account_sessions("not-a-uuid", now=NOW) == 0
        assert store.list_sessions("not-a-uuid") == []

    def test_malformed_keep_session_is_ignored(self):
        pool = FakePool(FakeCursor(rowcount=2))
        assert _store(pool).revoke_account_sessions(ACCOUNT_ID, now=NOW, except_session_id="junk") == 2
        assert pool.conn.executed[0][1] == (NOW, ACCOUNT_ID, None, None)
