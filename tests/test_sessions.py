"""Unit tests for refresh-token backed sessions."""

from datetime import timedelta

import pytest

from iamcore.service.sessions import SessionManager
from iamcore.service.tokens import TokenIssuer
from iamcore.storage.common import hash_token


@pytest.fixture
def issuer(settings, clock):
    return TokenIssuer(settings, clock=clock)


@pytest.fixture
def sessions(store, issuer, settings, clock):
    return SessionManager(store, issuer, settings, clock=clock)


@pytest.fixture
def account(store, clock):
    return store.create_account("sess@example.com", "hash", now=clock())


class TestSessionLifecycle:
    def test_open_stores_only_digest(self, sessions, store, account):
        session, raw = sessions.open(account, "agent", "10.0.0.1")
        stored = store.get_session(session.id)
        assert stored.refresh_token_hash == hash_token(raw)
        assert raw not in stored.refresh_token_hash
        assert stored.user_agent == "agent"
        assert stored.ip_addr == "10.0.0.1"

    def test_create_reads_session_id_from_token(self, sessions, issuer, account):
        raw = issuer.issue_refresh(account.id, "0b5a8a9e-8f4e-4a4e-9a8e-0a0a0a0a0a0a")
        session = sessions.create(account.id, raw)
        assert session.id == "0b5a8a9e-8f4e-4a4e-9a8e-0a0a0a0a0a0a"
        assert sessions.validate(raw).id == session.id

    def test_validate_round(self, sessions, account):
        session, raw = sessions.open(account)
        assert sessions.validate(raw).id == session.id

    def test_validate_rejects_garbage(self, sessions):
        assert sessions.validate("not-a-token") is None

    def test_expiry(self, sessions, settings, clock, account):
        _, raw = sessions.open(account)
        clock.advance(minutes=settings.refresh_token_ttl_minutes + 1)
        assert sessions.validate(raw) is None

    def test_revoke(self, sessions, account):
        session, raw = sessions.open(account)
        assert sessions.revoke(session.id) is True
        assert sessions.revoke(session.id) is False
        assert sessions.validate(raw) is None


class TestRotation:
    def test_rotate_swaps_token(self, sessions, issuer, account, clock):
        session, raw = sessions.open(account)
        clock.advance(minutes=5)
        new_raw = issuer.issue_refresh(account.id, session.id)
        rotated = sessions.rotate(session, new_raw)
        assert rotated is not None
        assert rotated.last_rotated_at == clock()
        assert sessions.validate(new_raw).id == session.id
        assert sessions.validate(raw) is None

    def test_only_one_concurrent_rotation_wins(self, sessions, issuer, account):
        session, _ = sessions.open(account)
        first = issuer.issue_refresh(account.id, session.id)
        second = issuer.issue_refresh(account.id, session.id)
        assert sessions.rotate(session, first) is not None
        assert sessions.rotate(session, second) is None
        assert sessions.validate(first) is not None
        assert sessions.validate(second) is None

    def test_rotate_extends_expiry(self, sessions, issuer, settings, clock, account):
        session, _ = sessions.open(account)
        clock.advance(days=3)
        rotated = sessions.rotate(session, issuer.issue_refresh(account.id, session.id))
        assert rotated.expires_at == clock() + timedelta(minutes=settings.refresh_token_ttl_minutes)

    def test_revoked_session_cannot_rotate(self, sessions, issuer, account):
        session, _ = sessions.open(account)
        sessions.revoke(session.id)
        assert sessions.rotate(session, issuer.issue_refresh(account.id, session.id)) is None


class TestSessionCap:
    def test_oldest_session_evicted(self, sessions, settings, clock, account):
        opened = []
        for _ in range(settings.max_concurrent_sessions + 1):
            opened.append(sessions.open(account))
            clock.advance(seconds=1)
        active_ids = {s.id for s in sessions.list_active(account.id)}
        assert len(active_ids) == settings.max_concurrent_sessions
        assert opened[0][0].id not in active_ids
        assert sessions.validate(opened[0][1]) is None
        assert opened[-1][0].id in active_ids


class TestBulkOperations:
    def test_revoke_all_except_current(self, sessions, account):
        keep, _ = sessions.open(account)
        sessions.open(account)
        sessions.open(account)
        assert sessions.revoke_all(account.id, except_session_id=keep.id) == 2
        assert [s.id for s in sessions.list_active(account.id)] == [keep.id]

    def test_sweep_expired_uses_retention(self, sessions, settings, clock, account):
        sessions.open(account)
        clock.advance(minutes=settings.refresh_token_ttl_minutes, days=settings.session_retention_days - 1)
        assert sessions.sweep_expired()["sessions"] == 0
        clock.advance(days=2)
        assert sessions.sweep_expired()["sessions"] == 1
        assert sessions.list_active(account.id) == []
