from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from iamcore.clock import Clock, utc_now
from iamcore.config import Settings
from iamcore.logging import get_logger
from iamcore.service.tokens import REFRESH, TokenIssuer
from iamcore.storage.common import digests_match, hash_token
from iamcore.storage.models import Account, Session


class SessionManager:
    """Server-side records that make refresh tokens revocable.

    Only the SHA-256 of a refresh token is stored. The token carries its
    session id (``sid``) so lookup is a keyed fetch followed by a
    constant-time digest comparison, never a scan over stored hashes.
    """

    def __init__(
        self,
        store,
        issuer: TokenIssuer,
        settings: Settings,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.settings = settings
        self._clock = clock
        self.logger = get_logger(__name__)

    @property
    def _ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    def create(
        self,
        account_id: str,
        raw_refresh_token: str,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
        *,
        session_id: Optional[str] = None,
    ) -> Session:
        if session_id is None:
            claims = self.issuer.validate(raw_refresh_token, REFRESH)
            session_id = claims.get("sid") if claims else None
        now = self._clock()
        session = Session.new(
            account_id,
            hash_token(raw_refresh_token),
            now=now,
            ttl_minutes=self.settings.refresh_token_ttl_minutes,
            session_id=session_id or str(uuid.uuid4()),
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        self.store.create_session(session)
        self._enforce_session_cap(account_id, now)
        self.logger.info("session_created", account_id=account_id, session_id=session.id)
        return session

    def open(
        self,
        account: Account,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Tuple[Session, str]:
        """Mint a refresh token and the session that tracks it."""

        session_id = str(uuid.uuid4())
        raw = self.issuer.issue_refresh(account.id, session_id)
        session = self.create(account.id, raw, user_agent, ip_addr, session_id=session_id)
        return session, raw

    def _enforce_session_cap(self, account_id: str, now: datetime) -> None:
        active = self.store.list_sessions(account_id, active_at=now)
        overflow = len(active) - self.settings.max_concurrent_sessions
        if overflow <= 0:
            return
        active.sort(key=lambda s: s.created_at)
        for stale in active[:overflow]:
            self.store.revoke_session(stale.id, now=now)
            self.logger.info(
                "session_evicted",
                account_id=account_id,
                session_id=stale.id,
                reason="concurrent_limit",
            )

    def validate(self, raw_refresh_token: str) -> Optional[Session]:
        claims = self.issuer.validate(raw_refresh_token, REFRESH)
        if not claims or not claims.get("sid"):
            return None
        session = self.store.get_session(str(claims["sid"]))
        if session is None:
            return None
        if not session.is_active(self._clock()):
            self.logger.info("session_inactive", session_id=session.id, revoked=session.revoked)
            return None
        if session.account_id != claims.get("sub"):
            self.logger.warning("session_subject_mismatch", session_id=session.id)
            return None
        if not digests_match(hash_token(raw_refresh_token), session.refresh_token_hash):
            # A superseded token from this session; rotation already moved on
            self.logger.warning("session_token_mismatch", session_id=session.id)
            return None
        return session

    def rotate(self, session: Session, new_raw_refresh_token: str) -> Optional[Session]:
        """Swap the stored hash if it still matches what ``session`` saw.

        Of two callers rotating the same session concurrently only the
        first swap succeeds; the other receives ``None``.
        """

        now = self._clock()
        rotated = self.store.rotate_session(
            session.id,
            expected_hash=session.refresh_token_hash,
            new_hash=hash_token(new_raw_refresh_token),
            expires_at=now + self._ttl,
            now=now,
        )
        if rotated is None:
            self.logger.warning("session_rotation_conflict", session_id=session.id)
            return None
        self.logger.info("session_rotated", session_id=session.id)
        return rotated

    def revoke(self, session_id: str) -> bool:
        revoked = self.store.revoke_session(session_id, now=self._clock())
        if revoked:
            self.logger.info("session_revoked", session_id=session_id)
        return revoked

    def revoke_all(self, account_id: str, *, except_session_id: Optional[str] = None) -> int:
        count = self.store.revoke_account_sessions(
            account_id, now=self._clock(), except_session_id=except_session_id
        )
        self.logger.info("sessions_revoked_all", account_id=account_id, count=count)
        return count

    def list_active(self, account_id: str) -> List[Session]:
        return self.store.list_sessions(account_id, active_at=self._clock())

    def default_sweep_cutoff(self) -> datetime:
        return self._clock() - timedelta(days=self.settings.session_retention_days)

    def sweep_expired(self, cutoff: Optional[datetime] = None) -> Dict[str, int]:
        return self.store.sweep_expired(cutoff or self.default_sweep_cutoff())
