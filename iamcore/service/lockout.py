from __future__ import annotations

import math
from datetime import timedelta
from typing import Optional

from iamcore.clock import Clock, utc_now
from iamcore.config import Settings
from iamcore.logging import get_logger
from iamcore.service.errors import AccountLockedError
from iamcore.storage.models import Account

logger = get_logger(__name__)


class LockoutTracker:
    """Per-account brute-force lock driven by consecutive login failures.

    The counter lives on the account row and is advanced by the store in a
    single atomic step, so concurrent failures cannot skip the threshold.
    A lock expires on its own; the first attempt after expiry counts as a
    fresh failure sequence.
    """

    def __init__(self, store, settings: Settings, *, clock: Clock = utc_now) -> None:
        self.store = store
        self.max_attempts = settings.lockout_max_attempts
        self.lock_duration = timedelta(minutes=settings.lockout_duration_minutes)
        self._clock = clock

    def retry_after(self, account: Account) -> int:
        if account.lock_until is None:
            return 0
        remaining = (account.lock_until - self._clock()).total_seconds()
        return max(0, math.ceil(remaining))

    def is_locked(self, account: Account) -> bool:
        return account.is_locked(self._clock())

    def ensure_unlocked(self, account: Account) -> None:
        if self.is_locked(account):
            retry = self.retry_after(account)
            logger.warning("login_rejected_locked", account_id=account.id, retry_after=retry)
            raise AccountLockedError(retry)

    def record_failure(self, account_id: str) -> Optional[Account]:
        account = self.store.record_login_failure(
            account_id,
            now=self._clock(),
            max_attempts=self.max_attempts,
            lock_duration=self.lock_duration,
        )
        if account is None:
            return None
        if account.is_locked(self._clock()) and account.failed_attempts >= self.max_attempts:
            logger.warning(
                "account_locked",
                account_id=account_id,
                failed_attempts=account.failed_attempts,
                lock_until=account.lock_until.isoformat(),
            )
        else:
            logger.info(
                "login_failure_recorded",
                account_id=account_id,
                failed_attempts=account.failed_attempts,
            )
        return account

    def record_success(self, account_id: str) -> Optional[Account]:
        return self.store.record_login_success(account_id, now=self._clock())

    def clear(self, account_id: str) -> Optional[Account]:
        logger.info("lockout_cleared", account_id=account_id)
        return self.store.clear_lockout(account_id)
