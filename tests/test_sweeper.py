"""ExpirySweeper scheduling and retention cutoff."""

import asyncio
from datetime import datetime, timedelta, timezone

from iamcore.clock import FrozenClock
from iamcore.service.sweeper import ExpirySweeper
from iamcore.storage.memory import MemoryStore
from iamcore.storage.models import Session

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class RecordingStore:
    def __init__(self, fail_times=0):
        self.cutoffs = []
        self.fail_times = fail_times

    def sweep_expired(self, cutoff):
        self.cutoffs.append(cutoff)
        if self.fail_times:
            self.fail_times -= 1
            raise RuntimeError("database unavailable")
        return {"sessions": 0, "reset_tokens": 0, "mfa_challenges": 0}


class TestSweepOnce:
    async def test_cutoff_is_now_minus_retention(self):
        store = RecordingStore()
        sweeper = ExpirySweeper(store, retention_days=30, clock=FrozenClock(NOW))
        await sweeper.sweep_once()
        assert store.cutoffs == [NOW - timedelta(days=30)]

    async def test_removes_only_records_past_retention(self):
        store = MemoryStore(secret_key="sweeper-test")
        account = store.create_account("sweep@example.com", "hash", now=NOW)
        stale = store.create_session(
            Session.new(account.id, "a", now=NOW - timedelta(days=45), ttl_minutes=60)
        )
        recent = store.create_session(
            Session.new(account.id, "b", now=NOW - timedelta(days=2), ttl_minutes=60)
        )
        sweeper = ExpirySweeper(store, retention_days=30, clock=FrozenClock(NOW))
        counts = await sweeper.sweep_once()
        assert counts["sessions"] == 1
        assert store.get_session(stale.id) is None
        assert store.get_session(recent.id) is not None


class TestLifecycle:
    async def test_start_and_stop(self):
        store = RecordingStore()
        sweeper = ExpirySweeper(store, interval=3600, clock=FrozenClock(NOW))
        await sweeper.start()
        assert sweeper.running
        for _ in range(50):
            if store.cutoffs:
                break
            await asyncio.sleep(0.01)
        await sweeper.stop()
        assert not sweeper.running
        assert len(store.cutoffs) == 1

    async def test_double_start_keeps_one_task(self):
        sweeper = ExpirySweeper(RecordingStore(), interval=3600, clock=FrozenClock(NOW))
        await sweeper.start()
        task = sweeper._task
        await sweeper.start()
        assert sweeper._task is task
        await sweeper.stop()

    async def test_loop_survives_store_errors(self):
        store = RecordingStore(fail_times=1)
        sweeper = ExpirySweeper(store, interval=0, clock=FrozenClock(NOW))
        await sweeper.start()
        for _ in range(50):
            if len(store.cutoffs) >= 2:
                break
            await asyncio.sleep(0.01)
        await sweeper.stop()
        assert len(store.cutoffs) >= 2

    async def test_stop_without_start(self):
        sweeper = ExpirySweeper(RecordingStore(), clock=FrozenClock(NOW))
        await sweeper.stop()
        assert not sweeper.running
