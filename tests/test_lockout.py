"""Tests for the server-side login lockout guard."""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from hackemon.service.lockout import LockoutGuard


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def guard(clock):
    return LockoutGuard(max_attempts=5, lockout_seconds=900, window_seconds=900, clock=clock)


class TestInMemoryLockout:
    async def test_fresh_key_is_open(self, guard):
        status = await guard.check("k")

        assert not status.locked
        assert status.failed_attempts == 0
        assert status.remaining_attempts == 5

    async def test_five_failures_lock_for_fifteen_minutes(self, guard, clock):
        for expected_remaining in (4, 3, 2, 1):
            status = await guard.record_failure("k")
            assert not status.locked
            assert status.remaining_attempts == expected_remaining

        status = await guard.record_failure("k")
        assert status.locked
        assert status.remaining_attempts == 0
        assert status.retry_after_seconds == 900

        record = guard.snapshot("k")
        assert record.failed_attempts == 5
        assert record.lockout_end_time == clock.now + timedelta(minutes=15)

        clock.advance(600)
        status = await guard.check("k")
        assert status.locked
        assert status.retry_after_seconds == 300

    async def test_failures_while_locked_do_not_extend_lock(self, guard, clock):
        for _ in range(5):
            await guard.record_failure("k")
        clock.advance(100)

        status = await guard.record_failure("k")
        assert status.locked
        assert status.retry_after_seconds == 800
        assert guard.snapshot("k").failed_attempts == 5

    async def test_lock_expires_and_record_resets(self, guard, clock):
        for _ in range(5):
            await guard.record_failure("k")
        clock.advance(900)

        status = await guard.check("k")
        assert not status.locked
        assert status.failed_attempts == 0
        record = guard.snapshot("k")
        assert record.failed_attempts == 0
        assert record.lockout_end_time is None

    async def test_old_failures_leave_the_window(self, guard, clock):
        for _ in range(4):
            await guard.record_failure("k")
        clock.advance(901)

        status = await guard.record_failure("k")
        assert not status.locked
        assert status.failed_attempts == 1

    async def test_reset_clears_failures(self, guard):
        for _ in range(3):
            await guard.record_failure("k")
        await guard.reset("k")

        assert (await guard.check("k")).failed_attempts == 0

    async def test_keys_are_independent(self, guard):
        for _ in range(5):
            await guard.record_failure("a")

        assert (await guard.check("a")).locked
        assert not (await guard.check("b")).locked


class TestAcquire:
    async def test_fifth_reservation_passes_and_locks_the_next(self, guard, clock):
        remaining = [(await guard.acquire("k")).remaining_attempts for _ in range(5)]

        assert remaining == [4, 3, 2, 1, 0]
        refused = await guard.acquire("k")
        assert refused.locked
        assert refused.retry_after_seconds == 900
        assert guard.snapshot("k").lockout_end_time == clock.now + timedelta(minutes=15)

    async def test_refused_attempts_are_not_counted(self, guard):
        for _ in range(5):
            await guard.acquire("k")
        for _ in range(3):
            assert (await guard.acquire("k")).locked

        assert guard.snapshot("k").failed_attempts == 5

    async def test_reset_after_success_releases_reservations(self, guard):
        for _ in range(4):
            await guard.acquire("k")
        await guard.reset("k")

        status = await guard.acquire("k")
        assert not status.locked
        assert status.remaining_attempts == 4

    def test_threads_racing_on_one_key_get_five_slots(self, guard):
        def attempt(_):
            return asyncio.run(guard.acquire("k"))

        with ThreadPoolExecutor(max_workers=8) as pool:
            statuses = list(pool.map(attempt, range(32)))

        assert sum(1 for s in statuses if not s.locked) == 5
        assert guard.snapshot("k").failed_attempts == 5


class TestStaleRecords:
    async def test_untouched_keys_are_swept(self, guard, clock):
        for i in range(50):
            await guard.record_failure(f"user-{i}")
        assert guard.tracked_keys() == 50

        clock.advance(901)
        await guard.acquire("fresh")

        assert guard.tracked_keys() == 1

    async def test_live_lockouts_survive_the_sweep(self, guard, clock):
        for _ in range(5):
            await guard.acquire("locked")
        await guard.acquire("counting")

        clock.advance(600)
        await guard.acquire("other")

        assert guard.tracked_keys() == 3
        assert (await guard.check("locked")).locked


class TestLockoutKeys:
    def test_key_is_a_digest_of_the_normalized_identifier(self):
        key = LockoutGuard.key_for(" Alice@Example.com ")

        assert key == LockoutGuard.key_for("alice@example.com")
        assert "alice" not in key
        assert len(key) == 64

    def test_ip_scopes_the_key(self):
        assert LockoutGuard.key_for("alice", "10.0.0.1") != LockoutGuard.key_for("alice", "10.0.0.2")
        assert LockoutGuard.key_for("alice", None) == LockoutGuard.key_for("alice")


class StubCache:
    """Records calls the way the Redis cache would receive them."""

    def __init__(self, failure_result=(False, 1, 0), lockout=(0, 0), acquire_result=(True, 1, 0)):
        self.failure_result = failure_result
        self.acquire_result = acquire_result
        self.lockout = lockout
        self.calls = []

    async def get_login_lockout(self, key):
        self.calls.append(("get", key))
        return self.lockout

    async def record_login_failure(self, key, *, max_attempts, lockout_seconds, window_seconds):
        self.calls.append(("fail", key, max_attempts, lockout_seconds, window_seconds))
        return self.failure_result

    async def acquire_login_attempt(self, key, *, max_attempts, lockout_seconds, window_seconds):
        self.calls.append(("acquire", key, max_attempts, lockout_seconds, window_seconds))
        return self.acquire_result

    async def clear_login_failures(self, key):
        self.calls.append(("clear", key))


class TestCacheBackedLockout:
    async def test_failure_is_delegated_with_policy(self):
        cache = StubCache(failure_result=(False, 2, 0))
        guard = LockoutGuard(cache, max_attempts=5, lockout_seconds=900, window_seconds=600)

        status = await guard.record_failure("k")

        assert cache.calls == [("fail", "k", 5, 900, 600)]
        assert status.failed_attempts == 2
        assert status.remaining_attempts == 3

    async def test_locked_result_is_reported(self):
        cache = StubCache(failure_result=(True, 5, 900))
        guard = LockoutGuard(cache)

        status = await guard.record_failure("k")

        assert status.locked
        assert status.retry_after_seconds == 900

    async def test_check_and_reset_use_the_cache(self):
        cache = StubCache(lockout=(42, 0))
        guard = LockoutGuard(cache)

        status = await guard.check("k")
        await guard.reset("k")

        assert status.locked
        assert status.retry_after_seconds == 42
        assert cache.calls == [("get", "k"), ("clear", "k")]

    async def test_acquire_is_one_cache_call(self):
        cache = StubCache(acquire_result=(True, 5, 0))
        guard = LockoutGuard(cache, max_attempts=5, lockout_seconds=900, window_seconds=600)

        status = await guard.acquire("k")

        assert cache.calls == [("acquire", "k", 5, 900, 600)]
        assert not status.locked
        assert status.remaining_attempts == 0

    async def test_refused_acquire_reports_retry_after(self):
        cache = StubCache(acquire_result=(False, -1, 120))
        guard = LockoutGuard(cache)

        status = await guard.acquire("k")

        assert status.locked
        assert status.retry_after_seconds == 120
