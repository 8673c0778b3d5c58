from __future__ import annotations

import hashlib
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from hackemon.logging import get_logger

logger = get_logger(__name__)

# How often the in-process map is swept for expired records
SWEEP_INTERVAL_SECONDS = 60


@dataclass
class LockoutRecord:
    failed_attempts: int = 0
    lockout_end_time: Optional[datetime] = None
    window_start: Optional[datetime] = None


@dataclass(frozen=True)
class LockoutStatus:
    locked: bool
    failed_attempts: int
    remaining_attempts: int
    retry_after_seconds: int = 0


class LockoutGuard:
    """Server-side brute-force guard in front of login.

    OPEN(n) --attempt--> OPEN(n+1) ... --n == max_attempts--> LOCKED
    LOCKED --lockout expires--> OPEN(0)

    ``acquire`` reserves an attempt before the password is checked, so a
    burst of parallel requests cannot all pass a check made before any of
    them fails. A successful login calls ``reset``; a failed one keeps its
    reservation as the recorded failure.

    State lives in Redis when a cache is configured (one Lua script per
    reservation); otherwise in a process-local dict guarded by a lock.
    Attempts older than ``window_seconds`` stop counting.
    """

    def __init__(
        self,
        cache=None,
        *,
        max_attempts: int = 5,
        lockout_seconds: int = 15 * 60,
        window_seconds: int = 15 * 60,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.cache = cache
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds
        self.window_seconds = window_seconds
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._state_lock = threading.Lock()
        self._records: Dict[str, LockoutRecord] = {}
        self._last_sweep: Optional[datetime] = None

    @staticmethod
    def key_for(identifier: str, client_ip: Optional[str] = None) -> str:
        """Hash the normalized identifier (and IP) so raw identifiers never become keys."""
        material = identifier.strip().lower()
        if client_ip:
            material = f"{material}|{client_ip}"
        return hashlib.sha256(material.encode("utf-8")).hexdigest()

    def _status(self, failed_attempts: int, retry_after: int = 0) -> LockoutStatus:
        locked = retry_after > 0
        remaining = 0 if locked else max(self.max_attempts - failed_attempts, 0)
        return LockoutStatus(locked, failed_attempts, remaining, retry_after)

    def _locked_status(self, record: LockoutRecord, now: datetime) -> LockoutStatus:
        retry_after = math.ceil((record.lockout_end_time - now).total_seconds())
        return self._status(record.failed_attempts, max(retry_after, 1))

    def _is_stale(self, record: LockoutRecord, now: datetime) -> bool:
        if record.lockout_end_time is not None:
            return record.lockout_end_time <= now
        return bool(record.window_start) and now - record.window_start >= timedelta(
            seconds=self.window_seconds
        )

    def _live_record(self, key: str, now: datetime) -> Optional[LockoutRecord]:
        """Return the record for ``key`` after expiring stale state. Caller holds the lock."""
        record = self._records.get(key)
        if record is None:
            return None
        if self._is_stale(record, now):
            self._records.pop(key, None)
            return None
        return record

    def _sweep(self, now: datetime) -> None:
        """Drop expired records for every key. Caller holds the lock."""
        if self._last_sweep is not None:
            if (now - self._last_sweep).total_seconds() < SWEEP_INTERVAL_SECONDS:
                return
        self._last_sweep = now
        stale = [key for key, record in self._records.items() if self._is_stale(record, now)]
        for key in stale:
            del self._records[key]
        if stale:
            logger.debug("login_lockout_records_swept", removed=len(stale))

    def _lock(self, record: LockoutRecord, now: datetime) -> None:
        record.lockout_end_time = now + timedelta(seconds=self.lockout_seconds)
        logger.warning("login_lockout_triggered", attempts=record.failed_attempts)

    async def check(self, key: str) -> LockoutStatus:
        """Read-only view of ``key``; does not reserve an attempt."""
        if self.cache:
            retry_after, attempts = await self.cache.get_login_lockout(key)
            if retry_after > 0:
                return self._status(self.max_attempts, retry_after)
            return self._status(attempts)

        now = self.clock()
        with self._state_lock:
            record = self._live_record(key, now)
            if record is None:
                return self._status(0)
            if record.lockout_end_time is not None:
                return self._locked_status(record, now)
            return self._status(record.failed_attempts)

    async def acquire(self, key: str) -> LockoutStatus:
        """Reserve one login attempt for ``key``.

        Returns a locked status (nothing counted) while the key is locked.
        Otherwise the attempt is counted; the one that reaches
        ``max_attempts`` is still allowed through and engages the lock for
        every attempt after it.
        """
        if self.cache:
            allowed, attempts, retry_after = await self.cache.acquire_login_attempt(
                key,
                max_attempts=self.max_attempts,
                lockout_seconds=self.lockout_seconds,
                window_seconds=self.window_seconds,
            )
            if not allowed:
                return self._status(self.max_attempts, max(retry_after, 1))
            if attempts >= self.max_attempts:
                logger.warning("login_lockout_triggered", attempts=attempts)
            return self._status(attempts)

        now = self.clock()
        with self._state_lock:
            self._sweep(now)
            record = self._live_record(key, now)
            if record is None:
                record = LockoutRecord(window_start=now)
                self._records[key] = record
            if record.lockout_end_time is not None:
                return self._locked_status(record, now)
            record.failed_attempts += 1
            if record.failed_attempts >= self.max_attempts:
                self._lock(record, now)
            return self._status(record.failed_attempts)

    async def record_failure(self, key: str) -> LockoutStatus:
        """Count a failure observed after the fact (no reservation was made)."""
        if self.cache:
            locked, attempts, retry_after = await self.cache.record_login_failure(
                key,
                max_attempts=self.max_attempts,
                lockout_seconds=self.lockout_seconds,
                window_seconds=self.window_seconds,
            )
            if locked:
                if attempts >= 0:
                    logger.warning("login_lockout_triggered", attempts=attempts)
                return self._status(self.max_attempts, max(retry_after, 1))
            return self._status(attempts)

        now = self.clock()
        with self._state_lock:
            self._sweep(now)
            record = self._live_record(key, now)
            if record is None:
                record = LockoutRecord(window_start=now)
                self._records[key] = record
            if record.lockout_end_time is not None:
                return self._locked_status(record, now)
            record.failed_attempts += 1
            if record.failed_attempts >= self.max_attempts:
                self._lock(record, now)
                return self._status(record.failed_attempts, self.lockout_seconds)
            return self._status(record.failed_attempts)

    async def reset(self, key: str) -> None:
        if self.cache:
            await self.cache.clear_login_failures(key)
            return
        with self._state_lock:
            self._records.pop(key, None)

    def tracked_keys(self) -> int:
        """Number of in-process records currently held."""
        with self._state_lock:
            return len(self._records)

    def snapshot(self, key: str) -> LockoutRecord:
        """Copy of the in-process record for ``key`` (``{0, None}`` when absent)."""
        now = self.clock()
        with self._state_lock:
            record = self._live_record(key, now)
            if record is None:
                return LockoutRecord()
            return LockoutRecord(
                record.failed_attempts, record.lockout_end_time, record.window_start
            )
