from __future__ import annotations

import threading
import time
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, List, Optional

from harmony_core.config import Settings
from harmony_core.logging import get_logger, mask_key
from harmony_core.service.errors import RateLimitedError
from harmony_core.storage.models import AuthLockoutRecord, utcnow

logger = get_logger(__name__)

_IP_KEY_MAX = 64
_EMAIL_KEY_MAX = 256


def lockout_keys(ip: Optional[str] = None, email: Optional[str] = None) -> List[str]:
    """Build the persisted lockout keys for an ip and/or email."""
    keys: List[str] = []
    if ip and ip.strip():
        keys.append("ip:" + ip.strip()[:_IP_KEY_MAX])
    if email and email.strip():
        keys.append("email:" + email.strip().lower()[:_EMAIL_KEY_MAX])
    if not keys:
        keys.append("ip:unknown")
    return keys


class RegistrationRateLimiter:
    """Process-local sliding window of registration attempts per key.

    Not shared across workers; each process enforces its own window.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float = 3600.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def check(self, key: str) -> None:
        """Record an attempt for ``key`` or raise when the window is full."""
        now = self._clock()
        with self._lock:
            window = self._windows.setdefault(key, deque())
            self._prune(window, now)
            if len(window) >= self.limit:
                retry_after = window[0] + self.window_seconds - now
                raise RateLimitedError(
                    "too many registrations, try again later",
                    retry_after=retry_after,
                )
            window.append(now)

    def sweep(self) -> int:
        """Drop windows with no attempts inside the current window."""
        now = self._clock()
        removed = 0
        with self._lock:
            for key in list(self._windows.keys()):
                window = self._windows[key]
                self._prune(window, now)
                if not window:
                    del self._windows[key]
                    removed += 1
        return removed

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def _prune(self, window: Deque[float], now: float) -> None:
        cutoff = now - self.window_seconds
        while window and window[0] <= cutoff:
            window.popleft()


class LockoutGuard:
    """Counts failed authentication attempts and enforces temporary blocks."""

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        registration_limiter: Optional[RegistrationRateLimiter] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock
        self.registration_limiter = registration_limiter or RegistrationRateLimiter(
            settings.registrations_per_ip_per_hour
        )

    @property
    def block_duration(self) -> timedelta:
        return timedelta(seconds=self.settings.auth_block_seconds)

    def assert_not_blocked(self, ip: Optional[str] = None, email: Optional[str] = None) -> None:
        now = self.clock()
        for key in lockout_keys(ip, email):
            record = self.store.get_lockout(key)
            if record and record.is_locked(now):
                retry_after = (record.locked_until - now).total_seconds()
                raise RateLimitedError(
                    "too many attempts, try again later", retry_after=retry_after
                )

    def record_failed_auth(self, ip: Optional[str] = None, email: Optional[str] = None) -> None:
        now = self.clock()
        for key in lockout_keys(ip, email):
            record = self.store.get_lockout(key) or AuthLockoutRecord(key=key)
            attempts = record.attempts + 1
            locked_until = record.locked_until
            if record.is_locked(now):
                # Escalate from the current unlock time, not from now
                locked_until = record.locked_until + self.block_duration
                logger.warning(
                    "auth_block_extended",
                    key=mask_key(key),
                    attempts=attempts,
                    locked_until=locked_until.isoformat(),
                )
            elif attempts >= self.settings.failed_auth_max:
                locked_until = now + self.block_duration
                logger.warning(
                    "auth_blocked",
                    key=mask_key(key),
                    attempts=attempts,
                    locked_until=locked_until.isoformat(),
                )
            self.store.save_lockout(
                AuthLockoutRecord(
                    key=key, attempts=attempts, locked_until=locked_until, updated_at=now
                )
            )

    def clear_auth_attempts(self, ip: Optional[str] = None, email: Optional[str] = None) -> None:
        self.store.delete_lockouts(lockout_keys(ip, email))

    def check_registration_limit(self, ip: Optional[str]) -> None:
        key = (ip or "unknown").strip()[:_IP_KEY_MAX] or "unknown"
        self.registration_limiter.check(key)

    # ip-only wrappers used by login paths that have no email yet
    def is_login_blocked(self, ip: Optional[str]) -> bool:
        try:
            self.assert_not_blocked(ip=ip)
        except RateLimitedError:
            return True
        return False

    def record_failed_login(self, ip: Optional[str]) -> None:
        self.record_failed_auth(ip=ip)

    def clear_failed_logins(self, ip: Optional[str]) -> None:
        self.clear_auth_attempts(ip=ip)


__all__ = ["LockoutGuard", "RegistrationRateLimiter", "lockout_keys"]
