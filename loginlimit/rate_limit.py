"""
Failed-login rate limiter.

Logs every failed login on an enabled surface, counts recent attempts by IP
and by username over the findtime window, and bans whichever key reaches
max_retries.
"""

from __future__ import annotations

import logging
import threading
from contextlib import ExitStack, contextmanager
from datetime import datetime, timedelta
from typing import Callable, Generator

from loginlimit.config import Settings
from loginlimit.models import Ban, FailedLoginResult, LoginAttempt, Surface, utcnow
from loginlimit.stores import AttemptStore, BanStore

logger = logging.getLogger(__name__)

MAX_DELAY_SECONDS = 10

Clock = Callable[[], datetime]


class KeyedLocks:
    """One lock per key, dropped again once nobody holds or waits for it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # key -> [lock, holders + waiters]
        self._locks: dict[str, list] = {}

    @contextmanager
    def hold(self, key: str) -> Generator[None, None, None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        lock: threading.Lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    @contextmanager
    def hold_all(self, *keys: str) -> Generator[None, None, None]:
        """Hold several keys, acquired in sorted order to avoid deadlocks."""
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self.hold(key))
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class RateLimiter:
    """Records failed logins and bans IPs/usernames that exceed the threshold."""

    def __init__(
        self,
        attempts: AttemptStore,
        bans: BanStore,
        settings: Settings,
        clock: Clock = utcnow,
    ) -> None:
        self._attempts = attempts
        self._bans = bans
        self._settings = settings
        self._clock = clock
        self._locks = KeyedLocks()

    def is_enabled(self, surface: Surface) -> bool:
        """Check whether failed logins on this surface are tracked."""
        if surface is Surface.FRONTEND:
            return self._settings.enable_frontend_checks
        if surface is Surface.BACKEND:
            return self._settings.enable_backend_checks
        return False

    def record_failed_login(self, ip: str, username: str, surface: Surface) -> FailedLoginResult:
        """
        Record a failed login and ban the IP and/or username if needed.

        Args:
            ip: Client remote address (may be empty)
            username: Submitted username, untrimmed
            surface: Login entry point

        Returns:
            FailedLoginResult with counts, bans fired and suggested delay
        """
        if not self.is_enabled(surface):
            return FailedLoginResult()
        if username == "":
            return FailedLoginResult()

        settings = self._settings
        result = FailedLoginResult(recorded=True)

        with self._locks.hold_all(f"ip:{ip}", f"user:{username}"):
            now = self._clock()
            since = now - timedelta(seconds=settings.find_time_seconds)

            self._attempts.add(LoginAttempt(ip=ip, username=username, created_at=now))
            logger.info(
                "Failed %s login for %r from %s", surface.value, username, ip or "unknown"
            )

            result.ip_count = self._attempts.count_by_ip(ip, since)
            if result.ip_count >= settings.max_retries and not settings.disable_ip_check:
                self.ban(ip=ip)
                result.ip_banned = True

            result.user_count = self._attempts.count_by_username(username, since)
            if result.user_count >= settings.max_retries:
                self.ban(username=username)
                result.username_banned = True

        result.banned = result.ip_banned or result.username_banned
        if settings.delay_login_on_failure:
            result.delay_seconds = min(result.user_count, MAX_DELAY_SECONDS)
        return result

    def ban(self, ip: str | None = None, username: str | None = None) -> Ban:
        """Create a ban for ip or username, or renew the existing one."""
        if (ip is None) == (username is None):
            raise ValueError("ban() needs exactly one of ip or username")

        ban, created = self._bans.upsert(ip, username, self._clock())
        target = f"ip {ip}" if ip is not None else f"username {username!r}"
        if created:
            logger.warning("Banned %s", target)
        else:
            logger.warning("Renewed ban on %s", target)
        return ban

    def is_banned(self, ip: str | None = None, username: str | None = None) -> tuple[bool, bool]:
        """
        Check for active bans on ip and username.

        A ban is active while updated_at >= now - ban_time_seconds; with
        ban_time_seconds == 0 bans never lapse.

        Returns:
            (ip_banned, username_banned)
        """
        cutoff = None
        if self._settings.ban_time_seconds > 0:
            cutoff = self._clock() - timedelta(seconds=self._settings.ban_time_seconds)

        def active(ban: Ban | None) -> bool:
            return ban is not None and (cutoff is None or ban.updated_at >= cutoff)

        ip_banned = ip is not None and active(self._bans.find_by_either(ip, None))
        username_banned = bool(username) and active(self._bans.find_by_either(None, username))
        return ip_banned, username_banned
