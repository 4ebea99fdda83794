"""
Attempt and ban stores.

The rate limiter only talks to the AttemptStore and BanStore protocols.
In-memory implementations live here; PostgreSQL ones live in loginlimit.db.
"""

from __future__ import annotations

import itertools
import threading
from datetime import datetime
from typing import Protocol

from loginlimit.models import Ban, LoginAttempt


class AttemptStore(Protocol):
    """Append-only log of failed login attempts."""

    def add(self, attempt: LoginAttempt) -> LoginAttempt: ...

    def count_by_ip(self, ip: str, since: datetime) -> int: ...

    def count_by_username(self, username: str, since: datetime) -> int: ...

    def delete_older_than(self, cutoff: datetime) -> int: ...


class BanStore(Protocol):
    """Ban records keyed by IP or by username."""

    def find_by_either(self, ip: str | None, username: str | None) -> Ban | None: ...

    def add(self, ban: Ban) -> Ban: ...

    def update(self, ban: Ban) -> Ban: ...

    def upsert(self, ip: str | None, username: str | None, now: datetime) -> tuple[Ban, bool]: ...

    def delete_older_than(self, cutoff: datetime) -> int: ...


class InMemoryAttemptStore:
    """Thread-safe in-process attempt log."""

    def __init__(self) -> None:
        self._attempts: list[LoginAttempt] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def add(self, attempt: LoginAttempt) -> LoginAttempt:
        with self._lock:
            stored = attempt.model_copy(update={"id": next(self._ids)})
            self._attempts.append(stored)
        return stored

    def count_by_ip(self, ip: str, since: datetime) -> int:
        """Count attempts from ip with created_at >= since."""
        with self._lock:
            return sum(1 for a in self._attempts if a.ip == ip and a.created_at >= since)

    def count_by_username(self, username: str, since: datetime) -> int:
        """Count attempts for username with created_at >= since."""
        with self._lock:
            return sum(
                1 for a in self._attempts
                if a.username == username and a.created_at >= since
            )

    def delete_older_than(self, cutoff: datetime) -> int:
        with self._lock:
            before = len(self._attempts)
            self._attempts = [a for a in self._attempts if a.created_at >= cutoff]
            return before - len(self._attempts)

    def all(self) -> list[LoginAttempt]:
        with self._lock:
            return list(self._attempts)

    def __len__(self) -> int:
        with self._lock:
            return len(self._attempts)


class InMemoryBanStore:
    """Thread-safe in-process ban table."""

    def __init__(self) -> None:
        self._bans: dict[int, Ban] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _find(self, ip: str | None, username: str | None) -> Ban | None:
        for ban in self._bans.values():
            if ip is not None and ban.ip == ip:
                return ban
            if username is not None and ban.username == username:
                return ban
        return None

    def find_by_either(self, ip: str | None, username: str | None) -> Ban | None:
        """Return the ban matching ip or username, if any."""
        with self._lock:
            return self._find(ip, username)

    def add(self, ban: Ban) -> Ban:
        with self._lock:
            stored = ban.model_copy(update={"id": next(self._ids)})
            self._bans[stored.id] = stored
        return stored

    def update(self, ban: Ban) -> Ban:
        with self._lock:
            if ban.id not in self._bans:
                raise KeyError(f"Unknown ban id: {ban.id}")
            self._bans[ban.id] = ban
        return ban

    def upsert(self, ip: str | None, username: str | None, now: datetime) -> tuple[Ban, bool]:
        """Create the ban for ip/username or refresh its timestamp.

        Returns (ban, created).
        """
        with self._lock:
            existing = self._find(ip, username)
            if existing is not None:
                refreshed = existing.model_copy(update={"updated_at": now})
                self._bans[refreshed.id] = refreshed
                return refreshed, False

            ban = Ban(id=next(self._ids), ip=ip, username=username, updated_at=now)
            self._bans[ban.id] = ban
            return ban, True

    def delete_older_than(self, cutoff: datetime) -> int:
        with self._lock:
            expired = [ban_id for ban_id, ban in self._bans.items() if ban.updated_at < cutoff]
            for ban_id in expired:
                del self._bans[ban_id]
            return len(expired)

    def all(self) -> list[Ban]:
        with self._lock:
            return list(self._bans.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._bans)
