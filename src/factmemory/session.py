"""
Per-session retrieval cache.

Entries are keyed by ``(user_id, session_id)`` and never shared across
users.  A session is dropped when it ends, when it sits idle longer than
the TTL, or when its user writes a new fact.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable


@dataclass
class _Session:
    last_used: float
    entries: dict[tuple, Any] = field(default_factory=dict)


class SessionCache:
    """
    Parameters
    ----------
    ttl:
        Idle seconds after which a session is flushed.
    clock:
        Time source, injectable for tests.
    """

    def __init__(self, ttl: float = 1800.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: dict[tuple[str, str], _Session] = {}

    def get(self, user_id: str, session_id: str, key: tuple) -> Any | None:
        with self._lock:
            self._expire()
            session = self._sessions.get((user_id, session_id))
            if session is None:
                return None
            session.last_used = self._clock()
            return session.entries.get(key)

    def put(self, user_id: str, session_id: str, key: tuple, value: Any) -> None:
        with self._lock:
            self._expire()
            session = self._sessions.setdefault((user_id, session_id), _Session(self._clock()))
            session.last_used = self._clock()
            session.entries[key] = value

    def end(self, user_id: str, session_id: str) -> bool:
        """Flush one session.  Returns ``True`` if it existed."""
        with self._lock:
            return self._sessions.pop((user_id, session_id), None) is not None

    def invalidate_user(self, user_id: str) -> int:
        """Flush every session of *user_id*; returns how many were dropped."""
        with self._lock:
            keys = [k for k in self._sessions if k[0] == user_id]
            for k in keys:
                del self._sessions[k]
            return len(keys)

    def __len__(self) -> int:
        with self._lock:
            self._expire()
            return len(self._sessions)

    def _expire(self) -> None:
        now = self._clock()
        stale = [k for k, s in self._sessions.items() if now - s.last_used > self.ttl]
        for k in stale:
            del self._sessions[k]
