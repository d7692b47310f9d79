"""Tests for the per-session retrieval cache."""

from __future__ import annotations

from factmemory.session import SessionCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestSessionCache:
    def test_put_and_get(self):
        cache = SessionCache()
        cache.put("u1", "s1", ("q",), "result")
        assert cache.get("u1", "s1", ("q",)) == "result"
        assert cache.get("u1", "s1", ("other",)) is None
        assert cache.get("u1", "s2", ("q",)) is None

    def test_sessions_are_per_user(self):
        cache = SessionCache()
        cache.put("u1", "s1", ("q",), "mine")
        assert cache.get("u2", "s1", ("q",)) is None

    def test_idle_session_expires(self):
        clock = FakeClock()
        cache = SessionCache(ttl=5.0, clock=clock)
        cache.put("u1", "s1", ("q",), "result")
        clock.now = 10.0
        assert cache.get("u1", "s1", ("q",)) is None
        assert len(cache) == 0

    def test_use_keeps_session_alive(self):
        clock = FakeClock()
        cache = SessionCache(ttl=5.0, clock=clock)
        cache.put("u1", "s1", ("q",), "result")
        for t in (4.0, 8.0, 12.0):
            clock.now = t
            assert cache.get("u1", "s1", ("q",)) == "result"

    def test_end(self):
        cache = SessionCache()
        cache.put("u1", "s1", ("q",), "result")
        assert cache.end("u1", "s1")
        assert not cache.end("u1", "s1")
        assert cache.get("u1", "s1", ("q",)) is None

    def test_invalidate_user(self):
        cache = SessionCache()
        cache.put("u1", "s1", ("q",), "a")
        cache.put("u1", "s2", ("q",), "b")
        cache.put("u2", "s1", ("q",), "c")
        assert cache.invalidate_user("u1") == 2
        assert len(cache) == 1
        assert cache.get("u2", "s1", ("q",)) == "c"
