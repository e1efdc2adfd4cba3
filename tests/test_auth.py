"""
Tests for the authorization cache and its reader/writer lock.
"""

import threading
import time

from vpn_commander.auth import AuthorizationCache, RWLock
from vpn_commander.router import RoutingState


class TestAuthorizationCache:
    def test_authorize_then_get_cached(self):
        cache = AuthorizationCache()
        cache.authorize(42, RoutingState.ENABLED)
        assert cache.is_authorized(42)
        assert cache.get_cached(42) is RoutingState.ENABLED

    def test_unknown_user(self):
        cache = AuthorizationCache()
        assert not cache.is_authorized(7)
        assert cache.get_cached(7) is RoutingState.UNKNOWN

    def test_update_for_unauthorized_user_is_noop(self):
        cache = AuthorizationCache()
        cache.update_cached(7, RoutingState.DISABLED)
        assert not cache.is_authorized(7)
        assert cache.get_cached(7) is RoutingState.UNKNOWN
        assert cache.authorized_count() == 0

    def test_update_refreshes_state(self):
        cache = AuthorizationCache()
        cache.authorize(1, RoutingState.UNKNOWN)
        cache.update_cached(1, RoutingState.DISABLED)
        assert cache.get_cached(1) is RoutingState.DISABLED

    def test_reauthorize_resets_state(self):
        cache = AuthorizationCache()
        cache.authorize(1, RoutingState.ENABLED)
        cache.authorize(1, RoutingState.DISABLED)
        assert cache.get_cached(1) is RoutingState.DISABLED
        assert cache.authorized_count() == 1

    def test_concurrent_updates(self):
        cache = AuthorizationCache()
        for user_id in range(20):
            cache.authorize(user_id, RoutingState.UNKNOWN)

        def worker(user_id):
            for _ in range(200):
                cache.update_cached(user_id, RoutingState.ENABLED)
                cache.get_cached(user_id)
                cache.update_cached(user_id, RoutingState.DISABLED)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert cache.authorized_count() == 20
        assert all(cache.get_cached(i) is RoutingState.DISABLED for i in range(20))


class TestRWLock:
    def test_readers_share(self):
        lock = RWLock()
        inside = []
        both_in = threading.Event()

        def reader():
            with lock.read():
                inside.append(1)
                if len(inside) == 2:
                    both_in.set()
                both_in.wait(timeout=2)

        threads = [threading.Thread(target=reader) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)
        assert both_in.is_set()

    def test_writer_excludes_readers(self):
        lock = RWLock()
        events = []
        writer_in = threading.Event()

        def writer():
            with lock.write():
                writer_in.set()
                time.sleep(0.1)
                events.append("writer done")

        def reader():
            writer_in.wait(timeout=2)
            with lock.read():
                events.append("reader")

        w = threading.Thread(target=writer)
        r = threading.Thread(target=reader)
        w.start()
        r.start()
        w.join(timeout=5)
        r.join(timeout=5)
        assert events == ["writer done", "reader"]
