import threading
from contextlib import contextmanager
from typing import Dict

from vpn_commander.router import RoutingState


class RWLock:
    """Many readers or one writer. Waiting writers block new readers."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class AuthorizationCache:
    """Authorized chat users and the routing state each of them last saw.

    Entries live for the lifetime of the process. There is no logout.
    """

    def __init__(self):
        self._lock = RWLock()
        self._users: Dict[int, RoutingState] = {}

    def authorize(self, user_id: int, initial_state: RoutingState) -> None:
        with self._lock.write():
            self._users[user_id] = initial_state

    def is_authorized(self, user_id: int) -> bool:
        with self._lock.read():
            return user_id in self._users

    def get_cached(self, user_id: int) -> RoutingState:
        with self._lock.read():
            return self._users.get(user_id, RoutingState.UNKNOWN)

    def update_cached(self, user_id: int, state: RoutingState) -> None:
        # Only known users; this must never authorize anyone.
        with self._lock.write():
            if user_id in self._users:
                self._users[user_id] = state

    def authorized_count(self) -> int:
        with self._lock.read():
            return len(self._users)
