"""Keyed mutual exclusion for check-and-apply sections and bulk batches."""
import contextlib
import logging
import threading

from sqlalchemy import text
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


class LockRegistry:
    """Reference-counted re-entrant locks keyed by string.

    Entries are dropped once no thread holds or waits on them, so the
    registry only grows with the number of keys in use at the same time.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}

    def _checkout(self, key: str) -> threading.RLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str):
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextlib.contextmanager
    def hold(self, *keys: str):
        # Sorted acquisition keeps multi-key holders from deadlocking each other.
        ordered = sorted(set(keys))
        acquired = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                lock.acquire()
                acquired.append((key, lock))
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)

    def active_keys(self) -> list[str]:
        with self._guard:
            return sorted(self._locks)


registry = LockRegistry()


def record_lock(*record_ids: str):
    """Serialize writers on the given person records."""
    return registry.hold(*(f"person:{rid}" for rid in record_ids))


@contextlib.contextmanager
def advisory_lock(db: Session, *keys: str):
    """Hold named locks for a whole transaction.

    PostgreSQL also takes transaction-scoped advisory locks, in the same
    sorted order, so separate processes serialize; they are released by the
    caller's commit or rollback.
    """
    ordered = sorted(set(keys))
    with registry.hold(*(f"advisory:{key}" for key in ordered)):
        if ordered and db.get_bind().dialect.name == "postgresql":
            for key in ordered:
                db.execute(text("SELECT pg_advisory_xact_lock(hashtext(:key))"), {"key": key})
        logger.debug("Advisory locks held: %s", ", ".join(ordered))
        yield
