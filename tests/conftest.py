import threading

import pytest

from versioned_store import Snapshot, StoreAccessError, VersionedStore


class InMemoryStore(VersionedStore):
    """Lock-backed stand-in for the row store, with hooks for forcing races."""

    def __init__(self):
        self._rows = {}
        self._lock = threading.Lock()
        self.reads = 0
        self.cas_calls = 0
        self.before_cas = None
        self.read_error = None
        self.cas_error = None

    def put(self, item_id, quantity, version=0):
        with self._lock:
            self._rows[item_id] = (quantity, version)

    def snapshot(self, item_id):
        with self._lock:
            return Snapshot(*self._rows[item_id])

    def concurrent_write(self, item_id, quantity):
        """Commit a write as some other writer would, advancing the version."""
        with self._lock:
            _, version = self._rows[item_id]
            self._rows[item_id] = (quantity, version + 1)

    def read(self, item_id):
        with self._lock:
            self.reads += 1
        if self.read_error is not None:
            raise StoreAccessError("read failed", self.read_error)
        with self._lock:
            row = self._rows.get(item_id)
        return None if row is None else Snapshot(*row)

    def compare_and_set(self, item_id, new_quantity, expected_version):
        with self._lock:
            self.cas_calls += 1
        if self.before_cas is not None:
            self.before_cas(item_id)
        if self.cas_error is not None:
            raise StoreAccessError("compare-and-set failed", self.cas_error)
        with self._lock:
            row = self._rows.get(item_id)
            if row is None or row[1] != expected_version:
                return 0
            self._rows[item_id] = (new_quantity, expected_version + 1)
            return 1


@pytest.fixture
def store():
    return InMemoryStore()
