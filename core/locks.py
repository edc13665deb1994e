"""
Per-key mutual exclusion for UJANI.

Conversations are serialized per customer ("customer:<id>") and the ledger
per order ("order:<id>"). Unrelated keys never wait on each other.
"""

import threading
from contextlib import contextmanager


class KeyedLockManager:
    """
    In-process lock registry.

    Usage:
        with locks.hold(f"customer:{customer_id}"):
            ...

    Entries are reference-counted and dropped when the last holder leaves.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._entries = {}

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = [threading.RLock(), 0]
            entry[1] += 1

        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._entries[key]

    def active_keys(self):
        with self._guard:
            return sorted(self._entries)


def customer_key(customer_id: str) -> str:
    return f"customer:{customer_id}"


def order_key(order_id: str) -> str:
    return f"order:{order_id}"


# Singleton instance
locks = KeyedLockManager()
