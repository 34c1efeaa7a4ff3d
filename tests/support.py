"""Constants and test doubles shared by the POS tests."""

import threading
from unittest.mock import MagicMock

TERMINAL = "till-01"
BRANCH = 1

# Seeded ids
SWEDISH_MASSAGE = 1  # 3500
DEEP_TISSUE = 2  # 4500
FACIAL = 3  # 2500
LAVENDER_OIL = 1  # 1200, branch 1
FACE_CREAM = 2  # 1800, branch 1
SARAH = 1
MICHAEL = 2
ALICE = 1


class FakeRedis:
    """Dict-backed stand-in for the handful of redis.Redis calls the session store makes."""

    def __init__(self):
        self.store = {}
        self.expiries = {}
        self.locks = {}
        self.lock = MagicMock(side_effect=self._named_lock)

    def _named_lock(self, name, **kwargs):
        # One lock per key, re-entrant in the owning thread
        return self.locks.setdefault(name, threading.RLock())

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value, ex=None):
        self.store[key] = value
        self.expiries[key] = ex
        return True

    def delete(self, key):
        return 1 if self.store.pop(key, None) is not None else 0


def notification_titles(notifier):
    return [c.args[1] for c in notifier.notify.call_args_list]


def published_topics(producer):
    return [c.args[0] for c in producer.publish.call_args_list]
