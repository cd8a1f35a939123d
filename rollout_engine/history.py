import threading
from collections import deque

from .errors import NoRollbackTarget
from .models import RevisionEntry, RolloutStatus


class RevisionHistory:
    """Append-only log of applies and their outcomes, bounded per workload"""

    def __init__(self, limit=10):
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self.limit = limit
        self._entries = {}
        self._revisions = {}  # highest revision recorded, survives truncation
        self._lock = threading.RLock()

    def append(self, descriptor, outcome):
        entry = RevisionEntry(descriptor=descriptor, outcome=str(getattr(outcome, "value", outcome)))
        with self._lock:
            log = self._entries.setdefault(descriptor.name, deque(maxlen=self.limit))
            log.append(entry)
            if descriptor.revision > self._revisions.get(descriptor.name, 0):
                self._revisions[descriptor.name] = descriptor.revision
        return entry

    def next_revision(self, name):
        """Revision the next changed apply of a workload will carry"""
        with self._lock:
            return self._revisions.get(name, 0) + 1

    def current_revision(self, name):
        with self._lock:
            return self._revisions.get(name, 0)

    def entries(self, name):
        with self._lock:
            return list(self._entries.get(name, ()))

    def latest(self, name):
        with self._lock:
            log = self._entries.get(name)
            return log[-1] if log else None

    def last_healthy(self, name, before=None):
        """Most recent healthy entry, optionally older than a given revision"""
        with self._lock:
            for entry in reversed(self._entries.get(name, ())):
                if entry.outcome != RolloutStatus.HEALTHY.value:
                    continue
                if before is not None and entry.revision >= before:
                    continue
                return entry
        raise NoRollbackTarget(name)

    def names(self):
        with self._lock:
            return sorted(self._entries)

    def __len__(self):
        with self._lock:
            return sum(len(log) for log in self._entries.values())
