"""In-memory record of pools under active reconciliation.

The registry lives only as long as the process does. After a restart it is
empty, which is exactly what the audit pass relies on to notice pools whose
loop has to be re-armed.
"""
from __future__ import annotations

import json
import os
from threading import RLock
from typing import Dict, Iterable, List, Optional

from poolsync.core.logging import get_logger
from poolsync.metrics.prometheus import ACTIVE_LOOPS
from poolsync.models.schemas import PollingEntry, PollingState

log = get_logger("Polling")


class PollingRegistry:
    """Pool ref -> entry map. Thread-safe and simple."""

    def __init__(self):
        self._entries: Dict[str, PollingEntry] = {}
        self._lock = RLock()

    def register(self, pool_ref: str, instance_name: str, state: PollingState = PollingState.POLLING) -> PollingEntry:
        with self._lock:
            entry = PollingEntry(name=instance_name, state=state, pool_ref=pool_ref)
            self._entries[pool_ref] = entry
            ACTIVE_LOOPS.set(len(self._entries))
            return entry

    def unregister(self, pool_ref: str, instance_name: Optional[str] = None) -> bool:
        """Drop the entry for ``pool_ref``.

        With ``instance_name`` given, only that instance's entry is removed, so a
        stopping loop never evicts the loop that replaced it.
        """
        with self._lock:
            entry = self._entries.get(pool_ref)
            if entry is None:
                return False
            if instance_name is not None and entry.name != instance_name:
                return False
            del self._entries[pool_ref]
            ACTIVE_LOOPS.set(len(self._entries))
            return True

    def set_state(self, pool_ref: str, state: PollingState) -> Optional[PollingEntry]:
        with self._lock:
            entry = self._entries.get(pool_ref)
            if not entry:
                return None
            entry.state = state
            return entry

    def is_active(self, pool_ref: str) -> bool:
        with self._lock:
            return pool_ref in self._entries

    def get(self, pool_ref: str) -> Optional[PollingEntry]:
        with self._lock:
            return self._entries.get(pool_ref)

    def entries(self) -> List[PollingEntry]:
        with self._lock:
            return [e.model_copy() for e in self._entries.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class PollingSignal:
    """On-disk marker that some pool is being polled.

    Kept for tooling that still checks the file; the per-pool truth is the
    PollingRegistry. The file holds the registry entries as JSON.
    """

    def __init__(self, path: str):
        self.path = path

    def raise_(self, entries: Iterable[PollingEntry]) -> None:
        payload = [e.model_dump(mode="json", by_alias=True) for e in entries]
        try:
            with open(self.path, "w") as f:
                json.dump(payload, f)
        except OSError as e:
            log.warning("could not write polling signal %s: %s", self.path, e)

    def clear(self) -> bool:
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            return False
        except OSError as e:
            log.warning("could not clear polling signal %s: %s", self.path, e)
            return False
        log.info("cleared polling signal %s", self.path)
        return True

    def is_raised(self) -> bool:
        return os.path.exists(self.path)
