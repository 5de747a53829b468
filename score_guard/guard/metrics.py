from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict


@dataclass
class GuardMetrics:
    processed_total: int = 0
    allowed_total: int = 0
    suppressed_total: int = 0
    rejected_input_total: int = 0
    dropped_late_total: int = 0
    dropped_future_total: int = 0
    degraded_total: int = 0
    estimated_total: int = 0
    warnings_total: int = 0
    overlap_checks_total: int = 0
    trips_total: int = 0
    resets_total: int = 0
    evicted_total: int = 0
    untracked_total: int = 0

    by_state: Dict[str, int] = field(default_factory=dict)
    by_event: Dict[str, int] = field(default_factory=dict)

    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def inc(self, name: str, n: int = 1) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + n)

    def inc_state(self, state: str) -> None:
        with self._lock:
            self.by_state[state] = self.by_state.get(state, 0) + 1

    def inc_event(self, kind: str) -> None:
        with self._lock:
            self.by_event[kind] = self.by_event.get(kind, 0) + 1
