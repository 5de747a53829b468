from __future__ import annotations

import math
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..errors import InternalInconsistency, LateEventError
from ..schemas.action_event import ActionType
from .config import WindowSpec


class BucketRing:
    """
    定长环形计数器。slot = floor(ts / granularity)，slot 落在 ring 的
    slot % size 位置；head 前进时把跨过的旧 slot 直接清零（覆盖，不做惰性清理）。
    """

    __slots__ = ("size", "granularity", "_counts", "_head")

    def __init__(self, size: int, granularity: float) -> None:
        if size <= 0:
            raise ValueError("size must be > 0")
        self.size = size
        self.granularity = granularity
        self._counts: List[int] = [0] * size
        self._head: Optional[int] = None

    @property
    def head(self) -> Optional[int]:
        return self._head

    def slot_of(self, ts: float) -> int:
        return int(math.floor(ts / self.granularity))

    def advance(self, slot: int) -> None:
        if self._head is None:
            self._head = slot
            return
        if slot <= self._head:
            return
        steps = slot - self._head
        if steps >= self.size:
            self._counts = [0] * self.size
        else:
            for s in range(self._head + 1, slot + 1):
                self._counts[s % self.size] = 0
        self._head = slot

    def holds(self, slot: int) -> bool:
        return self._head is not None and self._head - self.size < slot <= self._head

    def add(self, slot: int, n: int = 1) -> bool:
        self.advance(slot)
        if not self.holds(slot):
            return False
        self._counts[slot % self.size] += n
        return True

    def total(self, now_slot: int, span: int) -> int:
        """[now_slot - span + 1, now_slot] 内且仍在 ring 中的 slot 之和"""
        if self._head is None or span <= 0:
            return 0
        lo = max(now_slot - span + 1, self._head - self.size + 1)
        hi = min(now_slot, self._head)
        total = 0
        for s in range(lo, hi + 1):
            total += self._counts[s % self.size]
        return total

    def min_value(self) -> int:
        return min(self._counts)


def span_slots(duration_sec: float, granularity: float) -> int:
    """窗口能完整覆盖的 slot 数（只取整 slot，宁少勿多）"""
    return max(1, int(math.floor(duration_sec / granularity + 1e-9)))


class WindowCounter:
    """
    单个 target 的多窗口计数器：每个 (窗口, action_type) 一条 BucketRing，按需创建。

    时间以事件时间为准：head = 已接受事件的最大时间戳。
    窗口语义为 (head - duration, head]，只计入完全落在其中的 slot，
    因此 count_in_window 永远不会超过真实事件数。
    """

    def __init__(self, windows: Sequence[WindowSpec], *, late_grace_sec: float = 30.0) -> None:
        if not windows:
            raise ValueError("WindowCounter needs at least one window")
        self._windows: List[WindowSpec] = sorted(windows, key=lambda w: w.duration_sec)
        self.late_grace_sec = late_grace_sec
        self._rings: Dict[Tuple[str, ActionType], BucketRing] = {}
        self._latest_ts: Optional[float] = None

        self.recorded_total: int = 0
        self.dropped_late: int = 0

    @property
    def latest_ts(self) -> Optional[float]:
        return self._latest_ts

    @property
    def windows(self) -> List[WindowSpec]:
        return list(self._windows)

    def _ring(self, spec: WindowSpec, action_type: ActionType) -> BucketRing:
        key = (spec.name, action_type)
        ring = self._rings.get(key)
        if ring is None:
            ring = BucketRing(spec.bucket_count, spec.granularity)
            self._rings[key] = ring
        return ring

    def check_late(self, timestamp: float) -> None:
        if self._latest_ts is not None and timestamp < self._latest_ts - self.late_grace_sec:
            raise LateEventError(timestamp, self._latest_ts, self.late_grace_sec)

    def record(self, action_type: ActionType, timestamp: float) -> None:
        ts = float(timestamp)
        try:
            self.check_late(ts)
        except LateEventError:
            self.dropped_late += 1
            raise

        if self._latest_ts is None or ts > self._latest_ts:
            self._latest_ts = ts

        for spec in self._windows:
            ring = self._ring(spec, action_type)
            # 已被回收的 slot 对该窗口而言本就在窗口外
            ring.add(ring.slot_of(ts))
        self.recorded_total += 1

    def _resolve(self, duration_sec: float) -> WindowSpec:
        for spec in self._windows:
            if spec.duration_sec + 1e-9 >= duration_sec:
                return spec
        raise ValueError(
            f"duration {duration_sec}s exceeds longest configured window "
            f"({self._windows[-1].duration_sec}s)"
        )

    def count_in_window(
        self,
        window_duration: float,
        action_type: Optional[ActionType] = None,
        *,
        now: Optional[float] = None,
    ) -> int:
        if window_duration <= 0:
            raise ValueError("window_duration must be > 0")
        ref = now if now is not None else self._latest_ts
        if ref is None:
            return 0

        spec = self._resolve(window_duration)
        span = span_slots(window_duration, spec.granularity)
        types: Iterable[ActionType] = (action_type,) if action_type is not None else list(ActionType)

        total = 0
        for at in types:
            ring = self._rings.get((spec.name, at))
            if ring is None:
                continue
            total += ring.total(ring.slot_of(ref), span)
        return total

    def snapshot(self) -> Dict[str, int]:
        """每个配置窗口在自身时长上的计数；发现负计数时抛 InternalInconsistency"""
        for (name, at), ring in self._rings.items():
            if ring.min_value() < 0:
                raise InternalInconsistency(f"negative count in window {name}/{at.value}")
        return {spec.name: self.count_in_window(spec.duration_sec) for spec in self._windows}
