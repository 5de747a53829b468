from __future__ import annotations

import heapq
import logging
from typing import Dict, List, Optional, Sequence, Set

from ..errors import CapacityExceeded
from .config import CoordinationConfig, WindowSpec
from .types import CoordinationSignal
from .window_counter import BucketRing, span_slots

logger = logging.getLogger(__name__)


class ActorWindow:
    """
    单窗口的有界 distinct-actor 集合。

    - 每个 actor 只记在它最后一次出现的 slot 上，slot 滑出窗口时整批过期
    - total 与 actor 共享同一套 slot 边界，保证 distinct <= total
    - 达到 cap 后新 actor 不再入集合，只在 overflow ring 里计数；
      distinct 估计为 min(total, tracked + overflow)，这是确定性的上界估计
    """

    def __init__(self, spec: WindowSpec, cap: int) -> None:
        self.spec = spec
        self.cap = cap
        self.span = span_slots(spec.duration_sec, spec.granularity)
        self._totals = BucketRing(spec.bucket_count, spec.granularity)
        self._overflow = BucketRing(spec.bucket_count, spec.granularity)
        self._last_slot: Dict[str, int] = {}
        self._by_slot: Dict[int, Set[str]] = {}
        self._floor: Optional[int] = None

    def slot_of(self, ts: float) -> int:
        return self._totals.slot_of(ts)

    def _expire(self, head_slot: int) -> None:
        lower = head_slot - self.span + 1
        if self._floor is not None and lower <= self._floor:
            return
        if self._floor is None or lower - self._floor > len(self._by_slot):
            stale = [s for s in self._by_slot if s < lower]
        else:
            stale = [s for s in range(self._floor, lower) if s in self._by_slot]
        for s in stale:
            for actor in self._by_slot.pop(s):
                if self._last_slot.get(actor) == s:
                    del self._last_slot[actor]
        self._floor = lower

    def observe(self, actor_id: str, ts: float, head_ts: float) -> None:
        head_slot = self.slot_of(head_ts)
        slot = self.slot_of(ts)
        if slot <= head_slot - self.span:
            return

        self._totals.add(slot)
        self._expire(head_slot)

        prev = self._last_slot.get(actor_id)
        if prev is not None:
            if slot > prev:
                self._by_slot[prev].discard(actor_id)
                if not self._by_slot[prev]:
                    del self._by_slot[prev]
                self._last_slot[actor_id] = slot
                self._by_slot.setdefault(slot, set()).add(actor_id)
            return

        if len(self._last_slot) >= self.cap:
            self._overflow.add(slot)
            raise CapacityExceeded(self.spec.name, self.cap, actor_id)

        self._last_slot[actor_id] = slot
        self._by_slot.setdefault(slot, set()).add(actor_id)

    def tracked(self) -> int:
        return len(self._last_slot)

    def recent(self, head_ts: float, limit: int) -> List[str]:
        """窗口内最后出现 slot 最新的至多 limit 个 actor"""
        self._expire(self.slot_of(head_ts))
        ranked = heapq.nlargest(limit, self._last_slot.items(), key=lambda kv: kv[1])
        return [actor for actor, _ in ranked]

    def score(self, head_ts: Optional[float], span: Optional[int] = None) -> CoordinationSignal:
        if head_ts is None:
            return CoordinationSignal(self.spec.name, 0, 0, 0.0)
        head_slot = self.slot_of(head_ts)
        self._expire(head_slot)
        span = self.span if span is None else min(span, self.span)

        total = self._totals.total(head_slot, span)
        overflow = self._overflow.total(head_slot, span)
        if span == self.span:
            tracked = len(self._last_slot)
        else:
            lower = head_slot - span + 1
            tracked = sum(len(actors) for s, actors in self._by_slot.items() if s >= lower)

        distinct = min(total, tracked + overflow)
        ratio = (distinct / total) if total else 0.0
        return CoordinationSignal(
            window=self.spec.name,
            distinct_actor_count=distinct,
            total_action_count=total,
            ratio=ratio,
            estimated=overflow > 0,
        )


class CoordinationDetector:
    """
    单个 target 的协同检测：每个窗口独立维护 ActorWindow，
    任一窗口满足 distinct >= min_distinct_actors 且 ratio >= min_ratio 即判定协同。
    """

    def __init__(
        self,
        target_author_id: str,
        windows: Sequence[WindowSpec],
        config: CoordinationConfig,
    ) -> None:
        self.target_author_id = target_author_id
        self.config = config
        self._windows: List[ActorWindow] = [
            ActorWindow(spec, config.max_actors_per_window)
            for spec in sorted(windows, key=lambda w: w.duration_sec)
        ]
        self._latest_ts: Optional[float] = None
        self.capacity_hits: int = 0

    def observe(self, actor_id: str, target_id: str, timestamp: float) -> None:
        if target_id != self.target_author_id:
            raise ValueError(f"detector for {self.target_author_id} got event for {target_id}")

        ts = float(timestamp)
        if self._latest_ts is None or ts > self._latest_ts:
            self._latest_ts = ts

        capped: Optional[CapacityExceeded] = None
        for window in self._windows:
            try:
                window.observe(actor_id, ts, self._latest_ts)
            except CapacityExceeded as e:
                capped = capped or e
        if capped is not None:
            self.capacity_hits += 1
            raise capped

    def _resolve(self, window_duration: float) -> ActorWindow:
        for window in self._windows:
            if window.spec.duration_sec + 1e-9 >= window_duration:
                return window
        raise ValueError(f"duration {window_duration}s exceeds longest configured window")

    @property
    def latest_ts(self) -> Optional[float]:
        return self._latest_ts

    def coordination_score(
        self, window_duration: float, config: Optional[CoordinationConfig] = None,
    ) -> CoordinationSignal:
        window = self._resolve(window_duration)
        span = span_slots(window_duration, window.spec.granularity)
        return self._judge(window.score(self._latest_ts, span), config or self.config)

    def signals(self, config: Optional[CoordinationConfig] = None) -> List[CoordinationSignal]:
        """按窗口从短到长返回每个窗口的信号；config 为 None 时用创建时的阈值"""
        cfg = config or self.config
        return [self._judge(w.score(self._latest_ts), cfg) for w in self._windows]

    def recent_actors(self, limit: int) -> List[str]:
        """最短窗口内最近出现的至多 limit 个 actor（按最后出现的 slot 倒序）"""
        if not self._windows or limit <= 0 or self._latest_ts is None:
            return []
        return self._windows[0].recent(self._latest_ts, limit)

    @property
    def shortest_window(self) -> Optional[WindowSpec]:
        return self._windows[0].spec if self._windows else None

    def _judge(self, signal: CoordinationSignal, config: CoordinationConfig) -> CoordinationSignal:
        detected = (
            signal.distinct_actor_count >= config.min_distinct_actors
            and signal.ratio >= config.min_ratio
        )
        if detected == signal.detected:
            return signal
        return CoordinationSignal(
            window=signal.window,
            distinct_actor_count=signal.distinct_actor_count,
            total_action_count=signal.total_action_count,
            ratio=signal.ratio,
            estimated=signal.estimated,
            detected=detected,
        )
