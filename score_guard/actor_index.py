# score_guard/actor_index.py
# =========================
# actor -> 最近针对过的 target（跨 target 重合度）
# Actor -> recently targeted authors, for cross-target overlap
# =========================

from __future__ import annotations

import itertools
import threading
from collections import OrderedDict
from typing import Iterable, List, Set, Tuple


class ActorTargetIndex:
    """
    全局（跨 target）索引：每个 actor 记住最近针对过的若干 target 及最后一次事件时间。

    - actor 总数有上限，超出时按 LRU 淘汰最久未活跃的 actor
    - 每个 actor 的 target 数有上限，超出时淘汰最早触达的 target
    - 自带锁；调用方可以在持有 target 锁时调用，反向不成立
    """

    def __init__(self, max_actors: int = 100_000, max_targets_per_actor: int = 16) -> None:
        self.max_actors = max_actors
        self.max_targets_per_actor = max_targets_per_actor
        self._actors: "OrderedDict[str, OrderedDict[str, float]]" = OrderedDict()
        self._lock = threading.Lock()
        self.evicted_actors: int = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._actors)

    def record(self, actor_id: str, target_id: str, timestamp: float) -> None:
        with self._lock:
            targets = self._actors.get(actor_id)
            if targets is None:
                targets = OrderedDict()
                self._actors[actor_id] = targets
                self._trim_actors()
            else:
                self._actors.move_to_end(actor_id)

            prev = targets.get(target_id)
            targets[target_id] = timestamp if prev is None else max(prev, timestamp)
            targets.move_to_end(target_id)
            while len(targets) > self.max_targets_per_actor:
                targets.popitem(last=False)

    def resize(self, max_actors: int, max_targets_per_actor: int) -> None:
        with self._lock:
            self.max_actors = max_actors
            self.max_targets_per_actor = max_targets_per_actor
            self._trim_actors()
            for targets in self._actors.values():
                while len(targets) > max_targets_per_actor:
                    targets.popitem(last=False)

    def _trim_actors(self) -> None:
        while len(self._actors) > self.max_actors:
            self._actors.popitem(last=False)
            self.evicted_actors += 1

    def targets_of(self, actor_id: str, since: float) -> Set[str]:
        """actor 在 (since, +inf) 内触达过的 target"""
        with self._lock:
            targets = self._actors.get(actor_id)
            if targets is None:
                return set()
            return {t for t, ts in targets.items() if ts > since}

    def overlap(self, actor_ids: Iterable[str], since: float) -> Tuple[float, int]:
        """
        给定 actor 集合的平均两两 Jaccard 相似度（各自 target 集合）。
        返回 (平均相似度, 参与计算的 actor 数)；不足两个 actor 时相似度为 0。
        """
        with self._lock:
            sets: List[Set[str]] = []
            for actor_id in actor_ids:
                targets = self._actors.get(actor_id)
                if not targets:
                    continue
                recent = {t for t, ts in targets.items() if ts > since}
                if recent:
                    sets.append(recent)

        if len(sets) < 2:
            return 0.0, len(sets)

        total = 0.0
        pairs = 0
        for a, b in itertools.combinations(sets, 2):
            union = len(a | b)
            if union == 0:
                continue
            total += len(a & b) / union
            pairs += 1
        return (total / pairs if pairs else 0.0), len(sets)
