"""历史聚合统计的外部存储接口。

初始化时读取一次；score_guard 本身不定义也不写入任何持久化格式。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Protocol


@dataclass(frozen=True)
class TargetAggregate:
    target_author_id: str
    # 历史上自然负反馈就多的作者（大号）可放宽原始阈值
    threshold_multiplier: float = 1.0
    organic_daily_actions: Optional[float] = None


class HistoryStore(Protocol):
    def load_aggregates(self) -> Iterable[TargetAggregate]: ...


class StaticHistoryStore:
    """内存实现"""

    def __init__(self, aggregates: Iterable[TargetAggregate] = ()) -> None:
        self._aggregates: Dict[str, TargetAggregate] = {a.target_author_id: a for a in aggregates}

    def load_aggregates(self) -> Iterable[TargetAggregate]:
        return list(self._aggregates.values())


def load_multipliers(store: Optional[HistoryStore]) -> Dict[str, float]:
    """target -> 阈值倍率，下限 0.1"""
    if store is None:
        return {}
    return {
        a.target_author_id: max(0.1, float(a.threshold_multiplier))
        for a in store.load_aggregates()
    }
