# score_guard/target_state.py
# =========================
# 单个 target author 的运行态（窗口计数 + 协同检测 + breaker）
# Per-target runtime state (windows + coordination + breaker)
# =========================

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Optional

from .guard.breaker import CircuitBreaker
from .guard.config import GuardConfig
from .guard.coordination import CoordinationDetector
from .guard.window_counter import WindowCounter


@dataclass
class TargetState:
    """
    首个事件到达时惰性创建；持有：
    - WindowCounter（每窗口一条 ring）
    - CoordinationDetector（每窗口一个有界 actor 集合）
    - CircuitBreaker（CircuitRecord 的唯一持有者）

    lock 用于对同一 target 串行化整条 pipeline；evicted 在回收时置位，
    拿到已回收实例的调用方需要重新获取。
    """
    target_author_id: str
    counter: WindowCounter
    detector: CoordinationDetector
    breaker: CircuitBreaker
    created_at: float
    last_active_at: Optional[float] = None
    processed_total: int = 0
    evicted: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @classmethod
    def create(cls, target_author_id: str, config: GuardConfig, now: float) -> "TargetState":
        return cls(
            target_author_id=target_author_id,
            counter=WindowCounter(config.windows, late_grace_sec=config.late_event_grace_sec),
            detector=CoordinationDetector(target_author_id, config.windows, config.coordination),
            breaker=CircuitBreaker(target_author_id, config.breaker),
            created_at=now,
        )

    def touch(self, now: float) -> None:
        """更新最后活跃时间"""
        self.last_active_at = now

    def record_processed(self, now: float) -> None:
        self.touch(now)
        self.processed_total += 1

    def idle_seconds(self, now: float) -> Optional[float]:
        """
        返回 idle 秒数（now - last_active_at）。
        若从未活跃过返回 None。
        """
        if self.last_active_at is None:
            return None
        return now - self.last_active_at
