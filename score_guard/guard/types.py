from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple, TYPE_CHECKING

from ..schemas.action_event import ActionEvent


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class PolicyAction(str, Enum):
    NO_ACTION = "no_action"
    TRIP = "trip"
    WARN = "warn"


class EventKind(str, Enum):
    TRIP = "trip"
    RETRIP = "retrip"
    RESET = "reset"
    DEGRADED = "degraded"
    EVICTED = "evicted"


# ========== 信号 / 判定 ==========

@dataclass(frozen=True)
class CoordinationSignal:
    """单个窗口上的协同信号"""
    window: str
    distinct_actor_count: int
    total_action_count: int
    ratio: float
    estimated: bool = False
    detected: bool = False


@dataclass(frozen=True)
class OverlapSignal:
    """近期 actor 们各自 target 集合的平均 Jaccard 相似度（跨 target）"""
    window: str
    actor_count: int
    score: float
    detected: bool = False


@dataclass(frozen=True)
class WindowBreach:
    window: str
    count: int
    threshold: int


@dataclass(frozen=True)
class PolicyVerdict:
    action: PolicyAction
    window_counts: Mapping[str, int]
    breached: Tuple[WindowBreach, ...] = ()
    coordination: Optional[CoordinationSignal] = None
    warnings: Tuple[str, ...] = ()
    reason: str = "ok"
    overlap: Optional[OverlapSignal] = None

    @property
    def coordination_detected(self) -> bool:
        return self.coordination is not None and self.coordination.detected

    @property
    def estimated(self) -> bool:
        return self.coordination is not None and self.coordination.estimated

    @property
    def is_trip(self) -> bool:
        return self.action == PolicyAction.TRIP


# ========== Breaker 记录 ==========

@dataclass(frozen=True)
class StateTransition:
    from_state: CircuitState
    to_state: CircuitState
    at: float
    reason: str


@dataclass
class CircuitRecord:
    """
    每个 target 至多一条；首次 trip 时创建，每次状态迁移时更新。
    不会被静默删除：只有 probe 复位、管理员 reset 或空闲回收（带 evicted 事件）。
    """
    target_author_id: str
    state: CircuitState = CircuitState.CLOSED
    tripped_at: Optional[float] = None
    opened_at: Optional[float] = None
    cool_down_until: Optional[float] = None
    reason: str = "no_record"
    window_counts: Dict[str, int] = field(default_factory=dict)
    coordination_detected: bool = False
    estimated: bool = False
    probes_passed: int = 0
    trip_count: int = 0
    last_transition_at: Optional[float] = None
    transitions: List[StateTransition] = field(default_factory=list)

    @classmethod
    def closed(cls, target_author_id: str) -> "CircuitRecord":
        return cls(target_author_id=target_author_id)

    def snapshot(self) -> "CircuitRecord":
        return copy.deepcopy(self)

    def effective_state(self, now: float) -> CircuitState:
        """
        只读视角下的状态：open 且冷却已到期时视为 half-open。
        存储的 state 要到该 target 下一次判定时才真正迁移。
        """
        if (
            self.state == CircuitState.OPEN
            and self.cool_down_until is not None
            and now >= self.cool_down_until
        ):
            return CircuitState.HALF_OPEN
        return self.state


@dataclass(frozen=True)
class BreakerEvent:
    """交给 EventLogger 的结构化记录"""
    kind: EventKind
    target_author_id: str
    window_counts: Mapping[str, int]
    coordination_detected: bool
    reason: str
    timestamp: float
    extra: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "target_author_id": self.target_author_id,
            "window_counts": dict(self.window_counts),
            "coordination_detected": self.coordination_detected,
            "reason": self.reason,
            "timestamp": self.timestamp,
            **dict(self.extra),
        }


@dataclass
class BreakerOutcome:
    allow_score_impact: bool
    state: CircuitState
    reason: str
    events: List[BreakerEvent] = field(default_factory=list)


# ========== 对外决策 ==========

@dataclass(frozen=True)
class Decision:
    allow_score_impact: bool
    circuit_state: Optional[CircuitState]
    reason: str
    target_author_id: Optional[str] = None
    coordination_detected: bool = False
    estimated: bool = False
    window_counts: Mapping[str, int] = field(default_factory=dict)


# ========== Pipeline ==========

@dataclass
class GuardContext:
    now: float
    config: "GuardConfig"
    target: "TargetState"
    threshold_multiplier: float = 1.0
    metrics: Optional["GuardMetrics"] = None
    actor_index: Optional["ActorTargetIndex"] = None


@dataclass
class GuardWip:
    late: bool = False
    late_reason: Optional[str] = None
    estimated: bool = False
    window_counts: Dict[str, int] = field(default_factory=dict)
    signals: List[CoordinationSignal] = field(default_factory=list)
    verdict: Optional[PolicyVerdict] = None
    outcome: Optional[BreakerOutcome] = None
    decision: Optional[Decision] = None
    reasons: List[str] = field(default_factory=list)


class GuardStage(Protocol):
    def apply(self, event: ActionEvent, ctx: GuardContext, wip: GuardWip) -> None: ...


if TYPE_CHECKING:
    from .config import GuardConfig
    from .metrics import GuardMetrics
    from ..target_state import TargetState
    from ..actor_index import ActorTargetIndex
