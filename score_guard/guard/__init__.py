from .guard import SuppressionGuard
from .types import (
    BreakerEvent,
    CircuitRecord,
    CircuitState,
    CoordinationSignal,
    Decision,
    EventKind,
    OverlapSignal,
    PolicyAction,
    PolicyVerdict,
)
from .config import GuardConfig, WindowSpec
from .metrics import GuardMetrics
from .policy import ThresholdPolicy

__all__ = [
    "SuppressionGuard",
    "BreakerEvent",
    "CircuitRecord",
    "CircuitState",
    "CoordinationSignal",
    "Decision",
    "EventKind",
    "OverlapSignal",
    "PolicyAction",
    "PolicyVerdict",
    "GuardConfig",
    "WindowSpec",
    "GuardMetrics",
    "ThresholdPolicy",
]
