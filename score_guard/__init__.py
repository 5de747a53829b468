from .guard import (
    SuppressionGuard,
    BreakerEvent,
    CircuitRecord,
    CircuitState,
    Decision,
    EventKind,
    GuardConfig,
    GuardMetrics,
    WindowSpec,
)
from .schemas.action_event import ActionEvent, ActionType
from .errors import (
    CapacityExceeded,
    FutureEventError,
    GuardError,
    InputError,
    InternalInconsistency,
    LateEventError,
)
from .event_logger import EventLogger, LoguruEventLogger
from .protection import apply_circuit_protection

__all__ = [
    "SuppressionGuard",
    "BreakerEvent",
    "CircuitRecord",
    "CircuitState",
    "Decision",
    "EventKind",
    "GuardConfig",
    "GuardMetrics",
    "WindowSpec",
    "ActionEvent",
    "ActionType",
    "CapacityExceeded",
    "FutureEventError",
    "GuardError",
    "InputError",
    "InternalInconsistency",
    "LateEventError",
    "EventLogger",
    "LoguruEventLogger",
    "apply_circuit_protection",
]
