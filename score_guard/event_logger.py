from __future__ import annotations

from typing import List, Protocol

from loguru import logger

from .guard.types import BreakerEvent, EventKind


class EventLogger(Protocol):
    """trip / reset / degraded / evicted 事件的外部接收方"""

    def emit(self, event: BreakerEvent) -> None: ...


class LoguruEventLogger:
    """默认实现：写成带 extra 字段的 loguru 结构化记录"""

    def __init__(self, *, channel: str = "score_guard.events") -> None:
        self.channel = channel

    def emit(self, event: BreakerEvent) -> None:
        bound = logger.bind(channel=self.channel, **event.to_dict())
        if event.kind in (EventKind.TRIP, EventKind.RETRIP, EventKind.DEGRADED):
            bound.warning(f"[{event.kind.value}] target={event.target_author_id} {event.reason}")
        else:
            bound.info(f"[{event.kind.value}] target={event.target_author_id} {event.reason}")


class RecordingEventLogger:
    """把事件留在内存里，便于检查和回放"""

    def __init__(self) -> None:
        self.events: List[BreakerEvent] = []

    def emit(self, event: BreakerEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: EventKind) -> List[BreakerEvent]:
        return [e for e in self.events if e.kind == kind]
