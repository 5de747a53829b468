from __future__ import annotations

from ..types import GuardContext, GuardWip
from ...errors import LateEventError
from ...schemas.action_event import ActionEvent


class RecordStage:
    """写入 WindowCounter；迟到事件只打标记，后续 stage 跳过"""

    def apply(self, event: ActionEvent, ctx: GuardContext, wip: GuardWip) -> None:
        try:
            ctx.target.counter.record(event.action_type, event.timestamp)
        except LateEventError as e:
            wip.late = True
            wip.late_reason = f"late_event_dropped: {e}"
            wip.reasons.append("late_event")
            if ctx.metrics:
                ctx.metrics.inc("dropped_late_total")
