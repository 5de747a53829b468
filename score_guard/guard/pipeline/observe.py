from __future__ import annotations

import logging

from ..types import GuardContext, GuardWip
from ...errors import CapacityExceeded
from ...schemas.action_event import ActionEvent

logger = logging.getLogger(__name__)


class ObserveStage:
    """写入 CoordinationDetector 与跨 target 的 actor 索引；actor 集合满时降级为估计值"""

    def apply(self, event: ActionEvent, ctx: GuardContext, wip: GuardWip) -> None:
        if wip.late:
            return
        if ctx.actor_index is not None:
            ctx.actor_index.record(event.actor_id, event.target_author_id, event.timestamp)
        try:
            ctx.target.detector.observe(event.actor_id, event.target_author_id, event.timestamp)
        except CapacityExceeded as e:
            wip.estimated = True
            wip.reasons.append(f"capacity:{e.window}")
            if ctx.metrics:
                ctx.metrics.inc("estimated_total")
            logger.debug(f"target={event.target_author_id} {e}; distinct actors now estimated")
