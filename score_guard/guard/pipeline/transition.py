from __future__ import annotations

from ..types import GuardContext, GuardWip
from ...schemas.action_event import ActionEvent


class TransitionStage:
    """把判定交给 CircuitBreaker；迟到事件不迁移，只按当前状态作答"""

    def apply(self, event: ActionEvent, ctx: GuardContext, wip: GuardWip) -> None:
        breaker = ctx.target.breaker
        if wip.late or wip.verdict is None:
            wip.outcome = breaker.hold(ctx.now, wip.late_reason or "not_evaluated")
            return
        wip.outcome = breaker.transition(
            wip.verdict,
            ctx.now,
            estimated=wip.estimated,
            config=ctx.config.breaker,
        )
