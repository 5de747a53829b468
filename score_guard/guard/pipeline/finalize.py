from __future__ import annotations

from ..types import Decision, GuardContext, GuardWip
from ...schemas.action_event import ActionEvent


class FinalizeStage:
    """收敛为 Decision 并更新 metrics"""

    def apply(self, event: ActionEvent, ctx: GuardContext, wip: GuardWip) -> None:
        outcome = wip.outcome
        if outcome is None:
            raise RuntimeError("pipeline finished without a breaker outcome")

        verdict = wip.verdict
        wip.decision = Decision(
            allow_score_impact=outcome.allow_score_impact,
            circuit_state=outcome.state,
            reason=outcome.reason,
            target_author_id=event.target_author_id,
            coordination_detected=verdict.coordination_detected if verdict else False,
            estimated=wip.estimated or (verdict.estimated if verdict else False),
            window_counts=dict(wip.window_counts),
        )

        metrics = ctx.metrics
        if metrics:
            metrics.inc("processed_total")
            metrics.inc_state(outcome.state.value)
            metrics.inc("allowed_total" if outcome.allow_score_impact else "suppressed_total")
            for ev in outcome.events:
                metrics.inc_event(ev.kind.value)
