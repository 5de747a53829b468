from __future__ import annotations

from typing import Optional

from ..policy import ThresholdPolicy
from ..types import CircuitState, GuardContext, GuardWip, OverlapSignal, PolicyAction
from ...schemas.action_event import ActionEvent


class EvaluateStage:
    """窗口快照 + 协同信号 -> PolicyVerdict"""

    def __init__(self) -> None:
        self.policy = ThresholdPolicy()

    def apply(self, event: ActionEvent, ctx: GuardContext, wip: GuardWip) -> None:
        if wip.late:
            return
        target = ctx.target
        wip.window_counts = target.counter.snapshot()
        # 阈值取当前配置快照，热更新对已存在的 target 同样生效
        wip.signals = target.detector.signals(ctx.config.coordination)
        wip.verdict = self.policy.evaluate(
            wip.window_counts,
            wip.signals,
            ctx.config,
            multiplier=ctx.threshold_multiplier,
        )

        # open 期间不会产生新事件，不必计算
        if wip.verdict.action != PolicyAction.NO_ACTION and target.breaker.state != CircuitState.OPEN:
            overlap = self._overlap(ctx)
            if overlap is not None:
                wip.verdict = self.policy.evaluate(
                    wip.window_counts,
                    wip.signals,
                    ctx.config,
                    multiplier=ctx.threshold_multiplier,
                    overlap=overlap,
                )

        if wip.verdict.action == PolicyAction.WARN:
            wip.reasons.append("warn")
            if ctx.metrics:
                ctx.metrics.inc("warnings_total")

    def _overlap(self, ctx: GuardContext) -> Optional[OverlapSignal]:
        index = ctx.actor_index
        detector = ctx.target.detector
        spec = detector.shortest_window
        if index is None or spec is None or detector.latest_ts is None:
            return None

        cfg = ctx.config.coordination
        actors = detector.recent_actors(cfg.overlap_sample)
        if len(actors) < cfg.overlap_min_actors:
            return None
        score, used = index.overlap(actors, detector.latest_ts - spec.duration_sec)
        if ctx.metrics:
            ctx.metrics.inc("overlap_checks_total")
        return OverlapSignal(
            window=spec.name,
            actor_count=used,
            score=score,
            detected=used >= cfg.overlap_min_actors and score >= cfg.overlap_threshold,
        )
