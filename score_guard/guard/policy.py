from __future__ import annotations

from typing import List, Mapping, Optional, Sequence

from .config import GuardConfig
from .types import CoordinationSignal, OverlapSignal, PolicyAction, PolicyVerdict, WindowBreach


def effective_threshold(threshold: int, multiplier: float) -> int:
    return max(1, int(threshold * max(0.1, multiplier)))


def describe_coordination(signal: Optional[CoordinationSignal]) -> str:
    if signal is None or not signal.detected:
        return "coordination=false"
    detail = (
        f"{signal.distinct_actor_count} distinct actors, ratio={signal.ratio:.2f}, "
        f"window={signal.window}"
    )
    if signal.estimated:
        detail += ", estimated"
    return f"coordination=true ({detail})"


def describe_overlap(signal: OverlapSignal) -> str:
    return f"target_overlap={signal.score:.2f} across {signal.actor_count} actors"


class ThresholdPolicy:
    """
    纯函数策略：窗口计数快照 + 协同信号 -> no_action / trip / warn

    - 任一窗口 count >= threshold 即 trip（窗口间 OR）
    - 协同信号单独即可 trip，即使没有任何窗口越线
    - 接近阈值（warn_fraction）或 distinct 足够但 ratio 不足时 warn
    - 跨 target 重合度（overlap）只写进 reason，不单独触发 trip 或 warn
    """

    def evaluate(
        self,
        window_counts: Mapping[str, int],
        signals: Sequence[CoordinationSignal],
        config: GuardConfig,
        *,
        multiplier: float = 1.0,
        overlap: Optional[OverlapSignal] = None,
    ) -> PolicyVerdict:
        counts = dict(window_counts)
        breached: List[WindowBreach] = []
        warnings: List[str] = []

        for spec in config.windows_by_duration():
            count = counts.get(spec.name)
            if count is None:
                continue
            threshold = effective_threshold(spec.count_threshold, multiplier)
            if count >= threshold:
                breached.append(WindowBreach(spec.name, count, threshold))
            elif count >= threshold * config.policy.warn_fraction:
                warnings.append(f"{spec.name} window={count} (threshold={threshold})")

        # 信号已按窗口从短到长排列，取第一个命中的窗口
        coordination = next((s for s in signals if s.detected), None)
        if coordination is None:
            for s in signals:
                if s.distinct_actor_count >= config.coordination.min_distinct_actors:
                    warnings.append(
                        f"{s.window} distinct actors={s.distinct_actor_count} "
                        f"(ratio={s.ratio:.2f} < {config.coordination.min_ratio:.2f})"
                    )
                    break

        if breached or coordination is not None:
            parts = [f"{b.window} window={b.count} (threshold={b.threshold})" for b in breached]
            parts.append(describe_coordination(coordination))
            if overlap is not None and overlap.detected:
                parts.append(describe_overlap(overlap))
            return PolicyVerdict(
                action=PolicyAction.TRIP,
                window_counts=counts,
                breached=tuple(breached),
                coordination=coordination,
                warnings=tuple(warnings),
                reason="tripped: " + "; ".join(parts),
                overlap=overlap,
            )

        if warnings:
            if overlap is not None and overlap.detected:
                warnings.append(describe_overlap(overlap))
            return PolicyVerdict(
                action=PolicyAction.WARN,
                window_counts=counts,
                warnings=tuple(warnings),
                reason="warn: " + "; ".join(warnings),
                overlap=overlap,
            )

        return PolicyVerdict(action=PolicyAction.NO_ACTION, window_counts=counts, reason="ok")
