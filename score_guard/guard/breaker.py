from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .config import BreakerConfig
from .types import (
    BreakerEvent,
    BreakerOutcome,
    CircuitRecord,
    CircuitState,
    EventKind,
    PolicyVerdict,
    StateTransition,
)

logger = logging.getLogger(__name__)


# 唯一合法的迁移集合；open -> closed 只能经由 half-open probe 或显式 reset
ALLOWED_TRANSITIONS = {
    (CircuitState.CLOSED, CircuitState.OPEN),
    (CircuitState.OPEN, CircuitState.HALF_OPEN),
    (CircuitState.HALF_OPEN, CircuitState.CLOSED),
    (CircuitState.HALF_OPEN, CircuitState.OPEN),
}


class CircuitBreaker:
    """
    单 target 的 closed / open / half-open 状态机。

    - closed: 行为正常影响分数
    - open: 行为照常记录，但不影响分数；冷却期内每次 trip 判定都会重置冷却计时
    - half-open: 试探期，probe_count 次良性判定后回到 closed，期间任意一次 trip 立即回到 open

    调用方负责对同一 target 串行化调用（TargetState.lock）。
    """

    def __init__(self, target_author_id: str, config: BreakerConfig) -> None:
        self.target_author_id = target_author_id
        self.config = config
        self._record: Optional[CircuitRecord] = None

    @property
    def state(self) -> CircuitState:
        return self._record.state if self._record is not None else CircuitState.CLOSED

    @property
    def record(self) -> Optional[CircuitRecord]:
        return self._record

    def snapshot(self) -> CircuitRecord:
        if self._record is None:
            return CircuitRecord.closed(self.target_author_id)
        return self._record.snapshot()

    # -------------------------
    # 迁移 / transitions
    # -------------------------

    def _require_record(self) -> CircuitRecord:
        if self._record is None:
            raise RuntimeError(f"no circuit record for target={self.target_author_id}")
        return self._record

    def _move(self, to_state: CircuitState, now: float, reason: str) -> None:
        record = self._require_record()
        from_state = record.state
        if (from_state, to_state) not in ALLOWED_TRANSITIONS:
            raise RuntimeError(f"illegal transition {from_state.value} -> {to_state.value}")

        record.state = to_state
        record.last_transition_at = now
        record.transitions.append(StateTransition(from_state, to_state, now, reason))
        overflow = len(record.transitions) - self.config.max_transitions_kept
        if overflow > 0:
            del record.transitions[:overflow]
        logger.info(
            f"circuit target={self.target_author_id} {from_state.value} -> {to_state.value}: {reason}"
        )

    def _open(
        self, verdict: PolicyVerdict, now: float, kind: EventKind, estimated: bool = False,
    ) -> BreakerEvent:
        if self._record is None:
            self._record = CircuitRecord(target_author_id=self.target_author_id)
        record = self._record

        reason = verdict.reason
        if kind == EventKind.RETRIP:
            reason = "re-" + reason
        self._move(CircuitState.OPEN, now, reason)

        record.tripped_at = now
        if kind == EventKind.TRIP:
            record.opened_at = now
        record.cool_down_until = now + self.config.cool_down_sec
        record.reason = reason
        record.window_counts = dict(verdict.window_counts)
        record.coordination_detected = verdict.coordination_detected
        record.estimated = verdict.estimated or estimated
        record.probes_passed = 0
        record.trip_count += 1

        extra: Dict[str, Any] = {
            "estimated": record.estimated,
            "cool_down_until": record.cool_down_until,
            "trip_count": record.trip_count,
        }
        if verdict.overlap is not None:
            extra["target_overlap"] = round(verdict.overlap.score, 4)

        return BreakerEvent(
            kind=kind,
            target_author_id=self.target_author_id,
            window_counts=dict(verdict.window_counts),
            coordination_detected=verdict.coordination_detected,
            reason=reason,
            timestamp=now,
            extra=extra,
        )

    def _close(self, verdict: PolicyVerdict, now: float, reason: str) -> BreakerEvent:
        record = self._require_record()
        opened_at = record.opened_at if record.opened_at is not None else now
        open_duration = max(0.0, now - opened_at)

        self._move(CircuitState.CLOSED, now, reason)
        record.reason = reason
        record.probes_passed = 0
        record.cool_down_until = None

        return BreakerEvent(
            kind=EventKind.RESET,
            target_author_id=self.target_author_id,
            window_counts=dict(verdict.window_counts),
            coordination_detected=verdict.coordination_detected,
            reason=reason,
            timestamp=now,
            extra={"open_duration_sec": open_duration, "trip_count": record.trip_count},
        )

    def transition(
        self,
        verdict: PolicyVerdict,
        now: float,
        *,
        estimated: bool = False,
        config: Optional[BreakerConfig] = None,
    ) -> BreakerOutcome:
        """
        estimated: 本次观测时 actor 集合已满（distinct 为估计值）
        config: 当前配置快照；cool_down_sec 与 probe_count 按它计算，已存在的 target 也跟随热更新
        """
        if config is not None:
            self.config = config
        events: List[BreakerEvent] = []
        state = self.state

        if state == CircuitState.OPEN:
            record = self._require_record()
            if record.cool_down_until is None:
                raise RuntimeError(f"open circuit without cool-down for target={self.target_author_id}")
            if now >= record.cool_down_until:
                self._move(CircuitState.HALF_OPEN, now, "cool_down_elapsed")
                record.probes_passed = 0
                state = CircuitState.HALF_OPEN

        if verdict.is_trip:
            if state == CircuitState.CLOSED:
                events.append(self._open(verdict, now, EventKind.TRIP, estimated))
                return BreakerOutcome(False, CircuitState.OPEN, verdict.reason, events)
            if state == CircuitState.OPEN:
                record = self._require_record()
                record.cool_down_until = now + self.config.cool_down_sec
                return BreakerOutcome(
                    False, state, f"open: cool-down restarted; {verdict.reason}", events,
                )
            if state == CircuitState.HALF_OPEN:
                event = self._open(verdict, now, EventKind.RETRIP, estimated)
                events.append(event)
                return BreakerOutcome(False, CircuitState.OPEN, event.reason, events)
            raise RuntimeError(f"unknown circuit state: {state}")

        if state == CircuitState.CLOSED:
            return BreakerOutcome(True, state, verdict.reason, events)
        if state == CircuitState.OPEN:
            record = self._require_record()
            return BreakerOutcome(
                False, state,
                f"open: cooling down until {record.cool_down_until:.0f}; {record.reason}",
                events,
            )
        if state == CircuitState.HALF_OPEN:
            record = self._require_record()
            record.probes_passed += 1
            if record.probes_passed >= self.config.probe_count:
                passed = record.probes_passed
                opened_at = record.opened_at if record.opened_at is not None else now
                reason = (
                    f"reset: {passed} benign probe evaluations after "
                    f"{now - opened_at:.0f}s open"
                )
                events.append(self._close(verdict, now, reason))
                return BreakerOutcome(True, CircuitState.CLOSED, reason, events)
            return BreakerOutcome(
                True, state,
                f"half_open: probe {record.probes_passed}/{self.config.probe_count}; {verdict.reason}",
                events,
            )
        raise RuntimeError(f"unknown circuit state: {state}")

    # -------------------------
    # 非 pipeline 路径
    # -------------------------

    def hold(self, now: float, reason: str) -> BreakerOutcome:
        """不迁移，按最后已知状态给出决策（late 事件 / 降级时使用）"""
        state = self.state
        return BreakerOutcome(state == CircuitState.CLOSED, state, f"{reason}; holding {state.value}")

    def force_reset(self, now: float, reason: str) -> Optional[BreakerEvent]:
        """
        显式 reset 策略（管理员操作）：open 先经 half-open 再 closed，
        保证迁移路径依然合法。closed 时无事发生。
        """
        record = self._record
        if record is None or record.state == CircuitState.CLOSED:
            return None
        if record.state == CircuitState.OPEN:
            self._move(CircuitState.HALF_OPEN, now, f"explicit reset: {reason}")
        counts = dict(record.window_counts)
        opened_at = record.opened_at if record.opened_at is not None else now
        self._move(CircuitState.CLOSED, now, f"explicit reset: {reason}")
        record.reason = f"reset: {reason}"
        record.probes_passed = 0
        record.cool_down_until = None
        return BreakerEvent(
            kind=EventKind.RESET,
            target_author_id=self.target_author_id,
            window_counts=counts,
            coordination_detected=record.coordination_detected,
            reason=record.reason,
            timestamp=now,
            extra={"open_duration_sec": max(0.0, now - opened_at), "explicit": True},
        )
