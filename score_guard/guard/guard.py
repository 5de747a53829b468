from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Optional

from ..emitter import EventEmitter
from ..actor_index import ActorTargetIndex
from ..errors import FutureEventError, InputError, InternalInconsistency
from ..event_logger import EventLogger, LoguruEventLogger
from ..history import HistoryStore, load_multipliers
from ..schemas.action_event import ActionEvent
from ..target_map import ShardedTargetMap
from ..target_state import TargetState
from .config import GuardConfig
from .metrics import GuardMetrics
from .pipeline.base import DefaultGuardPipeline
from .types import (
    BreakerEvent,
    CircuitRecord,
    CircuitState,
    Decision,
    EventKind,
    GuardContext,
    GuardWip,
)

logger = logging.getLogger(__name__)


class SuppressionGuard:
    """
    入口：submit(event) -> Decision

    使用示例（在上游 action 记录服务中）：

        guard = SuppressionGuard(GuardConfig.from_env())
        decision = guard.submit(ActionEvent(
            actor_id="u1",
            target_author_id="author:42",
            action_type=ActionType.REPORT,
            timestamp=time.time(),
        ))
        if not decision.allow_score_impact:
            scores = apply_circuit_protection(scores, decision)

    - 可在多线程中并发调用；同一 target 的 pipeline 串行执行
    - 任何错误都会收敛为一个决策，submit 从不抛出
    - trip / reset 等事件经有界队列交给 EventLogger，需由 drain() 或 GuardService 排空
    """

    def __init__(
        self,
        config: Optional[GuardConfig] = None,
        *,
        event_logger: Optional[EventLogger] = None,
        history: Optional[HistoryStore] = None,
        metrics: Optional[GuardMetrics] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = (config or GuardConfig()).validate()
        self.metrics = metrics or GuardMetrics()
        self.clock = clock
        self.emitter = EventEmitter(
            event_logger or LoguruEventLogger(),
            maxsize=self.config.emitter.queue_size,
        )
        self.pipeline = DefaultGuardPipeline()
        self._targets = ShardedTargetMap(self.config.shard_count)
        self.actor_index = ActorTargetIndex(
            max_actors=self.config.coordination.max_indexed_actors,
            max_targets_per_actor=self.config.coordination.max_targets_per_actor,
        )

        try:
            self._multipliers: Dict[str, float] = load_multipliers(history)
        except Exception as e:
            logger.warning(f"History aggregates unavailable, using default thresholds: {e}")
            self._multipliers = {}

    # -------------------------
    # 摄入 / ingestion
    # -------------------------

    def submit(self, event: ActionEvent) -> Decision:
        try:
            if not isinstance(event, ActionEvent):
                raise InputError(f"expected ActionEvent, got {type(event).__name__}")
            event.validate()
            now = self.clock()
            if event.timestamp > now + self.config.max_clock_skew_sec:
                raise FutureEventError(event.timestamp, now, self.config.max_clock_skew_sec)
        except InputError as e:
            self.metrics.inc("rejected_input_total")
            if isinstance(e, FutureEventError):
                self.metrics.inc("dropped_future_total")
            logger.warning(f"Rejected action event {getattr(event, 'event_id', '?')}: {e}")
            return Decision(
                allow_score_impact=False,
                circuit_state=None,
                reason=f"rejected: {e}",
                target_author_id=getattr(event, "target_author_id", None) or None,
            )

        if not self.config.is_tracked(event.action_type):
            self.metrics.inc("untracked_total")
            state = self._targets.get(event.target_author_id)
            current = state.breaker.state if state is not None else CircuitState.CLOSED
            return Decision(
                allow_score_impact=True,
                circuit_state=current,
                reason=f"untracked_action: {event.action_type.value}",
                target_author_id=event.target_author_id,
            )

        config = self.config
        while True:
            state = self._targets.get_or_create(
                event.target_author_id,
                lambda: TargetState.create(event.target_author_id, config, self.clock()),
            )
            with state.lock:
                if state.evicted:
                    # 拿到的是刚被回收的实例，重新创建
                    continue
                return self._run(state, event, config)

    def _run(self, state: TargetState, event: ActionEvent, config: GuardConfig) -> Decision:
        ctx = GuardContext(
            now=max(event.timestamp, state.counter.latest_ts or event.timestamp),
            config=config,
            target=state,
            threshold_multiplier=self._multipliers.get(event.target_author_id, 1.0),
            metrics=self.metrics,
            actor_index=self.actor_index,
        )
        wip = GuardWip()
        try:
            self.pipeline.run(event, ctx, wip)
            if wip.decision is None or wip.outcome is None:
                raise InternalInconsistency("pipeline finished without a decision")
        except Exception as e:
            return self._degraded(state, event, ctx.now, e)
        finally:
            state.record_processed(self.clock())

        self._publish(wip.outcome.events)
        return wip.decision

    def _degraded(self, state: TargetState, event: ActionEvent, now: float, error: Exception) -> Decision:
        """内部错误：不迁移、不重置，按最后已知状态作答并发出 degraded 事件"""
        self.metrics.inc("degraded_total")
        logger.error(
            f"Degraded evaluation for target={event.target_author_id}: "
            f"{type(error).__name__}: {error}"
        )
        outcome = state.breaker.hold(now, f"degraded: {type(error).__name__}: {error}")
        self.metrics.inc_state(outcome.state.value)
        self._publish([
            BreakerEvent(
                kind=EventKind.DEGRADED,
                target_author_id=event.target_author_id,
                window_counts={},
                coordination_detected=False,
                reason=outcome.reason,
                timestamp=now,
                extra={"error_type": type(error).__name__, "state": outcome.state.value},
            )
        ])
        return Decision(
            allow_score_impact=outcome.allow_score_impact,
            circuit_state=outcome.state,
            reason=outcome.reason,
            target_author_id=event.target_author_id,
        )

    def _publish(self, events: List[BreakerEvent]) -> None:
        for ev in events:
            if ev.kind in (EventKind.TRIP, EventKind.RETRIP):
                self.metrics.inc("trips_total")
            elif ev.kind == EventKind.RESET:
                self.metrics.inc("resets_total")
            result = self.emitter.publish_nowait(ev)
            if result.dropped_oldest:
                logger.warning("Breaker event queue full, dropped oldest event")

    # -------------------------
    # 查询 / admin
    # -------------------------

    def get_circuit_state(self, target_author_id: str) -> CircuitRecord:
        """
        返回记录副本；不会触发任何迁移。

        冷却到期后存储的 state 仍是 open，直到该 target 的下一次判定才迁到 half-open；
        需要按时钟解读时用 record.effective_state(now)。
        """
        state = self._targets.get(target_author_id)
        if state is None:
            return CircuitRecord.closed(target_author_id)
        with state.lock:
            return state.breaker.snapshot()

    def window_counts(self, target_author_id: str) -> Dict[str, int]:
        state = self._targets.get(target_author_id)
        if state is None:
            return {spec.name: 0 for spec in self.config.windows}
        with state.lock:
            return state.counter.snapshot()

    def reset_circuit(self, target_author_id: str, reason: str = "admin") -> CircuitRecord:
        """显式 reset：唯一能在 probe 之外关闭 open 电路的路径"""
        state = self._targets.get(target_author_id)
        if state is None:
            return CircuitRecord.closed(target_author_id)
        with state.lock:
            now = state.counter.latest_ts or self.clock()
            event = state.breaker.force_reset(now, reason)
            record = state.breaker.snapshot()
        if event is not None:
            self._publish([event])
        return record

    def update_config(self, config: GuardConfig) -> None:
        """
        阈值、冷却时长、probe_count 对所有 target 的下一次判定立即生效；
        窗口布局、actor 集合上限、late grace 只影响新建的 target
        """
        self.config = config.validate()
        self.actor_index.resize(
            self.config.coordination.max_indexed_actors,
            self.config.coordination.max_targets_per_actor,
        )

    @property
    def live_targets(self) -> int:
        return len(self._targets)

    # -------------------------
    # 空闲回收 / idle eviction
    # -------------------------

    def sweep_idle(self, now: Optional[float] = None) -> List[str]:
        now = self.clock() if now is None else now
        idle_sec = self.config.eviction.idle_eviction_sec

        def _is_idle(state: TargetState) -> bool:
            idle = state.idle_seconds(now)
            return idle is not None and idle >= idle_sec

        # 先在锁外按快照筛候选，再逐个在分片锁内复核
        candidates = [key for key, state in self._targets.snapshot() if _is_idle(state)]

        evicted: List[str] = []
        for key in candidates:
            state = self._targets.remove_if(key, _is_idle)
            if state is None:
                continue
            evicted.append(key)
            self.metrics.inc("evicted_total")
            last_state = state.breaker.state
            logger.info(f"Evicted idle target={key} state={last_state.value}")
            self._publish([
                BreakerEvent(
                    kind=EventKind.EVICTED,
                    target_author_id=key,
                    window_counts={},
                    coordination_detected=False,
                    reason=f"evicted: idle for {state.idle_seconds(now):.0f}s; last state={last_state.value}",
                    timestamp=now,
                    extra={"last_state": last_state.value},
                )
            ])
        return evicted

    def drain_events(self, max_items: Optional[int] = None) -> int:
        return self.emitter.drain(max_items)
