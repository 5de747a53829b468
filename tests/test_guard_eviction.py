from __future__ import annotations

from score_guard import ActionEvent, ActionType, CircuitState, EventKind, SuppressionGuard
from score_guard.event_logger import RecordingEventLogger

T0 = 1_000_000.0


def _report(actor: str, target: str, ts: float) -> ActionEvent:
    return ActionEvent(actor_id=actor, target_author_id=target, action_type=ActionType.REPORT, timestamp=ts)


def test_idle_target_is_evicted_and_recreated_fresh(scenario_config, clock):
    sink = RecordingEventLogger()
    guard = SuppressionGuard(scenario_config(idle_eviction_sec=900.0), event_logger=sink, clock=clock)
    for i in range(200):
        guard.submit(_report("heavy", "author:1", T0 + i * 0.2))
    assert guard.get_circuit_state("author:1").state == CircuitState.OPEN

    clock.advance(901)
    evicted = guard.sweep_idle()

    assert evicted == ["author:1"]
    assert guard.live_targets == 0
    assert guard.metrics.evicted_total == 1

    record = guard.get_circuit_state("author:1")
    assert record.state == CircuitState.CLOSED
    assert record.reason == "no_record"

    decision = guard.submit(_report("someone", "author:1", T0 + 5000))
    assert decision.allow_score_impact is True
    assert guard.window_counts("author:1") == {"1m": 1, "10m": 1}

    guard.drain_events()
    ev = sink.of_kind(EventKind.EVICTED)
    assert len(ev) == 1
    assert ev[0].extra["last_state"] == "open"
    assert ev[0].reason == "evicted: idle for 901s; last state=open"


def test_active_targets_are_kept(scenario_config, clock):
    guard = SuppressionGuard(scenario_config(idle_eviction_sec=900.0), event_logger=RecordingEventLogger(), clock=clock)
    guard.submit(_report("u1", "author:idle", T0))
    clock.advance(600)
    guard.submit(_report("u1", "author:busy", T0 + 600))
    clock.advance(400)

    assert guard.sweep_idle() == ["author:idle"]
    assert guard.live_targets == 1
    assert guard.window_counts("author:busy")["10m"] == 1


def test_sweep_skips_target_being_processed(scenario_config, clock):
    guard = SuppressionGuard(scenario_config(), event_logger=RecordingEventLogger(), clock=clock)
    guard.submit(_report("u1", "author:1", T0))
    clock.advance(10_000)

    state = guard._targets.get("author:1")
    with state.lock:
        assert guard.sweep_idle() == []
    assert guard.live_targets == 1
    assert guard.sweep_idle() == ["author:1"]
    assert state.evicted is True
