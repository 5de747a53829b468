from __future__ import annotations

import asyncio

import pytest
from loguru import logger

from score_guard.emitter import EventEmitter
from score_guard.event_logger import LoguruEventLogger, RecordingEventLogger
from score_guard.guard.types import BreakerEvent, EventKind


def _make_event(i: int, kind: EventKind = EventKind.TRIP) -> BreakerEvent:
    return BreakerEvent(
        kind=kind,
        target_author_id=f"author:{i}",
        window_counts={"1m": 200},
        coordination_detected=False,
        reason="tripped: 1m window=200 (threshold=200); coordination=false",
        timestamp=1_000.0 + i,
    )


def test_full_queue_drops_oldest():
    sink = RecordingEventLogger()
    emitter = EventEmitter(sink, maxsize=3)

    results = [emitter.publish_nowait(_make_event(i)) for i in range(5)]

    assert [r.dropped_oldest for r in results] == [False, False, False, True, True]
    assert emitter.dropped_total == 2
    assert emitter.drain() == 3
    assert [e.target_author_id for e in sink.events] == ["author:2", "author:3", "author:4"]


def test_failing_sink_does_not_block_later_events():
    class FlakySink:
        def __init__(self) -> None:
            self.events = []

        def emit(self, event):
            if event.target_author_id == "author:0":
                raise RuntimeError("sink down")
            self.events.append(event)

    sink = FlakySink()
    emitter = EventEmitter(sink, maxsize=10)
    for i in range(3):
        emitter.publish_nowait(_make_event(i))

    assert emitter.drain() == 2
    assert emitter.failed_total == 1
    assert emitter.size() == 0
    assert [e.target_author_id for e in sink.events] == ["author:1", "author:2"]


def test_drain_respects_batch_size():
    sink = RecordingEventLogger()
    emitter = EventEmitter(sink, maxsize=10)
    for i in range(5):
        emitter.publish_nowait(_make_event(i))

    assert emitter.drain(2) == 2
    assert emitter.size() == 3


def test_closed_emitter_rejects_publish():
    emitter = EventEmitter(RecordingEventLogger(), maxsize=2)
    emitter.close()

    result = emitter.publish_nowait(_make_event(0))
    assert result.ok is False
    assert result.reason == "closed"


def test_invalid_maxsize():
    with pytest.raises(ValueError):
        EventEmitter(RecordingEventLogger(), maxsize=0)


@pytest.mark.asyncio
async def test_run_forever_drains_periodically_and_on_cancel():
    sink = RecordingEventLogger()
    emitter = EventEmitter(sink, maxsize=10)
    task = asyncio.create_task(emitter.run_forever(interval=0.01))

    emitter.publish_nowait(_make_event(0))
    await asyncio.sleep(0.05)
    assert len(sink.events) == 1

    emitter.publish_nowait(_make_event(1))
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    assert len(sink.events) == 2


def test_loguru_event_logger_binds_structured_fields():
    records = []
    handler_id = logger.add(lambda message: records.append(message.record), level="INFO")
    try:
        LoguruEventLogger().emit(_make_event(7))
        LoguruEventLogger().emit(_make_event(8, EventKind.RESET))
    finally:
        logger.remove(handler_id)

    trip, reset = records[-2:]
    assert trip["level"].name == "WARNING"
    assert trip["extra"]["channel"] == "score_guard.events"
    assert trip["extra"]["kind"] == "trip"
    assert trip["extra"]["window_counts"] == {"1m": 200}
    assert trip["extra"]["target_author_id"] == "author:7"
    assert reset["level"].name == "INFO"
    assert "[reset] target=author:8" in reset["message"]
