from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import pytest
from loguru import logger

from score_guard import ActionEvent, ActionType, CircuitState, Decision, InputError, apply_circuit_protection
from score_guard.logging_config import setup_logging


@dataclass(frozen=True)
class ScoreVector:
    relevance_score: float
    not_interested_score: float
    block_author_score: float
    report_score: float


DENY = Decision(allow_score_impact=False, circuit_state=CircuitState.OPEN, reason="tripped")
ALLOW = Decision(allow_score_impact=True, circuit_state=CircuitState.CLOSED, reason="ok")


def test_protection_zeroes_negative_components_of_dataclass():
    scores = ScoreVector(0.9, 0.4, 0.7, 0.2)

    protected = apply_circuit_protection(scores, DENY)

    assert protected == ScoreVector(0.9, 0.0, 0.0, 0.0)
    assert scores.block_author_score == 0.7


def test_protection_on_mapping_keeps_other_keys():
    scores = {"relevance_score": 0.5, "mute_author_score": 0.3, "report_score": 0.6}

    protected = apply_circuit_protection(scores, DENY)

    assert protected == {"relevance_score": 0.5, "mute_author_score": 0.0, "report_score": 0.0}
    assert scores["report_score"] == 0.6


def test_protection_passes_through_when_allowed():
    scores = ScoreVector(0.9, 0.4, 0.7, 0.2)
    assert apply_circuit_protection(scores, ALLOW) is scores


def test_protection_rejects_unknown_containers():
    with pytest.raises(TypeError):
        apply_circuit_protection([0.1, 0.2], DENY)


def test_parse_accepts_datetime_and_loose_action_type():
    event = ActionEvent.parse({
        "actor_id": "u1",
        "target_author_id": "author:1",
        "action_type": " Report ",
        "timestamp": datetime(2024, 1, 1, tzinfo=timezone.utc),
        "metadata": {"surface": "feed"},
    })

    assert event.action_type == ActionType.REPORT
    assert event.timestamp == datetime(2024, 1, 1, tzinfo=timezone.utc).timestamp()
    assert event.metadata == {"surface": "feed"}
    assert event.event_id


@pytest.mark.parametrize(
    "raw",
    [
        {"actor_id": "u1", "target_author_id": "author:1", "action_type": "block"},
        {"actor_id": "u1", "target_author_id": "", "action_type": "block", "timestamp": 1.0},
        {"actor_id": "", "target_author_id": "author:1", "action_type": "block", "timestamp": 1.0},
        {"actor_id": "u1", "target_author_id": "author:1", "action_type": "like", "timestamp": 1.0},
        {"actor_id": "u1", "target_author_id": "author:1", "action_type": "block", "timestamp": "soon"},
        {"actor_id": "u1", "target_author_id": "author:1", "action_type": "block", "timestamp": float("nan")},
        ["not", "a", "mapping"],
    ],
)
def test_parse_rejects_malformed_payloads(raw):
    with pytest.raises(InputError):
        ActionEvent.parse(raw)


def test_input_error_is_a_value_error():
    with pytest.raises(ValueError):
        ActionEvent("u1", "author:1", ActionType.BLOCK, -5.0).validate()


def test_setup_logging_routes_stdlib_records_into_loguru():
    setup_logging(level="DEBUG", force=True)
    records = []
    handler_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
    try:
        logging.getLogger("score_guard.tests").warning("circuit check")
    finally:
        logger.remove(handler_id)

    assert any(r["message"] == "circuit check" and r["level"].name == "WARNING" for r in records)
