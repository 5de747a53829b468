from __future__ import annotations

import dataclasses
from typing import Any, Mapping, TypeVar

from .guard.types import Decision

# 评分向量中受负向行为驱动的分量
NEGATIVE_SIGNAL_FIELDS = (
    "not_interested_score",
    "block_author_score",
    "mute_author_score",
    "report_score",
)

T = TypeVar("T")


def apply_circuit_protection(scores: T, decision: Decision) -> T:
    """
    电路跳闸时把负向分量归零，其余分量保持不变。
    支持 dict 风格映射与 dataclass；返回新对象，不修改入参。
    """
    if decision.allow_score_impact:
        return scores

    if dataclasses.is_dataclass(scores) and not isinstance(scores, type):
        present = {f.name for f in dataclasses.fields(scores)}
        zeroed = {name: 0.0 for name in NEGATIVE_SIGNAL_FIELDS if name in present}
        return dataclasses.replace(scores, **zeroed)

    if isinstance(scores, Mapping):
        out: dict[str, Any] = dict(scores)
        for name in NEGATIVE_SIGNAL_FIELDS:
            if name in out:
                out[name] = 0.0
        return out  # type: ignore[return-value]

    raise TypeError(f"Unsupported score container: {type(scores).__name__}")
