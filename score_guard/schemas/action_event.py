# action_event.py
# =========================
# 负向行为事件模型（ActionEvent）
# ActionEvent = someone blocked / reported / muted a target author
# =========================

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping

from ..errors import InputError


# ============================================================
# 枚举定义 / Enum definitions
# ============================================================

class ActionType(str, Enum):
    """
    负向行为类型
    Negative action type against a target author
    """
    BLOCK = "block"
    REPORT = "report"
    MUTE = "mute"
    NOT_INTERESTED = "not_interested"


def _coerce_action_type(value: Any) -> Any:
    if isinstance(value, ActionType):
        return value
    if isinstance(value, str):
        try:
            return ActionType(value.strip().lower())
        except ValueError:
            return value
    return value


def timestamp_seconds(value: Any) -> float:
    """datetime / 数字 -> epoch 秒"""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    if isinstance(value, bool):
        raise InputError("timestamp must be a number or datetime")
    if isinstance(value, (int, float)):
        return float(value)
    raise InputError(f"unsupported timestamp type: {type(value).__name__}")


# ============================================================
# ActionEvent 核心定义
# Core ActionEvent definition
# ============================================================

@dataclass(frozen=True)
class ActionEvent:
    """
    摄入时创建，之后不可变；只在有界窗口内被计数，不做持久化。
    Immutable after ingestion; only ever held inside bounded windows.
    """

    actor_id: str
    target_author_id: str
    action_type: ActionType
    timestamp: float

    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        # 宽松接收字符串 action_type，非法值留给 validate() 拒绝
        object.__setattr__(self, "action_type", _coerce_action_type(self.action_type))

    def validate(self) -> None:
        """
        校验事件结构，不合法时抛出 InputError。
        Raises InputError for malformed events.
        """
        if not isinstance(self.target_author_id, str) or not self.target_author_id.strip():
            raise InputError("missing target_author_id")
        if not isinstance(self.actor_id, str) or not self.actor_id.strip():
            raise InputError("missing actor_id")
        if not isinstance(self.action_type, ActionType):
            raise InputError(f"unknown action_type: {self.action_type!r}")
        if isinstance(self.timestamp, bool) or not isinstance(self.timestamp, (int, float)):
            raise InputError("timestamp must be epoch seconds")
        if not math.isfinite(self.timestamp) or self.timestamp < 0:
            raise InputError(f"invalid timestamp: {self.timestamp!r}")

    @classmethod
    def parse(cls, raw: Mapping[str, Any]) -> "ActionEvent":
        """从上游 dict 构造事件（接受 datetime 时间戳与字符串类型）"""
        if not isinstance(raw, Mapping):
            raise InputError("event payload must be a mapping")
        if "timestamp" not in raw:
            raise InputError("missing timestamp")

        event = cls(
            actor_id=raw.get("actor_id"),  # type: ignore[arg-type]
            target_author_id=raw.get("target_author_id"),  # type: ignore[arg-type]
            action_type=raw.get("action_type"),  # type: ignore[arg-type]
            timestamp=timestamp_seconds(raw["timestamp"]),
            event_id=str(raw.get("event_id") or uuid.uuid4().hex),
            metadata=dict(raw.get("metadata") or {}),
        )
        event.validate()
        return event
