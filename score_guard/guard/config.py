from __future__ import annotations

import math
import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from ..schemas.action_event import ActionType


CONFIG_ENV_VAR = "SCORE_GUARD_CONFIG"

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, "d": 86400.0}


def parse_duration(value: Any) -> float:
    """'30s' / '10m' / '1h' / '7d' / 数字 -> 秒"""
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = _DURATION_RE.match(value.lower())
        if match:
            return float(match.group(1)) * _DURATION_UNITS[match.group(2) or "s"]
    raise ValueError(f"Invalid duration: {value!r}")


@dataclass
class WindowSpec:
    name: str
    duration_sec: float
    count_threshold: int
    # None -> duration/60，最小 1 秒
    bucket_sec: Optional[float] = None

    @property
    def granularity(self) -> float:
        if self.bucket_sec is not None:
            return float(self.bucket_sec)
        return max(1.0, self.duration_sec / 60.0)

    @property
    def bucket_count(self) -> int:
        return max(1, math.ceil(self.duration_sec / self.granularity))


def _default_windows() -> List[WindowSpec]:
    return [
        WindowSpec(name="1m", duration_sec=60.0, count_threshold=100, bucket_sec=1.0),
        WindowSpec(name="10m", duration_sec=600.0, count_threshold=300),
        WindowSpec(name="1h", duration_sec=3600.0, count_threshold=1000),
    ]


@dataclass
class CoordinationConfig:
    min_distinct_actors: int = 20
    min_ratio: float = 0.8
    max_actors_per_window: int = 5000
    # 跨 target 重合度（actor 们同时还在针对哪些作者），只用于标注 trip 原因
    overlap_min_actors: int = 5
    overlap_threshold: float = 0.6
    overlap_sample: int = 32
    max_targets_per_actor: int = 16
    max_indexed_actors: int = 100_000


@dataclass
class PolicyConfig:
    # 达到阈值的该比例时进入 warn
    warn_fraction: float = 0.8


@dataclass
class BreakerConfig:
    cool_down_sec: float = 3600.0
    probe_count: int = 5
    max_transitions_kept: int = 32


@dataclass
class EvictionConfig:
    idle_eviction_sec: float = 7200.0
    sweep_interval_sec: float = 60.0


@dataclass
class EmitterConfig:
    queue_size: int = 1000
    drain_interval_sec: float = 0.5
    drain_batch: int = 256


@dataclass
class GuardConfig:
    version: int = 1
    windows: List[WindowSpec] = field(default_factory=_default_windows)
    coordination: CoordinationConfig = field(default_factory=CoordinationConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    breaker: BreakerConfig = field(default_factory=BreakerConfig)
    eviction: EvictionConfig = field(default_factory=EvictionConfig)
    emitter: EmitterConfig = field(default_factory=EmitterConfig)
    late_event_grace_sec: float = 30.0
    # 事件时间最多允许领先 guard 时钟多少秒，超出视为非法输入
    max_clock_skew_sec: float = 300.0
    shard_count: int = 16
    tracked_actions: List[ActionType] = field(default_factory=lambda: list(ActionType))

    # -------------------------
    # 查询 / lookup
    # -------------------------

    def window(self, name: str) -> WindowSpec:
        for spec in self.windows:
            if spec.name == name:
                return spec
        raise KeyError(name)

    def windows_by_duration(self) -> List[WindowSpec]:
        return sorted(self.windows, key=lambda w: w.duration_sec)

    @property
    def longest_window_sec(self) -> float:
        return max(w.duration_sec for w in self.windows)

    def is_tracked(self, action_type: ActionType) -> bool:
        return action_type in self.tracked_actions

    def with_thresholds(self, **thresholds: int) -> "GuardConfig":
        """返回替换了部分窗口阈值的新快照（threshold tuning 用）"""
        windows = [
            replace(w, count_threshold=int(thresholds[w.name])) if w.name in thresholds else w
            for w in self.windows
        ]
        cfg = replace(self, windows=windows)
        cfg.validate()
        return cfg

    def validate(self) -> "GuardConfig":
        if self.version != 1:
            raise ValueError(f"Unsupported guard config version: {self.version}")
        if not self.windows:
            raise ValueError("At least one window is required")

        names = [w.name for w in self.windows]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate window names: {names}")
        for w in self.windows:
            if w.duration_sec <= 0:
                raise ValueError(f"Window {w.name}: duration must be > 0")
            if w.count_threshold < 1:
                raise ValueError(f"Window {w.name}: count_threshold must be >= 1")
            if w.granularity <= 0 or w.granularity > w.duration_sec:
                raise ValueError(f"Window {w.name}: invalid bucket size {w.granularity}")

        co = self.coordination
        if co.min_distinct_actors < 1:
            raise ValueError("min_distinct_actors must be >= 1")
        if not 0.0 < co.min_ratio <= 1.0:
            raise ValueError("min_ratio must be in (0, 1]")
        if co.max_actors_per_window < co.min_distinct_actors:
            raise ValueError("max_actors_per_window must be >= min_distinct_actors")
        if co.overlap_min_actors < 2:
            raise ValueError("overlap_min_actors must be >= 2")
        if not 0.0 < co.overlap_threshold <= 1.0:
            raise ValueError("overlap_threshold must be in (0, 1]")
        if co.overlap_sample < co.overlap_min_actors:
            raise ValueError("overlap_sample must be >= overlap_min_actors")
        if co.max_targets_per_actor < 1 or co.max_indexed_actors < 1:
            raise ValueError("actor index bounds must be >= 1")

        if not 0.0 < self.policy.warn_fraction <= 1.0:
            raise ValueError("warn_fraction must be in (0, 1]")
        if self.breaker.cool_down_sec <= 0:
            raise ValueError("cool_down must be > 0")
        if self.breaker.probe_count < 1:
            raise ValueError("probe_count must be >= 1")
        if self.late_event_grace_sec < 0:
            raise ValueError("late_event_grace_period must be >= 0")
        if self.max_clock_skew_sec < 0:
            raise ValueError("max_clock_skew must be >= 0")

        # 空闲回收不能早于冷却 / 最长窗口结束，否则 open 记录会被提前抹掉
        min_idle = max(self.breaker.cool_down_sec, self.longest_window_sec)
        if self.eviction.idle_eviction_sec < min_idle:
            raise ValueError(
                f"idle_eviction ({self.eviction.idle_eviction_sec}s) must be >= "
                f"max(cool_down, longest window) = {min_idle}s"
            )
        if self.shard_count < 1:
            raise ValueError("shard_count must be >= 1")
        if self.emitter.queue_size < 1:
            raise ValueError("emitter.queue_size must be >= 1")
        return self

    @staticmethod
    def default() -> "GuardConfig":
        return GuardConfig()

    # -------------------------
    # 加载 / loading
    # -------------------------

    @staticmethod
    def _parse_windows(raw: Any) -> List[WindowSpec]:
        if not raw:
            return _default_windows()
        windows: List[WindowSpec] = []
        for item in raw:
            item = item or {}
            bucket = item.get("bucket")
            windows.append(WindowSpec(
                name=str(item["name"]),
                duration_sec=parse_duration(item["duration"]),
                count_threshold=int(item["count_threshold"]),
                bucket_sec=parse_duration(bucket) if bucket is not None else None,
            ))
        return windows

    @staticmethod
    def _parse_actions(raw: Any) -> List[ActionType]:
        if not raw:
            return list(ActionType)
        return [ActionType(str(a).strip().lower()) for a in raw]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GuardConfig":
        version = data.get("version", 1)
        if version != 1:
            raise ValueError(f"Unsupported guard config version: {version}")

        cfg = cls(version=version)
        cfg.windows = cls._parse_windows(data.get("windows"))

        co = data.get("coordination", {}) or {}
        cfg.coordination = CoordinationConfig(
            min_distinct_actors=int(co.get("min_distinct_actors", cfg.coordination.min_distinct_actors)),
            min_ratio=float(co.get("min_ratio", cfg.coordination.min_ratio)),
            max_actors_per_window=int(co.get("max_actors_per_window", cfg.coordination.max_actors_per_window)),
            overlap_min_actors=int(co.get("overlap_min_actors", cfg.coordination.overlap_min_actors)),
            overlap_threshold=float(co.get("overlap_threshold", cfg.coordination.overlap_threshold)),
            overlap_sample=int(co.get("overlap_sample", cfg.coordination.overlap_sample)),
            max_targets_per_actor=int(co.get("max_targets_per_actor", cfg.coordination.max_targets_per_actor)),
            max_indexed_actors=int(co.get("max_indexed_actors", cfg.coordination.max_indexed_actors)),
        )

        pol = data.get("policy", {}) or {}
        cfg.policy = PolicyConfig(
            warn_fraction=float(pol.get("warn_fraction", cfg.policy.warn_fraction)),
        )

        br = data.get("breaker", {}) or {}
        cfg.breaker = BreakerConfig(
            cool_down_sec=parse_duration(br.get("cool_down", cfg.breaker.cool_down_sec)),
            probe_count=int(br.get("probe_count", cfg.breaker.probe_count)),
            max_transitions_kept=int(br.get("max_transitions_kept", cfg.breaker.max_transitions_kept)),
        )

        ev = data.get("eviction", {}) or {}
        cfg.eviction = EvictionConfig(
            idle_eviction_sec=parse_duration(ev.get("idle_eviction", cfg.eviction.idle_eviction_sec)),
            sweep_interval_sec=parse_duration(ev.get("sweep_interval", cfg.eviction.sweep_interval_sec)),
        )

        em = data.get("emitter", {}) or {}
        cfg.emitter = EmitterConfig(
            queue_size=int(em.get("queue_size", cfg.emitter.queue_size)),
            drain_interval_sec=parse_duration(em.get("drain_interval", cfg.emitter.drain_interval_sec)),
            drain_batch=int(em.get("drain_batch", cfg.emitter.drain_batch)),
        )

        cfg.late_event_grace_sec = parse_duration(
            data.get("late_event_grace_period", cfg.late_event_grace_sec)
        )
        cfg.max_clock_skew_sec = parse_duration(data.get("max_clock_skew", cfg.max_clock_skew_sec))
        cfg.shard_count = int(data.get("shard_count", cfg.shard_count))
        cfg.tracked_actions = cls._parse_actions(data.get("tracked_actions"))

        return cfg.validate()

    @classmethod
    def from_yaml(cls, path: str | Path) -> "GuardConfig":
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_yaml_text(f.read())

    @classmethod
    def from_yaml_text(cls, text: str) -> "GuardConfig":
        raw = yaml.safe_load(text) or {}
        data: Dict[str, Any] = raw if isinstance(raw, dict) else {}
        return cls.from_dict(data)

    @classmethod
    def from_env(cls) -> "GuardConfig":
        """读取 .env / 环境变量 SCORE_GUARD_CONFIG 指向的 YAML，未设置时用默认值"""
        load_dotenv()
        path = os.getenv(CONFIG_ENV_VAR)
        if not path:
            return cls.default()
        return cls.from_yaml(path)
