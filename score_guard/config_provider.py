# score_guard/config_provider.py
# =========================
# GuardConfig 热加载 + 变更摘要
# Hot-reloadable GuardConfig with change summaries
# =========================

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, Optional, Tuple

from .guard.config import GuardConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfigChange:
    """两份快照之间的差异"""
    source: str
    thresholds: Dict[str, Tuple[Optional[int], Optional[int]]] = field(default_factory=dict)
    sections: Tuple[str, ...] = ()
    layout_changed: bool = False

    @property
    def empty(self) -> bool:
        return not self.sections

    def describe(self) -> str:
        if self.empty:
            return "no effective change"
        parts = [
            f"{name} threshold {old if old is not None else '-'} -> {new if new is not None else '-'}"
            for name, (old, new) in sorted(self.thresholds.items())
        ]
        others = [s for s in self.sections if s != "windows"]
        if others:
            parts.append("changed: " + ", ".join(others))
        if self.layout_changed:
            parts.append("window layout changed (new targets only)")
        return "; ".join(parts)


def _layout(cfg: GuardConfig) -> Tuple:
    """只对新建 target 生效的部分；已存在的 target 保留创建时的布局直到被回收"""
    return (
        tuple((w.name, w.duration_sec, w.granularity) for w in cfg.windows),
        cfg.coordination.max_actors_per_window,
        cfg.late_event_grace_sec,
        cfg.shard_count,
    )


def diff_configs(old: GuardConfig, new: GuardConfig, *, source: str) -> ConfigChange:
    old_thresholds = {w.name: w.count_threshold for w in old.windows}
    new_thresholds = {w.name: w.count_threshold for w in new.windows}
    thresholds = {
        name: (old_thresholds.get(name), new_thresholds.get(name))
        for name in set(old_thresholds) | set(new_thresholds)
        if old_thresholds.get(name) != new_thresholds.get(name)
    }
    sections = tuple(
        f.name for f in fields(GuardConfig)
        if getattr(old, f.name) != getattr(new, f.name)
    )
    return ConfigChange(
        source=source,
        thresholds=thresholds,
        sections=sections,
        layout_changed=_layout(old) != _layout(new),
    )


class GuardConfigProvider:
    """
    YAML 配置的快照提供者。

    - 每次轮询只读一次文件字节，digest 与解析用同一份内容
    - 解析或校验失败时保留上一份有效快照；同一份坏内容只告警一次
    - 每次生效的变化记录为 last_change，供日志与运维查看
    """

    def __init__(self, config_path: str | Path) -> None:
        self._path = Path(config_path)
        self._ref: GuardConfig = GuardConfig.default()
        self._digest: Optional[str] = None
        self._rejected_digest: Optional[str] = None

        self.last_change: Optional[ConfigChange] = None
        self.reloads_total: int = 0
        self.failures_total: int = 0

        self.force_reload()

    @property
    def path(self) -> Path:
        return self._path

    def snapshot(self) -> GuardConfig:
        return self._ref

    def reload_if_changed(self) -> bool:
        """文件内容变化且产生了有效差异时切换快照，返回是否切换"""
        data = self._read()
        if data is None:
            return False
        digest = hashlib.sha256(data).hexdigest()
        if digest == self._digest or digest == self._rejected_digest:
            return False
        return self._apply(data, digest)

    def force_reload(self) -> bool:
        data = self._read()
        if data is None:
            return False
        return self._apply(data, hashlib.sha256(data).hexdigest())

    def update_thresholds(self, **thresholds: int) -> bool:
        """按窗口名替换阈值（threshold tuning），返回是否发生变化"""
        try:
            tuned = self._ref.with_thresholds(**thresholds)
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Guard threshold update rejected: {e}")
            return False
        return self._switch(tuned, source="tuning")

    # -------------------------
    # 内部
    # -------------------------

    def _read(self) -> Optional[bytes]:
        try:
            return self._path.read_bytes()
        except OSError as e:
            logger.warning(f"Guard config unreadable at {self._path}: {e}")
            return None

    def _apply(self, data: bytes, digest: str) -> bool:
        try:
            cfg = GuardConfig.from_yaml_text(data.decode("utf-8"))
        except Exception as e:
            self.failures_total += 1
            if digest != self._rejected_digest:
                logger.warning(f"Guard config at {self._path} rejected, keeping previous snapshot: {e}")
            self._rejected_digest = digest
            return False

        self._digest = digest
        self._rejected_digest = None
        return self._switch(cfg, source=str(self._path))

    def _switch(self, cfg: GuardConfig, *, source: str) -> bool:
        change = diff_configs(self._ref, cfg, source=source)
        if change.empty:
            return False

        self._ref = cfg
        self.last_change = change
        self.reloads_total += 1
        logger.info(f"Guard config updated from {source}: {change.describe()}")
        if change.layout_changed:
            logger.warning(
                "Guard window layout changed; existing targets keep their current layout until evicted"
            )
        return True
