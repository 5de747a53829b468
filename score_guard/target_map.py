from __future__ import annotations

import threading
import zlib
from typing import Callable, Dict, List, Optional, Tuple

from .target_state import TargetState


class _Shard:
    __slots__ = ("lock", "states")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.states: Dict[str, TargetState] = {}


class ShardedTargetMap:
    """
    target_author_id -> TargetState，按 crc32(target_id) 分片加锁。

    分片锁只保护 dict 本身且持有时间很短；pipeline 运行时持有的是 TargetState.lock。
    """

    def __init__(self, shard_count: int = 16) -> None:
        if shard_count < 1:
            raise ValueError("shard_count must be >= 1")
        self._shards: List[_Shard] = [_Shard() for _ in range(shard_count)]

    def _shard(self, target_author_id: str) -> _Shard:
        idx = zlib.crc32(target_author_id.encode("utf-8")) % len(self._shards)
        return self._shards[idx]

    def get(self, target_author_id: str) -> Optional[TargetState]:
        shard = self._shard(target_author_id)
        with shard.lock:
            return shard.states.get(target_author_id)

    def get_or_create(
        self,
        target_author_id: str,
        factory: Callable[[], TargetState],
    ) -> TargetState:
        shard = self._shard(target_author_id)
        with shard.lock:
            state = shard.states.get(target_author_id)
            if state is None:
                state = factory()
                shard.states[target_author_id] = state
            return state

    def snapshot(self) -> List[Tuple[str, TargetState]]:
        """逐分片复制一份 (key, state) 列表，供回收扫描在锁外判断"""
        items: List[Tuple[str, TargetState]] = []
        for shard in self._shards:
            with shard.lock:
                items.extend(shard.states.items())
        return items

    def remove_if(
        self,
        target_author_id: str,
        predicate: Callable[[TargetState], bool],
    ) -> Optional[TargetState]:
        """
        在分片锁内复核 predicate 后删除；target 正在被处理（锁被占用）时直接跳过，
        不阻塞在线写入。
        """
        shard = self._shard(target_author_id)
        with shard.lock:
            state = shard.states.get(target_author_id)
            if state is None:
                return None
            if not state.lock.acquire(blocking=False):
                return None
            try:
                if not predicate(state):
                    return None
                state.evicted = True
                del shard.states[target_author_id]
                return state
            finally:
                state.lock.release()

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.states)
        return total

    def __contains__(self, target_author_id: object) -> bool:
        if not isinstance(target_author_id, str):
            return False
        return self.get(target_author_id) is not None
