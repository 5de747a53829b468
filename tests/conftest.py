# tests/conftest.py
# Pytest 配置

import asyncio
import inspect

import pytest

from score_guard.guard.config import (
    BreakerConfig,
    CoordinationConfig,
    EvictionConfig,
    GuardConfig,
    WindowSpec,
)


def pytest_addoption(parser):
    """兼容没有 pytest-asyncio 插件时的 ini 配置。"""
    parser.addini(
        "asyncio_mode",
        "Compatibility option when pytest-asyncio is unavailable",
        default="auto",
    )


def pytest_configure(config):
    """注册自定义 marker"""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (requires external services)"
    )
    config.addinivalue_line(
        "markers", "offline: mark test as offline test (no external services required)"
    )
    config.addinivalue_line(
        "markers", "asyncio: mark test as asyncio coroutine test"
    )


# 默认给所有不标记的测试加上 offline marker
def pytest_collection_modifyitems(config, items):
    """自动标记没有 marker 的测试为 offline"""
    for item in items:
        if "integration" not in item.keywords:
            item.add_marker(pytest.mark.offline)


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """
    当 pytest-asyncio 不可用时，兜底执行 async 测试函数。
    """
    plugin_manager = pyfuncitem.config.pluginmanager
    if plugin_manager.hasplugin("pytest_asyncio") or plugin_manager.hasplugin("asyncio"):
        return None

    test_function = pyfuncitem.obj
    if not inspect.iscoroutinefunction(test_function):
        return None

    test_args = {
        arg: pyfuncitem.funcargs[arg]
        for arg in pyfuncitem._fixtureinfo.argnames
    }
    asyncio.run(test_function(**test_args))
    return True


class FakeClock:
    """可手动推进的时钟（用于空闲回收）；默认领先测试事件时间 T0=1_000_000，不会触发超前拒绝"""

    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock(2_000_000.0)


@pytest.fixture
def scenario_config():
    """1m 窗口阈值 200、minDistinctActors=20、minRatio=0.8 的测试配置工厂"""

    def _make(
        *,
        threshold_1m: int = 200,
        threshold_10m: int = 1000,
        cool_down_sec: float = 120.0,
        probe_count: int = 3,
        idle_eviction_sec: float = 900.0,
        max_actors: int = 1000,
        **kwargs,
    ) -> GuardConfig:
        cfg = GuardConfig(
            windows=[
                WindowSpec(name="1m", duration_sec=60.0, count_threshold=threshold_1m, bucket_sec=1.0),
                WindowSpec(name="10m", duration_sec=600.0, count_threshold=threshold_10m),
            ],
            coordination=CoordinationConfig(
                min_distinct_actors=20,
                min_ratio=0.8,
                max_actors_per_window=max_actors,
            ),
            breaker=BreakerConfig(cool_down_sec=cool_down_sec, probe_count=probe_count),
            eviction=EvictionConfig(idle_eviction_sec=idle_eviction_sec, sweep_interval_sec=0.02),
            late_event_grace_sec=30.0,
            **kwargs,
        )
        return cfg.validate()

    return _make
