from __future__ import annotations

import os
from pathlib import Path

import pytest

from score_guard.config_provider import GuardConfigProvider
from score_guard.guard.config import CONFIG_ENV_VAR, GuardConfig, parse_duration
from score_guard.schemas.action_event import ActionType

SAMPLE_CONFIG = Path(__file__).resolve().parents[1] / "config" / "guard.yaml"


def test_guard_config_loading_sample_file():
    cfg = GuardConfig.from_yaml(SAMPLE_CONFIG)

    assert [w.name for w in cfg.windows] == ["1m", "10m", "1h"]
    assert cfg.window("1m").count_threshold == 100
    assert cfg.window("1m").granularity == 1.0
    assert cfg.window("10m").granularity == 10.0
    assert cfg.window("1h").bucket_count == 60
    assert cfg.coordination.min_distinct_actors == 20
    assert cfg.coordination.min_ratio == 0.8
    assert cfg.breaker.cool_down_sec == 3600.0
    assert cfg.breaker.probe_count == 5
    assert cfg.eviction.idle_eviction_sec == 7200.0
    assert cfg.late_event_grace_sec == 30.0
    assert cfg.max_clock_skew_sec == 300.0
    assert cfg.coordination.overlap_min_actors == 5
    assert cfg.coordination.overlap_threshold == 0.6
    assert cfg.coordination.max_targets_per_actor == 16
    assert set(cfg.tracked_actions) == set(ActionType)


def test_parse_duration_units():
    assert parse_duration("30s") == 30.0
    assert parse_duration("10m") == 600.0
    assert parse_duration("1h") == 3600.0
    assert parse_duration("7d") == 7 * 86400.0
    assert parse_duration("250ms") == 0.25
    assert parse_duration("45") == 45.0
    assert parse_duration(12) == 12.0

    for bad in ("ten minutes", "5w", "", True, None):
        with pytest.raises(ValueError):
            parse_duration(bad)


def test_guard_config_rejects_unknown_version(tmp_path: Path):
    path = tmp_path / "guard.yaml"
    path.write_text("version: 2\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Unsupported guard config version"):
        GuardConfig.from_yaml(path)


def test_empty_file_gives_defaults(tmp_path: Path):
    path = tmp_path / "guard.yaml"
    path.write_text("", encoding="utf-8")
    cfg = GuardConfig.from_yaml(path)
    assert [w.name for w in cfg.windows] == ["1m", "10m", "1h"]


@pytest.mark.parametrize(
    "body, message",
    [
        ("coordination:\n  min_ratio: 1.5\n", "min_ratio"),
        ("coordination:\n  min_distinct_actors: 50\n  max_actors_per_window: 10\n", "max_actors_per_window"),
        ("breaker:\n  probe_count: 0\n", "probe_count"),
        ("breaker:\n  cool_down: 3h\n", "idle_eviction"),
        (
            "windows:\n"
            "  - {name: 1m, duration: 1m, count_threshold: 10}\n"
            "  - {name: 1m, duration: 10m, count_threshold: 20}\n",
            "Duplicate window names",
        ),
        ("windows:\n  - {name: 1m, duration: 1m, count_threshold: 0}\n", "count_threshold"),
        ("windows:\n  - {name: 1m, duration: 1m, count_threshold: 5, bucket: 2m}\n", "bucket size"),
        ("coordination:\n  overlap_threshold: 0\n", "overlap_threshold"),
        ("coordination:\n  overlap_min_actors: 8\n  overlap_sample: 4\n", "overlap_sample"),
        ("coordination:\n  max_indexed_actors: 0\n", "actor index bounds"),
        ("max_clock_skew: -5\n", "max_clock_skew"),
    ],
)
def test_guard_config_validation_errors(tmp_path: Path, body: str, message: str):
    path = tmp_path / "guard.yaml"
    path.write_text("version: 1\n" + body, encoding="utf-8")
    with pytest.raises(ValueError, match=message):
        GuardConfig.from_yaml(path)


def test_tracked_actions_are_parsed_case_insensitively(tmp_path: Path):
    path = tmp_path / "guard.yaml"
    path.write_text("version: 1\ntracked_actions: [Block, REPORT]\n", encoding="utf-8")
    cfg = GuardConfig.from_yaml(path)

    assert cfg.tracked_actions == [ActionType.BLOCK, ActionType.REPORT]
    assert cfg.is_tracked(ActionType.BLOCK)
    assert not cfg.is_tracked(ActionType.MUTE)


def test_from_env_reads_configured_path(tmp_path: Path, monkeypatch):
    path = tmp_path / "guard.yaml"
    path.write_text(
        "version: 1\nwindows:\n  - {name: 5m, duration: 5m, count_threshold: 42}\n",
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv(CONFIG_ENV_VAR, str(path))

    cfg = GuardConfig.from_env()
    assert cfg.window("5m").count_threshold == 42

    monkeypatch.delenv(CONFIG_ENV_VAR)
    assert [w.name for w in GuardConfig.from_env().windows] == ["1m", "10m", "1h"]


def test_with_thresholds_returns_new_snapshot():
    base = GuardConfig.default()
    tuned = base.with_thresholds(**{"1m": 150})

    assert tuned is not base
    assert tuned.window("1m").count_threshold == 150
    assert base.window("1m").count_threshold == 100
    with pytest.raises(ValueError):
        base.with_thresholds(**{"1m": 0})


def test_guard_config_hot_reload(tmp_path: Path):
    path = tmp_path / "guard.yaml"
    path.write_text(
        """
version: 1
windows:
  - name: 1m
    duration: 1m
    count_threshold: 100
""",
        encoding="utf-8",
    )

    provider = GuardConfigProvider(path)
    cfg1 = provider.snapshot()
    assert cfg1.window("1m").count_threshold == 100
    old_mtime = path.stat().st_mtime

    # 修改配置
    path.write_text(
        """
version: 1
windows:
  - name: 1m
    duration: 1m
    count_threshold: 250
""",
        encoding="utf-8",
    )

    # 强制保持相同 mtime，模拟部分平台 mtime 精度问题
    os.utime(path, (old_mtime, old_mtime))

    changed = provider.reload_if_changed()
    cfg2 = provider.snapshot()

    assert changed is True
    assert cfg2 is not cfg1
    assert cfg2.window("1m").count_threshold == 250
    assert provider.reload_if_changed() is False


def test_broken_reload_keeps_previous_snapshot(tmp_path: Path):
    path = tmp_path / "guard.yaml"
    path.write_text("version: 1\n", encoding="utf-8")
    provider = GuardConfigProvider(path)
    cfg1 = provider.snapshot()

    path.write_text("version: 1\ncoordination:\n  min_ratio: 7\n", encoding="utf-8")

    assert provider.reload_if_changed() is False
    assert provider.snapshot() is cfg1


def test_provider_threshold_tuning(tmp_path: Path):
    path = tmp_path / "guard.yaml"
    path.write_text("version: 1\n", encoding="utf-8")
    provider = GuardConfigProvider(path)

    assert provider.update_thresholds(**{"10m": 300}) is False
    assert provider.update_thresholds(**{"10m": 500}) is True
    assert provider.snapshot().window("10m").count_threshold == 500
    assert provider.update_thresholds(**{"10m": -1}) is False


def test_reload_records_threshold_and_layout_changes(tmp_path: Path):
    path = tmp_path / "guard.yaml"
    path.write_text("version: 1\n", encoding="utf-8")
    provider = GuardConfigProvider(path)
    assert provider.last_change is None

    path.write_text(
        "version: 1\n"
        "windows:\n"
        "  - {name: 1m, duration: 1m, count_threshold: 80, bucket: 1s}\n"
        "  - {name: 10m, duration: 10m, count_threshold: 300}\n"
        "  - {name: 1h, duration: 1h, count_threshold: 1000}\n"
        "breaker:\n  probe_count: 2\n",
        encoding="utf-8",
    )
    assert provider.reload_if_changed() is True

    change = provider.last_change
    assert change.thresholds == {"1m": (100, 80)}
    assert set(change.sections) == {"windows", "breaker"}
    assert change.layout_changed is False
    assert change.describe() == "1m threshold 100 -> 80; changed: breaker"

    path.write_text(
        "version: 1\nwindows:\n  - {name: 5m, duration: 5m, count_threshold: 50}\n",
        encoding="utf-8",
    )
    assert provider.reload_if_changed() is True
    change = provider.last_change
    assert change.layout_changed is True
    assert change.thresholds["5m"] == (None, 50)
    assert change.thresholds["10m"] == (300, None)
    assert provider.reloads_total == 2


def test_comment_only_edit_is_not_a_reload(tmp_path: Path):
    path = tmp_path / "guard.yaml"
    path.write_text("version: 1\nshard_count: 8\n", encoding="utf-8")
    provider = GuardConfigProvider(path)
    cfg1 = provider.snapshot()

    path.write_text("# tuned by oncall\nversion: 1\nshard_count: 8\n", encoding="utf-8")

    assert provider.reload_if_changed() is False
    assert provider.snapshot() is cfg1


def test_same_broken_content_is_only_parsed_once(tmp_path: Path):
    path = tmp_path / "guard.yaml"
    path.write_text("version: 1\n", encoding="utf-8")
    provider = GuardConfigProvider(path)

    path.write_text("version: 1\nbreaker:\n  probe_count: 0\n", encoding="utf-8")
    assert provider.reload_if_changed() is False
    assert provider.reload_if_changed() is False
    assert provider.failures_total == 1

    path.write_text("version: 1\nbreaker:\n  probe_count: 2\n", encoding="utf-8")
    assert provider.reload_if_changed() is True
    assert provider.snapshot().breaker.probe_count == 2


def test_tuning_is_recorded_as_a_change(tmp_path: Path):
    path = tmp_path / "guard.yaml"
    path.write_text("version: 1\n", encoding="utf-8")
    provider = GuardConfigProvider(path)

    assert provider.update_thresholds(**{"1h": 1500}) is True
    assert provider.last_change.source == "tuning"
    assert provider.last_change.thresholds == {"1h": (1000, 1500)}
