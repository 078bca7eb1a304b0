"""Tests for autoreindex.config — defaults, YAML file, overrides, validation."""

from __future__ import annotations

from datetime import time
from typing import TYPE_CHECKING, Any

import pytest
import yaml
from fakes import MB

from autoreindex.config import ConfigError, GateScope, load_settings
from autoreindex.models import SortOrder

if TYPE_CHECKING:
    from pathlib import Path


def _write(tmp_path: Path, data: Any) -> Path:
    path = tmp_path / "autoreindex.yml"
    path.write_text(yaml.dump(data), encoding="utf-8")
    return path


class TestDefaults:
    def test_values(self) -> None:
        settings = load_settings()

        assert settings.bloat_threshold == 30
        assert settings.min_index_size_mb == 1
        assert settings.max_index_size_mb == 1_000_000
        assert settings.maintenance_window is None
        assert settings.strategy == "estimate"
        assert settings.failed_reindex_limit == 0
        assert settings.parallel_workers == 0
        assert settings.sort_order is SortOrder.ASC
        assert settings.gate_scope is GateScope.ABORT_RUN
        assert settings.databases == ()
        assert settings.connection.maintenance_db == "postgres"

    def test_thresholds(self) -> None:
        settings = load_settings(overrides={"index_min_size": 2, "index_max_size": 5})
        thresholds = settings.thresholds()
        assert thresholds.min_size_bytes == 2 * MB
        assert thresholds.max_size_bytes == 5 * MB
        assert thresholds.bloat_threshold == 30


class TestConfigFile:
    def test_reads_values(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            {
                "host": "db1",
                "port": 5433,
                "dbname": ["app", "billing"],
                "bloat-threshold": 45,
                "maintenance_start": "2200",
                "maintenance_stop": "0400",
                "sort_order": "desc",
                "on_blocked": "skip-database",
            },
        )

        settings = load_settings(path)

        assert settings.connection.host == "db1"
        assert settings.connection.port == 5433
        assert settings.databases == ("app", "billing")
        assert settings.bloat_threshold == 45
        assert settings.maintenance_window is not None
        assert settings.maintenance_window.start == time(22, 0)
        assert settings.maintenance_window.crosses_midnight
        assert settings.sort_order is SortOrder.DESC
        assert settings.gate_scope is GateScope.SKIP_DATABASE

    def test_unquoted_time(self, tmp_path: Path) -> None:
        path = tmp_path / "c.yml"
        path.write_text("maintenance_start: 2300\nmaintenance_stop: '0130'\n", encoding="utf-8")
        window = load_settings(path).maintenance_window
        assert window is not None
        assert window.start == time(23, 0)

    def test_overrides_win(self, tmp_path: Path) -> None:
        path = _write(tmp_path, {"bloat_threshold": 45, "parallel_workers": 2})

        settings = load_settings(path, {"bloat_threshold": 60, "parallel_workers": None})

        assert settings.bloat_threshold == 60
        assert settings.parallel_workers == 2

    def test_empty_tuple_override_is_unset(self, tmp_path: Path) -> None:
        path = _write(tmp_path, {"dbname": "app, billing"})
        assert load_settings(path, {"dbname": ()}).databases == ("app", "billing")

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yml"
        path.write_text("", encoding="utf-8")
        assert load_settings(path).bloat_threshold == 30

    def test_unknown_key(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="unknown config key"):
            load_settings(_write(tmp_path, {"bloat_treshold": 10}))

    def test_not_a_mapping(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="mapping"):
            load_settings(_write(tmp_path, ["a", "b"]))

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yml"
        path.write_text("host: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="not valid YAML"):
            load_settings(path)


class TestValidation:
    @pytest.mark.parametrize(
        ("overrides", "message"),
        [
            ({"bloat_threshold": 101}, "between 0 and 100"),
            ({"bloat_threshold": -1}, "between 0 and 100"),
            ({"bloat_threshold": "lots"}, "must be a number"),
            ({"index_min_size": 10, "index_max_size": 5}, "larger than"),
            ({"index_min_size": -1}, ">= 0"),
            ({"failed_reindex_limit": -2}, ">= 0"),
            ({"parallel_workers": -1}, ">= 0"),
            ({"lock_timeout": 0}, ">= 1"),
            ({"port": 0}, ">= 1"),
            ({"bloat_detection_strategy": "guess"}, "estimate, exact-scan"),
            ({"sort_order": "sideways"}, "asc, desc"),
            ({"on_blocked": "panic"}, "abort-run, skip-database"),
            ({"maintenance_start": "0100"}, "together"),
            ({"maintenance_start": "25:00", "maintenance_stop": "0100"}, "HHMM"),
        ],
    )
    def test_rejects(self, overrides: dict[str, Any], message: str) -> None:
        with pytest.raises(ConfigError, match=message):
            load_settings(overrides=overrides)

    def test_unknown_override(self) -> None:
        with pytest.raises(ConfigError, match="unknown option"):
            load_settings(overrides={"colour": "blue"})

    def test_choices_are_case_insensitive(self) -> None:
        assert load_settings(overrides={"sort_order": "DESC"}).sort_order is SortOrder.DESC
