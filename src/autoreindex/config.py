"""Settings: defaults, optional YAML config file, CLI overrides."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import yaml

from autoreindex.engine.window import MaintenanceWindow, parse_hhmm
from autoreindex.models import SortOrder
from autoreindex.postgres.db import ConnectionParams
from autoreindex.postgres.scanner import MB, EstimateStrategy, ExactScanStrategy, ScanThresholds

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

STRATEGY_NAMES = (EstimateStrategy.name, ExactScanStrategy.name)


class ConfigError(Exception):
    """Invalid configuration value; fatal before any work starts."""


class GateScope(enum.Enum):
    """What a closed maintenance window or a standby server stops."""

    ABORT_RUN = "abort-run"
    SKIP_DATABASE = "skip-database"


# Keys accepted in the YAML file and as CLI overrides, with their defaults.
DEFAULTS: dict[str, Any] = {
    "host": None,
    "port": None,
    "username": None,
    "dbname": [],
    "exclude_database": [],
    "maintenance_db": "postgres",
    "connect_timeout": 10,
    "bloat_threshold": 30,
    "index_min_size": 1,
    "index_max_size": 1_000_000,
    "maintenance_start": None,
    "maintenance_stop": None,
    "bloat_detection_strategy": EstimateStrategy.name,
    "failed_reindex_limit": 0,
    "parallel_workers": 0,
    "sort_order": SortOrder.ASC.value,
    "lock_timeout": 1000,
    "create_extensions": True,
    "on_blocked": GateScope.ABORT_RUN.value,
    "syslog": True,
    "repack_command": "pg_repack",
}


@dataclass(frozen=True)
class Settings:
    """Validated configuration of one invocation."""

    connection: ConnectionParams = field(default_factory=ConnectionParams)
    databases: tuple[str, ...] = ()
    exclude_databases: tuple[str, ...] = ()
    bloat_threshold: float = 30.0
    min_index_size_mb: int = 1
    max_index_size_mb: int = 1_000_000
    maintenance_window: MaintenanceWindow | None = None
    strategy: str = EstimateStrategy.name
    failed_reindex_limit: int = 0
    parallel_workers: int = 0
    sort_order: SortOrder = SortOrder.ASC
    lock_timeout_ms: int = 1000
    create_extensions: bool = True
    gate_scope: GateScope = GateScope.ABORT_RUN
    syslog: bool = True
    repack_command: str = "pg_repack"

    def thresholds(self) -> ScanThresholds:
        return ScanThresholds(
            bloat_threshold=self.bloat_threshold,
            min_size_bytes=self.min_index_size_mb * MB,
            max_size_bytes=self.max_index_size_mb * MB,
            sort_order=self.sort_order,
        )


def read_config_file(path: Path) -> dict[str, Any]:
    """Load a YAML mapping of option names to values."""
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"config file {path} is not valid YAML: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping")

    normalized = {str(k).replace("-", "_"): v for k, v in data.items()}
    unknown = sorted(set(normalized) - set(DEFAULTS))
    if unknown:
        raise ConfigError(f"unknown config key(s) in {path}: {', '.join(unknown)}")
    return normalized


def _as_list(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(v.strip() for v in value.split(",") if v.strip())
    return tuple(str(v) for v in value)


def _as_int(raw: dict[str, Any], key: str, *, minimum: int = 0) -> int:
    value = raw[key]
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be an integer, got {value!r}") from exc
    if number < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {number}")
    return number


def _as_choice(raw: dict[str, Any], key: str, choices: tuple[str, ...]) -> str:
    value = str(raw[key]).lower()
    if value not in choices:
        raise ConfigError(f"{key} must be one of {', '.join(choices)}, got {raw[key]!r}")
    return value


def _window(raw: dict[str, Any]) -> MaintenanceWindow | None:
    start, stop = raw["maintenance_start"], raw["maintenance_stop"]
    if start is None and stop is None:
        return None
    if start is None or stop is None:
        raise ConfigError("maintenance_start and maintenance_stop must be given together")
    try:
        # Unquoted YAML times such as 2300 arrive as ints; 0230 must be quoted.
        return MaintenanceWindow(parse_hhmm(_hhmm(start)), parse_hhmm(_hhmm(stop)))
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc


def _hhmm(value: Any) -> str:
    if isinstance(value, int):
        return f"{value:04d}"
    return str(value)


def build_settings(raw: dict[str, Any]) -> Settings:
    """Validate a merged option mapping into :class:`Settings`."""
    try:
        threshold = float(raw["bloat_threshold"])
    except (TypeError, ValueError) as exc:
        raise ConfigError(
            f"bloat_threshold must be a number, got {raw['bloat_threshold']!r}"
        ) from exc
    if not 0 <= threshold <= 100:
        raise ConfigError(f"bloat_threshold must be between 0 and 100, got {threshold:g}")

    min_size = _as_int(raw, "index_min_size")
    max_size = _as_int(raw, "index_max_size")
    if min_size > max_size:
        raise ConfigError(f"index_min_size ({min_size}) is larger than index_max_size ({max_size})")

    port = raw["port"]
    connection = ConnectionParams(
        host=raw["host"] or None,
        port=_as_int(raw, "port", minimum=1) if port is not None else None,
        username=raw["username"] or None,
        maintenance_db=str(raw["maintenance_db"]),
        connect_timeout=_as_int(raw, "connect_timeout", minimum=1),
    )

    return Settings(
        connection=connection,
        databases=_as_list(raw["dbname"]),
        exclude_databases=_as_list(raw["exclude_database"]),
        bloat_threshold=threshold,
        min_index_size_mb=min_size,
        max_index_size_mb=max_size,
        maintenance_window=_window(raw),
        strategy=_as_choice(raw, "bloat_detection_strategy", STRATEGY_NAMES),
        failed_reindex_limit=_as_int(raw, "failed_reindex_limit"),
        parallel_workers=_as_int(raw, "parallel_workers"),
        sort_order=SortOrder(_as_choice(raw, "sort_order", tuple(o.value for o in SortOrder))),
        lock_timeout_ms=_as_int(raw, "lock_timeout", minimum=1),
        create_extensions=bool(raw["create_extensions"]),
        gate_scope=GateScope(_as_choice(raw, "on_blocked", tuple(s.value for s in GateScope))),
        syslog=bool(raw["syslog"]),
        repack_command=str(raw["repack_command"]),
    )


def load_settings(
    config_path: Path | None = None, overrides: dict[str, Any] | None = None
) -> Settings:
    """Merge defaults, the config file and explicit overrides (``None`` means unset)."""
    raw = dict(DEFAULTS)
    if config_path is not None:
        raw.update(read_config_file(config_path))
        logger.debug("Loaded config file %s", config_path)
    for key, value in (overrides or {}).items():
        if key not in DEFAULTS:
            raise ConfigError(f"unknown option {key!r}")
        if value is None or value == ():
            continue
        raw[key] = value
    return build_settings(raw)
