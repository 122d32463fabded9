"""Configuration for polydoc services and backends."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields


@dataclass
class PolydocConfig:
    """Configuration for the database service and its backends."""

    database_name: str = "default"
    local_root: str | None = None
    contention_max_attempts: int = 5
    contention_retry_delay_s: float = 5.0
    mutex_ttl_s: float = 60.0
    mutex_acquire_timeout_s: float = 60.0
    auto_sort_arrays: bool = False
    auto_convert_roundable_float_to_int: bool = False
    dynamodb_region: str | None = None
    dynamodb_endpoint_url: str | None = None
    dynamodb_request_timeout_s: float = 10.0
    mongo_database: str | None = None
    mongo_server_selection_timeout_ms: int = 5000


_TRUE_VALUES = {"1", "true", "yes", "on"}


def config_from_env(environ: dict[str, str] | None = None) -> PolydocConfig:
    """Build a config from POLYDOC_* environment variables, e.g. POLYDOC_DATABASE_NAME."""
    env = os.environ if environ is None else environ
    cfg = PolydocConfig()
    for f in fields(PolydocConfig):
        raw = env.get(f"POLYDOC_{f.name.upper()}")
        if raw is None or raw == "":
            continue
        default = getattr(cfg, f.name)
        if isinstance(default, bool):
            value: object = raw.strip().lower() in _TRUE_VALUES
        elif isinstance(default, int):
            value = int(raw)
        elif isinstance(default, float):
            value = float(raw)
        else:
            value = raw
        setattr(cfg, f.name, value)
    return cfg
