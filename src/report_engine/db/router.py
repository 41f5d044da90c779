from __future__ import annotations

from typing import Dict, List, Type

from report_engine.data.models import SystemConfig
from report_engine.db.athena import AthenaAdapter
from report_engine.db.base import BackendAdapter
from report_engine.db.bigquery import BigQueryAdapter
from report_engine.db.duckdb_file import DuckDBAdapter
from report_engine.db.mysql import MySQLAdapter
from report_engine.db.postgres import PostgresAdapter
from report_engine.db.redshift import RedshiftAdapter
from report_engine.db.snowflake import SnowflakeAdapter
from report_engine.db.sqlite import SQLiteAdapter
from report_engine.db.sqlserver import SqlServerAdapter
from report_engine.exceptions.errors import UnsupportedEngine

_ADAPTERS: List[Type[BackendAdapter]] = [
    PostgresAdapter,
    MySQLAdapter,
    SqlServerAdapter,
    BigQueryAdapter,
    SnowflakeAdapter,
    AthenaAdapter,
    RedshiftAdapter,
    SQLiteAdapter,
    DuckDBAdapter,
]


def _build_registry() -> Dict[str, Type[BackendAdapter]]:
    registry: Dict[str, Type[BackendAdapter]] = {}
    for cls in _ADAPTERS:
        for tag in (cls.engine, *cls.aliases):
            if tag in registry:
                raise RuntimeError(f"Engine tag '{tag}' registered twice")
            registry[tag] = cls
    return registry


ENGINE_REGISTRY: Dict[str, Type[BackendAdapter]] = _build_registry()


def registered_engines() -> List[str]:
    return sorted(cls.engine for cls in _ADAPTERS)


def route(config: SystemConfig) -> BackendAdapter:
    """Pick the adapter for `config.engine` (case-insensitive)."""
    tag = (config.engine or "").strip().lower()
    cls = ENGINE_REGISTRY.get(tag)
    if cls is None:
        raise UnsupportedEngine(
            f"Unsupported engine '{config.engine}'. Supported: {', '.join(registered_engines())}",
            system=config.name,
        )
    return cls()
